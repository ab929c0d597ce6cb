# src/cloudwatch_exporter/collector/fetcher.py
"""Execution of metric queries against CloudWatch GetMetricData."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from ..core.errors import DeadlineExceeded, RemoteCallError
from ..core.models import DataPoint, Defaults, MetricQuery
from .discovery import CloudWatchDiscovery
from .remote import CallCounter, Deadline
from .session import CloudWatchSession, SessionFactory

logger = logging.getLogger(__name__)

# Per-query status codes returned inside a GetMetricData response
FAILED_STATUS_CODES = frozenset({"InternalError", "Forbidden"})


@dataclass
class QueryResult:
    """Datapoints retrieved for one query."""
    query: MetricQuery
    datapoints: List[DataPoint] = field(default_factory=list)


@dataclass
class FetchResult:
    """Outcome of fetching a sequence of queries."""
    results: List[QueryResult] = field(default_factory=list)
    errors: Dict[str, RemoteCallError] = field(default_factory=dict)
    api_calls: int = 0

    @property
    def deadline_exceeded(self) -> int:
        """Number of queries cut short by the deadline."""
        return sum(1 for e in self.errors.values() if isinstance(e, DeadlineExceeded))

    @property
    def failed(self) -> int:
        """Number of queries that failed for reasons other than the deadline."""
        return len(self.errors) - self.deadline_exceeded


class MetricFetcher:
    """Fetches datapoints for one scrape.

    Sessions are opened lazily per (region, role) and closed by close().
    """

    def __init__(self,
                 session_factory: SessionFactory,
                 defaults: Defaults,
                 deadline: Deadline,
                 counter: Optional[CallCounter] = None):
        self.session_factory = session_factory
        self.defaults = defaults
        self.deadline = deadline
        self.counter = counter or CallCounter()

        self._sessions: Dict[Tuple[str, str], CloudWatchSession] = {}

    @property
    def api_calls(self) -> int:
        return self.counter.value

    def session(self, region: str, role_arn: Optional[str]) -> CloudWatchSession:
        """
        Open (or reuse) the session for a region and role.

        Raises:
            AuthError: If the role cannot be assumed
        """
        key = (region, role_arn or "")
        if key not in self._sessions:
            self._sessions[key] = self.session_factory.open(
                region, role_arn, self.deadline, self.counter, self.defaults
            )
        return self._sessions[key]

    def discovery(self, region: str, role_arn: Optional[str]) -> CloudWatchDiscovery:
        return CloudWatchDiscovery(self.session(region, role_arn))

    def fetch(self,
              queries: Sequence[MetricQuery],
              region: str,
              role_arn: Optional[str] = None) -> FetchResult:
        """
        Fetch datapoints for every query.

        Queries sharing a time window are batched up to max_queries_per_call.
        A batch that fails is retried query by query so one bad metric only
        loses itself. Once the deadline passes the remaining queries are
        reported as cut short.

        Args:
            queries: Queries to execute
            region: AWS region
            role_arn: Role to assume, None for ambient credentials

        Returns:
            FetchResult with results in query order

        Raises:
            AuthError: Role assumption failed or credentials were rejected
        """
        result = FetchResult()
        calls_before = self.counter.value
        if not queries:
            return result

        session = self.session(region, role_arn)
        points: Dict[str, List[DataPoint]] = {}

        for (start, end), group in self._group_by_window(queries):
            size = self.defaults.max_queries_per_call
            for offset in range(0, len(group), size):
                batch = group[offset:offset + size]
                if self.deadline.expired:
                    for query in batch:
                        result.errors[query.query_id] = DeadlineExceeded(query.query_id)
                    continue
                self._fetch_batch(session, batch, start, end, points, result)

        for query in queries:
            if query.query_id in result.errors:
                continue
            result.results.append(QueryResult(query=query, datapoints=points.get(query.query_id, [])))

        result.api_calls = self.counter.value - calls_before

        if result.errors:
            logger.warning(f"Fetched {len(result.results)}/{len(queries)} queries in {region}: "
                           f"{result.failed} failed, {result.deadline_exceeded} cut short by deadline")
        else:
            logger.debug(f"Fetched {len(queries)} queries in {region} with {result.api_calls} calls")
        return result

    def _fetch_batch(self,
                     session: CloudWatchSession,
                     batch: List[MetricQuery],
                     start: datetime,
                     end: datetime,
                     points: Dict[str, List[DataPoint]],
                     result: FetchResult) -> None:
        try:
            batch_points, failures, cut_short = self._get_metric_data(session, batch, start, end)
        except DeadlineExceeded:
            for query in batch:
                result.errors[query.query_id] = DeadlineExceeded(query.query_id)
            return
        except RemoteCallError as e:
            if len(batch) > 1:
                logger.warning(f"Batch of {len(batch)} queries failed ({e}), retrying one by one")
                for query in batch:
                    self._fetch_batch(session, [query], start, end, points, result)
                return
            query = batch[0]
            logger.warning(f"Query {query.query_id} ({query.namespace}/{query.metric_name}) failed: {e}")
            result.errors[query.query_id] = RemoteCallError(
                str(e), query_id=query.query_id, code=e.code, throttled=e.throttled
            )
            return

        result.errors.update(failures)
        for query_id in cut_short:
            result.errors[query_id] = DeadlineExceeded(query_id)
        for query_id, query_points in batch_points.items():
            if query_id not in result.errors:
                points[query_id] = query_points

    def _get_metric_data(self,
                         session: CloudWatchSession,
                         batch: List[MetricQuery],
                         start: datetime,
                         end: datetime) -> Tuple[Dict[str, List[DataPoint]], Dict[str, RemoteCallError], List[str]]:
        """
        Run one GetMetricData request, following NextToken pages.

        Pages are newest first, so when the deadline stops a later page the
        points already received are kept. Only queries that neither finished
        nor returned a point are reported as cut short.

        Returns:
            (points per query id, failed queries, query ids cut short)

        Raises:
            DeadlineExceeded: If not even the first page arrived in time
            RemoteCallError: If a page request failed
        """
        request: Dict[str, Any] = {
            "MetricDataQueries": [self.build_data_query(q) for q in batch],
            "StartTime": start,
            "EndTime": end,
            "ScanBy": "TimestampDescending",
        }
        points: Dict[str, List[DataPoint]] = {q.query_id: [] for q in batch}
        failures: Dict[str, RemoteCallError] = {}
        complete = set()
        pages = 0

        while True:
            try:
                response = session.call("get_metric_data", **request)
            except DeadlineExceeded:
                if not pages:
                    raise
                cut_short = [
                    q.query_id for q in batch
                    if q.query_id not in complete and q.query_id not in failures and not points[q.query_id]
                ]
                logger.warning(f"Deadline reached after {pages} GetMetricData page(s), "
                               f"keeping partial results ({len(cut_short)} queries cut short)")
                return points, failures, cut_short
            pages += 1

            for item in response.get("MetricDataResults", []):
                query_id = item.get("Id")
                if query_id not in points:
                    continue
                status = item.get("StatusCode", "Complete")
                if status in FAILED_STATUS_CODES:
                    messages = "; ".join(m.get("Value", "") for m in item.get("Messages", []))
                    failures[query_id] = RemoteCallError(
                        f"Query {query_id} returned {status}: {messages}".rstrip(": "),
                        query_id=query_id,
                        code=status,
                    )
                    continue
                if status == "Complete":
                    complete.add(query_id)
                for timestamp, value in zip(item.get("Timestamps", []), item.get("Values", [])):
                    points[query_id].append(DataPoint(timestamp=timestamp, value=value))

            token = response.get("NextToken")
            if not token:
                break
            request["NextToken"] = token

        return points, failures, []

    @staticmethod
    def build_data_query(query: MetricQuery) -> Dict[str, Any]:
        """GetMetricData query entry for a MetricQuery."""
        metric_stat: Dict[str, Any] = {
            "Metric": {
                "Namespace": query.namespace,
                "MetricName": query.metric_name,
                "Dimensions": [{"Name": name, "Value": value} for name, value in query.dimensions],
            },
            "Period": query.period_seconds,
            "Stat": query.statistic,
        }
        if query.unit:
            metric_stat["Unit"] = query.unit
        return {"Id": query.query_id, "MetricStat": metric_stat, "ReturnData": True}

    @staticmethod
    def _group_by_window(queries: Sequence[MetricQuery]) -> List[Tuple[Tuple[datetime, datetime], List[MetricQuery]]]:
        groups: Dict[Tuple[datetime, datetime], List[MetricQuery]] = {}
        for query in queries:
            groups.setdefault((query.start, query.end), []).append(query)
        return list(groups.items())

    def close(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
