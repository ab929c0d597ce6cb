# src/cloudwatch_exporter/collector/expander.py
"""Expansion of metric templates into concrete queries."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
import logging

from ..core.errors import AuthError, RemoteCallError
from ..core.models import MetricQuery, MetricTemplate, PatternKind, TaskDefinition
from .converter import output_name

logger = logging.getLogger(__name__)

# (namespace, metric name, dimension names) -> discovered instances
DiscoveryFn = Callable[[str, str, Sequence[str]], List[Dict[str, str]]]

DimensionSet = Tuple[Tuple[str, str], ...]


@dataclass
class ExpansionResult:
    """Ordered queries produced for one task."""
    queries: List[MetricQuery] = field(default_factory=list)
    truncated: bool = False
    errors: List[RemoteCallError] = field(default_factory=list)

    def __iter__(self) -> Iterator[MetricQuery]:
        return iter(self.queries)

    def __len__(self) -> int:
        return len(self.queries)


class TemplateExpander:
    """Turns a task's templates into MetricQuery objects.

    Output order is template declaration order, then dimension-set order
    (literal declaration order or discovery order), then statistic order.
    """

    def __init__(self, max_queries: int = 500):
        self.max_queries = max_queries

    def expand(self,
               task: TaskDefinition,
               discover: Optional[DiscoveryFn] = None,
               params: Optional[Mapping[str, str]] = None,
               now: Optional[datetime] = None) -> ExpansionResult:
        """
        Expand all templates of a task.

        Args:
            task: Task to expand
            discover: Discovery capability for templates that need it
            params: Scrape parameters for aws_dimensions_select_param tokens
            now: Reference time for query windows (defaults to current UTC time)

        Returns:
            ExpansionResult with queries capped at max_queries

        Raises:
            AuthError: If discovery is rejected for the whole account
        """
        now = now or datetime.now(timezone.utc)
        params = params or {}
        result = ExpansionResult()

        for template in task.metrics:
            if result.truncated:
                break

            try:
                dimension_sets = self._dimension_sets(template, discover, params)
            except AuthError:
                raise
            except RemoteCallError as e:
                logger.warning(f"Discovery failed for {template.namespace}/{template.metric_name}: {e}")
                result.errors.append(e)
                continue

            start, end = self._window(template, now)
            for dimensions in dimension_sets:
                if result.truncated:
                    break
                for statistic in template.statistics:
                    if len(result.queries) >= self.max_queries:
                        result.truncated = True
                        break
                    result.queries.append(MetricQuery(
                        query_id=f"q{len(result.queries)}",
                        namespace=template.namespace,
                        metric_name=template.metric_name,
                        dimensions=dimensions,
                        statistic=statistic,
                        period_seconds=template.period_seconds,
                        start=start,
                        end=end,
                        output_name=output_name(template, statistic),
                        unit=template.unit,
                    ))

        if result.truncated:
            logger.warning(f"Task '{task.name}' expansion capped at {self.max_queries} queries")

        logger.debug(f"Expanded task '{task.name}' into {len(result.queries)} queries")
        return result

    def _dimension_sets(self,
                        template: MetricTemplate,
                        discover: Optional[DiscoveryFn],
                        params: Mapping[str, str]) -> List[DimensionSet]:
        patterns = [pattern.resolve(params) for pattern in template.dimensions]

        if not any(p.needs_discovery for p in patterns):
            # Literal values only: cartesian product in declaration order
            value_lists = [[(p.name, v) for v in p.values] for p in patterns]
            return [tuple(combo) for combo in itertools.product(*value_lists)]

        if discover is None:
            raise ValueError(
                f"Template {template.namespace}/{template.metric_name} needs discovery "
                f"but no discovery function was given"
            )

        names = [p.name for p in patterns]
        dimension_sets: List[DimensionSet] = []
        seen = set()
        for instance in discover(template.namespace, template.metric_name, names):
            if set(instance) != set(names):
                continue
            if not all(p.matches(instance[p.name]) for p in patterns):
                continue
            dimensions = tuple((name, instance[name]) for name in names)
            if dimensions in seen:
                continue
            seen.add(dimensions)
            dimension_sets.append(dimensions)
        return dimension_sets

    @staticmethod
    def _window(template: MetricTemplate, now: datetime) -> Tuple[datetime, datetime]:
        end = now - timedelta(seconds=template.delay_seconds)
        start = end - timedelta(seconds=template.range_seconds)
        return start, end


def literal_only(task: TaskDefinition) -> bool:
    """True when a task can be expanded without discovery calls."""
    return all(
        p.kind in (PatternKind.LITERAL, PatternKind.PARAM)
        for template in task.metrics
        for p in template.dimensions
    )
