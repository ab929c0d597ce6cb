# src/cloudwatch_exporter/collector/factory.py
"""Per-request collectors exposed through prometheus_client's collector protocol."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional
import logging

from prometheus_client.metrics_core import Metric

from ..core.errors import ConfigError, ValidationError, ValidationReason
from ..core.models import ROLE_ARN_PATTERN, RolePolicy, Sample, ScrapeContext, Settings
from .converter import SampleConverter, template_output_names
from .expander import TemplateExpander
from .fetcher import MetricFetcher
from .remote import CallCounter, Deadline
from .session import SessionFactory

logger = logging.getLogger(__name__)

META_METRICS = {
    "cloudwatch_exporter_scrape_duration_seconds": "Time spent collecting CloudWatch metrics for this scrape",
    "cloudwatch_exporter_scrape_api_calls": "Remote API calls made during this scrape",
    "cloudwatch_exporter_scrape_query_errors": "Queries that failed during this scrape",
    "cloudwatch_exporter_scrape_queries_cut_short": "Queries abandoned because the scrape deadline elapsed",
    "cloudwatch_exporter_scrape_queries_truncated": "1 if the task expanded to more queries than allowed",
}


@dataclass
class ScrapeReport:
    """What one collector produced."""
    samples: List[Sample] = field(default_factory=list)
    queries: int = 0
    api_calls: int = 0
    query_errors: int = 0
    cut_short: int = 0
    truncated: bool = False
    duration_seconds: float = 0.0


class ScrapeCollector:
    """Single-use collector for one scrape request.

    describe() only reports metadata derived from the task's templates.
    collect() runs expand, fetch and convert once; a second call raises.
    """

    def __init__(self,
                 context: ScrapeContext,
                 session_factory: SessionFactory,
                 converter: Optional[SampleConverter] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 timeout_seconds: Optional[float] = None):
        self.context = context
        self.session_factory = session_factory
        self.converter = converter or SampleConverter()
        self._clock = clock
        self.timeout_seconds = timeout_seconds

        self._report: Optional[ScrapeReport] = None
        self._used = False

    @property
    def report(self) -> Optional[ScrapeReport]:
        return self._report

    def samples(self) -> List[Sample]:
        return list(self._report.samples) if self._report else []

    def describe(self) -> Iterator[Metric]:
        """Metric metadata, no remote calls."""
        for name, documentation in self._documentation().items():
            yield Metric(name, documentation, "gauge")
        for name, documentation in META_METRICS.items():
            yield Metric(name, documentation, "gauge")

    def collect(self) -> Iterator[Metric]:
        """Run the scrape and yield one family per output name."""
        report = self.scrape()
        emit_timestamps = self.context.settings.defaults.emit_timestamps
        documentation = self._documentation()

        families: Dict[str, Metric] = {}
        for sample in report.samples:
            family = families.get(sample.name)
            if family is None:
                family = Metric(sample.name, documentation.get(sample.name, "CloudWatch metric"), "gauge")
                families[sample.name] = family
            family.add_sample(
                sample.name,
                sample.labels,
                sample.value,
                timestamp=sample.timestamp if emit_timestamps else None,
            )
        yield from families.values()

        values = {
            "cloudwatch_exporter_scrape_duration_seconds": report.duration_seconds,
            "cloudwatch_exporter_scrape_api_calls": report.api_calls,
            "cloudwatch_exporter_scrape_query_errors": report.query_errors,
            "cloudwatch_exporter_scrape_queries_cut_short": report.cut_short,
            "cloudwatch_exporter_scrape_queries_truncated": 1 if report.truncated else 0,
        }
        labels = {"target": self.context.target, "task": self.context.task.name}
        for name, value in values.items():
            family = Metric(name, META_METRICS[name], "gauge")
            family.add_sample(name, labels, float(value))
            yield family

    def scrape(self) -> ScrapeReport:
        """
        Expand, fetch and convert.

        Raises:
            AuthError: Role assumption failed; no samples are produced
            RuntimeError: The collector was already used
        """
        if self._used:
            raise RuntimeError("ScrapeCollector is single-use; create a new one per request")
        self._used = True

        ctx = self.context
        defaults = ctx.settings.defaults
        started = time.monotonic()
        timeout = defaults.scrape_timeout_seconds
        if self.timeout_seconds is not None:
            timeout = min(timeout, self.timeout_seconds)
        deadline = Deadline(timeout)
        counter = CallCounter()
        expander = TemplateExpander(max_queries=defaults.max_queries_per_task)

        logger.info(f"Scraping task '{ctx.task.name}' for target '{ctx.target}' in {ctx.region}"
                    f"{' as ' + ctx.role_arn if ctx.role_arn else ''}")

        with MetricFetcher(self.session_factory, defaults, deadline, counter) as fetcher:
            # Opening the session first makes role failures fatal before any other work
            fetcher.session(ctx.region, ctx.role_arn)
            expansion = expander.expand(
                ctx.task,
                discover=fetcher.discovery(ctx.region, ctx.role_arn),
                params=ctx.params,
                now=self._clock(),
            )
            fetched = fetcher.fetch(expansion.queries, ctx.region, ctx.role_arn)

        samples: List[Sample] = []
        for query_result in fetched.results:
            samples.extend(self.converter.convert(
                query_result.query, query_result.datapoints, ctx.target, ctx.task.labels
            ))

        self._report = ScrapeReport(
            samples=samples,
            queries=len(expansion.queries),
            api_calls=counter.value,
            query_errors=fetched.failed + len(expansion.errors),
            cut_short=fetched.deadline_exceeded,
            truncated=expansion.truncated,
            duration_seconds=time.monotonic() - started,
        )
        logger.info(f"Scrape of '{ctx.task.name}' for '{ctx.target}' produced {len(samples)} samples "
                    f"from {len(expansion.queries)} queries ({counter.value} API calls)")
        return self._report

    def _documentation(self) -> Dict[str, str]:
        docs: Dict[str, str] = {}
        for template in self.context.task.metrics:
            for statistic, name in zip(template.statistics, template_output_names(template)):
                docs.setdefault(
                    name, f"CloudWatch metric {template.namespace} {template.metric_name} ({statistic})"
                )
        return docs


class CollectorFactory:
    """Validates scrape parameters and creates one collector per request."""

    def __init__(self,
                 session_factory: Optional[SessionFactory] = None,
                 converter: Optional[SampleConverter] = None):
        self.session_factory = session_factory or SessionFactory()
        self.converter = converter or SampleConverter()

    def new_collector(self,
                      target: Optional[str],
                      task: Optional[str],
                      region: Optional[str],
                      role_arn: Optional[str],
                      settings: Optional[Settings],
                      timeout_seconds: Optional[float] = None) -> ScrapeCollector:
        """
        Create a collector for one scrape.

        Args:
            target: Scrape target, emitted as the 'target' label
            task: Task name in the snapshot
            region: AWS region, falls back to the task and global defaults
            role_arn: Role ARN or account alias, falls back to the task's role
            settings: Snapshot the request runs against
            timeout_seconds: Time the caller will wait; caps the configured scrape timeout

        Returns:
            Unused ScrapeCollector

        Raises:
            ValidationError: Missing or invalid parameters, unknown task
            ConfigError: No configuration is loaded
        """
        if settings is None:
            raise ConfigError("No configuration loaded")

        if not task:
            raise ValidationError(ValidationReason.MISSING_PARAMETER, "task")

        definition = settings.get_task(task)
        if definition is None:
            raise ValidationError(ValidationReason.UNKNOWN_TASK, task)

        if not target:
            raise ValidationError(ValidationReason.MISSING_PARAMETER, "target")

        region = region or definition.default_region or settings.defaults.region
        if not region:
            raise ValidationError(ValidationReason.MISSING_PARAMETER, "region")

        resolved_role = settings.resolve_role(role_arn or definition.role_arn)
        if resolved_role is None and definition.role_policy == RolePolicy.REQUIRED:
            raise ValidationError(ValidationReason.MISSING_PARAMETER, "roleArn")
        if resolved_role is not None and not ROLE_ARN_PATTERN.match(resolved_role):
            raise ValidationError(
                ValidationReason.INVALID_PARAMETER, "roleArn",
                f"Invalid roleArn parameter: {role_arn}",
            )

        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValidationError(
                ValidationReason.INVALID_PARAMETER, "timeout",
                f"Invalid timeout parameter: {timeout_seconds}",
            )

        context = ScrapeContext(
            target=target,
            task=definition,
            region=region,
            settings=settings,
            role_arn=resolved_role,
        )
        return ScrapeCollector(context, self.session_factory, converter=self.converter,
                               timeout_seconds=timeout_seconds)
