# src/cloudwatch_exporter/monitoring/exporter.py
"""Exporter self-metrics and per-request rendering of scrapes."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Tuple
import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

from ..core.config import ConfigStore
from ..core.errors import AuthError, ConfigError, ExporterError, ValidationError, ValidationReason
from ..collector.factory import CollectorFactory

logger = logging.getLogger(__name__)


class ExporterMetrics:
    """Metrics about the exporter itself, kept on their own registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize exporter metrics.

        Args:
            registry: Registry to register on (a new one by default)
        """
        self.registry = registry or CollectorRegistry()
        self._define_metrics()

    def _define_metrics(self) -> None:
        """Define Prometheus metrics."""
        self.requests_total = Counter(
            'cloudwatch_requests_total',
            'API requests made to CloudWatch',
            registry=self.registry
        )
        self.scrapes_total = Counter(
            'cloudwatch_exporter_scrapes_total',
            'Scrape requests handled',
            ['task', 'outcome'],
            registry=self.registry
        )
        self.scrape_duration = Histogram(
            'cloudwatch_exporter_request_duration_seconds',
            'Time spent serving scrape requests',
            ['task'],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
            registry=self.registry
        )
        self.query_errors_total = Counter(
            'cloudwatch_exporter_query_errors_total',
            'Queries that failed or were cut short',
            ['task'],
            registry=self.registry
        )
        self.config_reloads_total = Counter(
            'cloudwatch_exporter_config_reloads_total',
            'Configuration reload attempts',
            ['outcome'],
            registry=self.registry
        )
        self.config_tasks = Gauge(
            'cloudwatch_exporter_config_tasks',
            'Tasks in the active configuration',
            registry=self.registry
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


@dataclass
class ScrapeResponse:
    """Transport-neutral response for a scrape request."""
    status: int
    body: bytes
    content_type: str = CONTENT_TYPE_LATEST
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == 200


class ScrapeHandler:
    """Glue used by every transport: one collector, one registry, one render."""

    def __init__(self,
                 store: ConfigStore,
                 factory: Optional[CollectorFactory] = None,
                 metrics: Optional[ExporterMetrics] = None):
        self.store = store
        self.factory = factory or CollectorFactory()
        self.metrics = metrics or ExporterMetrics()

        if store.loaded:
            self.metrics.config_tasks.set(len(store.current_snapshot().tasks))

    def render_scrape(self,
                      target: Optional[str],
                      task: Optional[str],
                      region: Optional[str] = None,
                      role_arn: Optional[str] = None,
                      timeout_seconds: Optional[float] = None) -> bytes:
        """
        Run one scrape and render it in the text exposition format.

        Args:
            timeout_seconds: How long the caller will wait, None for the configured timeout

        Raises:
            ValidationError: Bad request parameters
            AuthError: Role assumption failed
            ConfigError: No configuration loaded
        """
        if not task:
            raise ValidationError(ValidationReason.MISSING_PARAMETER, "task")

        settings = self.store.current_snapshot()
        collector = self.factory.new_collector(target, task, region, role_arn, settings,
                                               timeout_seconds=timeout_seconds)

        # Fresh registry per request so nothing leaks between targets
        registry = CollectorRegistry()
        registry.register(collector)

        started = time.monotonic()
        try:
            body = generate_latest(registry)
        finally:
            report = collector.report
            if report is not None:
                self.metrics.requests_total.inc(report.api_calls)
                if report.query_errors or report.cut_short:
                    self.metrics.query_errors_total.labels(task=task).inc(report.query_errors + report.cut_short)
            self.metrics.scrape_duration.labels(task=task).observe(time.monotonic() - started)
        return body

    def handle(self,
               target: Optional[str],
               task: Optional[str],
               region: Optional[str] = None,
               role_arn: Optional[str] = None,
               timeout_seconds: Optional[float] = None) -> ScrapeResponse:
        """Like render_scrape, but maps errors to status codes instead of raising."""
        outcome = "error"
        try:
            body = self.render_scrape(target, task, region, role_arn, timeout_seconds)
            outcome = "success"
            return ScrapeResponse(status=200, body=body)
        except ValidationError as e:
            outcome = "invalid"
            return self._error(400, e)
        except AuthError as e:
            outcome = "auth_error"
            return self._error(403, e)
        except ConfigError as e:
            outcome = "config_error"
            return self._error(503, e)
        except ExporterError as e:
            return self._error(500, e)
        finally:
            # Unknown task names come from the request; keep them out of label values
            known = self.store.loaded and task in self.store.current_snapshot().tasks
            self.metrics.scrapes_total.labels(task=task if known else "", outcome=outcome).inc()

    def reload(self) -> Tuple[bool, str]:
        """Reload configuration; the previous snapshot stays on failure."""
        try:
            settings = self.store.load()
        except ConfigError as e:
            self.metrics.config_reloads_total.labels(outcome="failure").inc()
            message = f"Can't read configuration file: {e}"
            logger.error(message)
            return False, message

        self.metrics.config_reloads_total.labels(outcome="success").inc()
        self.metrics.config_tasks.set(len(settings.tasks))
        return True, "Reload complete"

    @staticmethod
    def _error(status: int, error: Exception) -> ScrapeResponse:
        message = f"Error: {error}"
        logger.warning(message)
        return ScrapeResponse(
            status=status,
            body=(message + "\n").encode(),
            content_type="text/plain; charset=utf-8",
            error=str(error),
        )
