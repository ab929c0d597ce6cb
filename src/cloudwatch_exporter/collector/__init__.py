# src/cloudwatch_exporter/collector/__init__.py
"""Metric collection engine: expansion, fetching, conversion and collectors."""

from .remote import CallCounter, Deadline, RateLimiterRegistry, default_limiters
from .session import CloudWatchSession, SessionFactory
from .discovery import CloudWatchDiscovery
from .expander import ExpansionResult, TemplateExpander
from .fetcher import FetchResult, MetricFetcher, QueryResult
from .converter import SampleConverter, normalize_name, sanitize_label_name
from .factory import CollectorFactory, ScrapeCollector, ScrapeReport

__all__ = [
    # Remote call plumbing
    "CallCounter",
    "Deadline",
    "RateLimiterRegistry",
    "default_limiters",
    "CloudWatchSession",
    "SessionFactory",

    # Engine
    "CloudWatchDiscovery",
    "ExpansionResult",
    "TemplateExpander",
    "FetchResult",
    "MetricFetcher",
    "QueryResult",
    "SampleConverter",
    "normalize_name",
    "sanitize_label_name",

    # Collectors
    "CollectorFactory",
    "ScrapeCollector",
    "ScrapeReport",
]
