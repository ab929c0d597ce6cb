# src/cloudwatch_exporter/core/__init__.py
"""Core data model, errors and configuration."""

from .errors import (
    ExporterError,
    ConfigError,
    ValidationError,
    ValidationReason,
    AuthError,
    RemoteCallError,
    DeadlineExceeded,
)
from .models import (
    DataPoint,
    Defaults,
    DimensionPattern,
    MetricQuery,
    MetricTemplate,
    PatternKind,
    RolePolicy,
    Sample,
    ScrapeContext,
    Settings,
    TaskDefinition,
)
from .config import ConfigStore, load_settings, parse_settings

__all__ = [
    # Errors
    "ExporterError",
    "ConfigError",
    "ValidationError",
    "ValidationReason",
    "AuthError",
    "RemoteCallError",
    "DeadlineExceeded",

    # Models
    "DataPoint",
    "Defaults",
    "DimensionPattern",
    "MetricQuery",
    "MetricTemplate",
    "PatternKind",
    "RolePolicy",
    "Sample",
    "ScrapeContext",
    "Settings",
    "TaskDefinition",

    # Configuration
    "ConfigStore",
    "load_settings",
    "parse_settings",
]
