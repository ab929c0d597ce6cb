# src/cloudwatch_exporter/core/models.py
"""Data model shared by the configuration layer and the collection engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional, Pattern, Tuple


# Tokens accepted in aws_dimensions_select_param
PARAM_TARGET = "$_target"
PARAM_REGION = "$_region"
PARAM_TASK = "$_task"

ROLE_ARN_PATTERN = re.compile(r"^arn:aws[a-z-]*:iam::\d{12}:role/[\w+=,.@/-]+$")


class PatternKind(Enum):
    """How a dimension value is obtained."""
    LITERAL = "literal"
    ANY = "any"
    REGEX = "regex"
    PARAM = "param"


class RolePolicy(Enum):
    """Whether a scrape must run under an assumed role."""
    OPTIONAL = "optional"
    REQUIRED = "required"


@dataclass(frozen=True)
class DimensionPattern:
    """Value pattern for a single dimension of a metric template."""
    name: str
    kind: PatternKind
    values: Tuple[str, ...] = ()
    regex: Optional[Pattern] = None

    @property
    def needs_discovery(self) -> bool:
        return self.kind in (PatternKind.ANY, PatternKind.REGEX)

    def matches(self, value: str) -> bool:
        """Check whether a discovered value satisfies this pattern."""
        if self.kind == PatternKind.ANY:
            return True
        if self.kind == PatternKind.REGEX:
            return self.regex.fullmatch(value) is not None
        return value in self.values

    def resolve(self, params: Mapping[str, str]) -> "DimensionPattern":
        """Substitute scrape parameters, turning a PARAM pattern into a LITERAL one."""
        if self.kind != PatternKind.PARAM:
            return self

        resolved = []
        for token in self.values:
            value = params.get(token, token) if token.startswith("$_") else token
            if value and value not in resolved:
                resolved.append(value)
        return DimensionPattern(name=self.name, kind=PatternKind.LITERAL, values=tuple(resolved))


@dataclass(frozen=True)
class MetricTemplate:
    """Compact description of a family of CloudWatch queries."""
    namespace: str
    metric_name: str
    statistics: Tuple[str, ...]
    period_seconds: int
    range_seconds: int
    delay_seconds: int
    dimensions: Tuple[DimensionPattern, ...] = ()
    unit: Optional[str] = None
    output_name: Optional[str] = None

    @property
    def dimension_names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dimensions)

    @property
    def needs_discovery(self) -> bool:
        return any(d.needs_discovery for d in self.dimensions)


@dataclass(frozen=True)
class TaskDefinition:
    """Named scrape profile."""
    name: str
    metrics: Tuple[MetricTemplate, ...]
    default_region: Optional[str] = None
    role_arn: Optional[str] = None
    role_policy: RolePolicy = RolePolicy.OPTIONAL
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Defaults:
    """Global defaults and engine limits."""
    region: Optional[str] = None
    statistics: Tuple[str, ...] = ("Average",)
    period_seconds: int = 60
    range_seconds: int = 600
    delay_seconds: int = 0
    role_policy: RolePolicy = RolePolicy.OPTIONAL
    max_queries_per_task: int = 500
    max_queries_per_call: int = 500
    max_attempts: int = 5
    backoff_base_seconds: float = 0.2
    backoff_max_seconds: float = 5.0
    scrape_timeout_seconds: float = 25.0
    max_concurrent_calls: int = 4
    role_session_duration_seconds: int = 900
    emit_timestamps: bool = False

    def validate(self) -> None:
        """Validate defaults and limits."""
        if not self.statistics:
            raise ValueError("defaults.statistics cannot be empty")

        if self.period_seconds <= 0:
            raise ValueError(f"period_seconds must be positive: {self.period_seconds}")

        if self.range_seconds <= 0:
            raise ValueError(f"range_seconds must be positive: {self.range_seconds}")

        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be non-negative: {self.delay_seconds}")

        if not 1 <= self.max_queries_per_call <= 500:
            raise ValueError(f"max_queries_per_call must be between 1 and 500: {self.max_queries_per_call}")

        if self.max_queries_per_task <= 0:
            raise ValueError(f"max_queries_per_task must be positive: {self.max_queries_per_task}")

        if self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive: {self.max_attempts}")

        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds >= 0")

        if self.scrape_timeout_seconds <= 0:
            raise ValueError(f"scrape_timeout_seconds must be positive: {self.scrape_timeout_seconds}")

        if self.max_concurrent_calls <= 0:
            raise ValueError(f"max_concurrent_calls must be positive: {self.max_concurrent_calls}")

        if not 900 <= self.role_session_duration_seconds <= 43200:
            raise ValueError(
                f"role_session_duration_seconds must be between 900 and 43200: "
                f"{self.role_session_duration_seconds}"
            )


@dataclass(frozen=True)
class Settings:
    """Immutable configuration snapshot.

    Built once per configuration load and replaced wholesale on reload.
    """
    tasks: Dict[str, TaskDefinition]
    defaults: Defaults = field(default_factory=Defaults)
    accounts: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None

    def get_task(self, name: str) -> Optional[TaskDefinition]:
        return self.tasks.get(name)

    def task_names(self) -> List[str]:
        return list(self.tasks.keys())

    def resolve_role(self, value: Optional[str]) -> Optional[str]:
        """Map an account alias to its role ARN; ARNs pass through."""
        if not value:
            return None
        return self.accounts.get(value, value)


@dataclass(frozen=True)
class MetricQuery:
    """Fully resolved, executable CloudWatch query."""
    query_id: str
    namespace: str
    metric_name: str
    dimensions: Tuple[Tuple[str, str], ...]
    statistic: str
    period_seconds: int
    start: datetime
    end: datetime
    output_name: str
    unit: Optional[str] = None

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Query {self.query_id}: window end precedes start")
        if self.period_seconds <= 0:
            raise ValueError(f"Query {self.query_id}: period must be positive")

    @property
    def dimension_dict(self) -> Dict[str, str]:
        return dict(self.dimensions)


@dataclass(frozen=True)
class ScrapeContext:
    """Per-request parameters bound to the snapshot the request started with."""
    target: str
    task: TaskDefinition
    region: str
    settings: Settings
    role_arn: Optional[str] = None

    @property
    def params(self) -> Dict[str, str]:
        """Values available to aws_dimensions_select_param."""
        return {
            PARAM_TARGET: self.target,
            PARAM_REGION: self.region,
            PARAM_TASK: self.task.name,
        }


@dataclass(frozen=True)
class DataPoint:
    """Single raw value returned by CloudWatch."""
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class Sample:
    """Converted output sample, ready for exposition."""
    name: str
    labels: Dict[str, str]
    value: float
    timestamp: Optional[float] = None
