# src/cloudwatch_exporter/core/config.py
"""Configuration parsing, validation and snapshot storage."""

from __future__ import annotations

import yaml
import re
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List, Tuple, Union, Mapping
import logging
import os

from .errors import ConfigError
from .models import (
    Defaults,
    DimensionPattern,
    MetricTemplate,
    PatternKind,
    RolePolicy,
    Settings,
    TaskDefinition,
    ROLE_ARN_PATTERN,
)

logger = logging.getLogger(__name__)

ConfigSource = Union[Path, str, Mapping[str, Any]]


def _parse_role_policy(value: Any, where: str) -> RolePolicy:
    try:
        return RolePolicy(str(value).lower())
    except ValueError:
        raise ConfigError(f"{where}: invalid role_policy '{value}'. Must be optional or required")


def _as_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        return [str(value)]
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list, got {type(value).__name__}")
    return [str(v) for v in value]


def _as_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(value).__name__}")
    return value


def _positive_int(value: Any, name: str, where: str, allow_zero: bool = False) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}: {name} must be an integer: {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ConfigError(f"{where}: {name} must be {qualifier}: {number}")
    return number


def _build_defaults(data: Dict[str, Any]) -> Defaults:
    """Create Defaults from the 'defaults' section."""
    base = Defaults()
    try:
        defaults = Defaults(
            region=data.get("region", base.region),
            statistics=tuple(_as_list(data.get("statistics", list(base.statistics)), "defaults.statistics")),
            period_seconds=int(data.get("period_seconds", base.period_seconds)),
            range_seconds=int(data.get("range_seconds", base.range_seconds)),
            delay_seconds=int(data.get("delay_seconds", base.delay_seconds)),
            role_policy=_parse_role_policy(data.get("role_policy", base.role_policy.value), "defaults"),
            max_queries_per_task=int(data.get("max_queries_per_task", base.max_queries_per_task)),
            max_queries_per_call=int(data.get("max_queries_per_call", base.max_queries_per_call)),
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            backoff_base_seconds=float(data.get("backoff_base_seconds", base.backoff_base_seconds)),
            backoff_max_seconds=float(data.get("backoff_max_seconds", base.backoff_max_seconds)),
            scrape_timeout_seconds=float(data.get("scrape_timeout_seconds", base.scrape_timeout_seconds)),
            max_concurrent_calls=int(data.get("max_concurrent_calls", base.max_concurrent_calls)),
            role_session_duration_seconds=int(
                data.get("role_session_duration_seconds", base.role_session_duration_seconds)
            ),
            emit_timestamps=bool(data.get("emit_timestamps", base.emit_timestamps)),
        )
        defaults.validate()
    except (TypeError, ValueError) as e:
        raise ConfigError(f"defaults: {e}")
    return defaults


def _build_dimensions(metric_data: Dict[str, Any], where: str) -> Tuple[DimensionPattern, ...]:
    """Turn the aws_dimensions* keys of a metric into ordered dimension patterns."""
    names = _as_list(metric_data.get("aws_dimensions"), f"{where}.aws_dimensions")
    select = _as_mapping(metric_data.get("aws_dimensions_select"), f"{where}.aws_dimensions_select")
    select_regex = _as_mapping(metric_data.get("aws_dimensions_select_regex"), f"{where}.aws_dimensions_select_regex")
    select_param = _as_mapping(metric_data.get("aws_dimensions_select_param"), f"{where}.aws_dimensions_select_param")

    # Dimensions only named in a select section are implicitly declared
    for section in (select, select_regex, select_param):
        for name in section:
            if str(name) not in names:
                names.append(str(name))

    if len(set(names)) != len(names):
        raise ConfigError(f"{where}: duplicate dimension names in aws_dimensions")

    patterns = []
    for name in names:
        sources = [s for s in (select, select_regex, select_param) if name in s]
        if len(sources) > 1:
            raise ConfigError(f"{where}: dimension '{name}' has more than one select rule")

        if name in select_param:
            values = _as_list(select_param[name], f"{where}.aws_dimensions_select_param.{name}")
            if not values:
                raise ConfigError(f"{where}: dimension '{name}' has an empty parameter list")
            patterns.append(DimensionPattern(name=name, kind=PatternKind.PARAM, values=tuple(values)))
        elif name in select:
            values = _as_list(select[name], f"{where}.aws_dimensions_select.{name}")
            if not values:
                raise ConfigError(f"{where}: dimension '{name}' has an empty value list")
            patterns.append(DimensionPattern(name=name, kind=PatternKind.LITERAL, values=tuple(values)))
        elif name in select_regex:
            try:
                compiled = re.compile(str(select_regex[name]))
            except re.error as e:
                raise ConfigError(f"{where}: invalid regex for dimension '{name}': {e}")
            patterns.append(DimensionPattern(name=name, kind=PatternKind.REGEX, regex=compiled))
        else:
            patterns.append(DimensionPattern(name=name, kind=PatternKind.ANY))

    return tuple(patterns)


def _build_template(metric_data: Any,
                    task_data: Dict[str, Any],
                    defaults: Defaults,
                    where: str) -> MetricTemplate:
    """Create a MetricTemplate, inheriting task-level and global defaults."""
    if not isinstance(metric_data, dict):
        raise ConfigError(f"{where}: metric entry must be a mapping")

    namespace = str(metric_data.get("aws_namespace") or "").strip()
    metric_name = str(metric_data.get("aws_metric_name") or "").strip()
    if not namespace:
        raise ConfigError(f"{where}: aws_namespace cannot be empty")
    if not metric_name:
        raise ConfigError(f"{where}: aws_metric_name cannot be empty")

    statistics = _as_list(metric_data.get("aws_statistics"), f"{where}.aws_statistics")
    statistics += _as_list(metric_data.get("aws_extended_statistics"), f"{where}.aws_extended_statistics")
    if not statistics:
        statistics = _as_list(task_data.get("statistics"), f"{where}.statistics") or list(defaults.statistics)
    if not statistics:
        raise ConfigError(f"{where}: no statistic resolvable")
    # Keep declaration order, drop repeats
    statistics = list(dict.fromkeys(statistics))

    def pick(key: str, fallback: int) -> Any:
        return metric_data.get(key, task_data.get(key, fallback))

    output_name = metric_data.get("output_name")

    return MetricTemplate(
        namespace=namespace,
        metric_name=metric_name,
        statistics=tuple(statistics),
        period_seconds=_positive_int(pick("period_seconds", defaults.period_seconds), "period_seconds", where),
        range_seconds=_positive_int(pick("range_seconds", defaults.range_seconds), "range_seconds", where),
        delay_seconds=_positive_int(pick("delay_seconds", defaults.delay_seconds), "delay_seconds", where,
                                    allow_zero=True),
        dimensions=_build_dimensions(metric_data, where),
        unit=metric_data.get("aws_unit"),
        output_name=str(output_name) if output_name else None,
    )


def _validate_role(value: str, accounts: Dict[str, str], where: str) -> None:
    if value.startswith("arn:"):
        if not ROLE_ARN_PATTERN.match(value):
            raise ConfigError(f"{where}: malformed role ARN: {value}")
    elif value not in accounts:
        raise ConfigError(f"{where}: role '{value}' is neither an ARN nor a known account alias")


def _build_task(task_data: Any, defaults: Defaults, accounts: Dict[str, str], index: int) -> TaskDefinition:
    if not isinstance(task_data, dict):
        raise ConfigError(f"tasks[{index}]: task entry must be a mapping")

    name = str(task_data.get("name") or "").strip()
    if not name:
        raise ConfigError(f"tasks[{index}]: task name cannot be empty")
    where = f"task '{name}'"

    metrics = task_data.get("metrics")
    if not isinstance(metrics, list) or not metrics:
        raise ConfigError(f"{where}: must reference at least one metric")

    role_arn = task_data.get("role_arn")
    if role_arn:
        role_arn = str(role_arn)
        _validate_role(role_arn, accounts, where)

    labels = _as_mapping(task_data.get("labels"), f"{where}.labels")

    templates = tuple(
        _build_template(metric, task_data, defaults, f"{where}.metrics[{i}]")
        for i, metric in enumerate(metrics)
    )

    return TaskDefinition(
        name=name,
        metrics=templates,
        default_region=task_data.get("default_region"),
        role_arn=role_arn or None,
        role_policy=_parse_role_policy(task_data.get("role_policy", defaults.role_policy.value), where),
        labels={str(k): str(v) for k, v in labels.items()},
    )


def parse_settings(data: Any, source: Optional[str] = None) -> Settings:
    """
    Validate a parsed configuration document and build a Settings snapshot.

    Args:
        data: Parsed YAML document
        source: Where the document came from, for diagnostics

    Returns:
        Immutable Settings snapshot

    Raises:
        ConfigError: If the document is malformed
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration document must be a mapping")

    defaults = _build_defaults(_as_mapping(data.get("defaults"), "defaults"))

    accounts = {str(k): str(v) for k, v in _as_mapping(data.get("accounts"), "accounts").items()}
    for alias, arn in accounts.items():
        if not ROLE_ARN_PATTERN.match(arn):
            raise ConfigError(f"accounts.{alias}: malformed role ARN: {arn}")

    tasks_data = data.get("tasks")
    if not isinstance(tasks_data, list) or not tasks_data:
        raise ConfigError("Configuration must define a non-empty 'tasks' list")

    tasks: Dict[str, TaskDefinition] = {}
    for index, task_data in enumerate(tasks_data):
        task = _build_task(task_data, defaults, accounts, index)
        if task.name in tasks:
            raise ConfigError(f"Duplicate task name: {task.name}")
        tasks[task.name] = task

    return Settings(tasks=tasks, defaults=defaults, accounts=accounts, source=source)


def _merge_env_vars(data: Dict[str, Any]) -> None:
    """Merge environment variables into the configuration document."""
    defaults = data.get("defaults")
    if defaults is None:
        defaults = data["defaults"] = {}
    if not isinstance(defaults, dict):
        return

    if "CWE_DEFAULT_REGION" in os.environ:
        defaults["region"] = os.environ["CWE_DEFAULT_REGION"]
    elif "AWS_DEFAULT_REGION" in os.environ:
        defaults.setdefault("region", os.environ["AWS_DEFAULT_REGION"])

    if "CWE_SCRAPE_TIMEOUT" in os.environ:
        defaults["scrape_timeout_seconds"] = float(os.environ["CWE_SCRAPE_TIMEOUT"])


def read_config_source(source: ConfigSource) -> Tuple[Dict[str, Any], str]:
    """
    Read a configuration source into a document.

    Accepts a file path, a YAML string (anything containing a newline) or an
    already parsed mapping.
    """
    if isinstance(source, Mapping):
        return dict(source), "<mapping>"

    if isinstance(source, str) and "\n" in source:
        text, name = source, "<string>"
    else:
        path = Path(source)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        text, name = path.read_text(), str(path)

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration {name}: {e}")

    if data is None:
        raise ConfigError(f"Configuration {name} is empty")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {name} must be a mapping")
    return data, name


def load_settings(source: ConfigSource) -> Settings:
    """Read, merge environment overrides and validate in one step."""
    data, name = read_config_source(source)
    try:
        _merge_env_vars(data)
    except ValueError as e:
        raise ConfigError(f"Invalid environment override: {e}")
    return parse_settings(data, source=name)


class ConfigStore:
    """Holds the current Settings snapshot and swaps it atomically on reload."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else None
        self.reload_count = 0
        self.last_error: Optional[str] = None

        self._snapshot: Optional[Settings] = None
        # Serializes writers only; readers never take it
        self._write_lock = threading.Lock()

    def load(self, source: Optional[ConfigSource] = None) -> Settings:
        """
        Load and validate a configuration, then publish it.

        On failure the previous snapshot stays in effect.

        Raises:
            ConfigError: If the source cannot be read or is invalid
        """
        if source is None:
            source = self.config_path
        if source is None:
            raise ConfigError("No configuration path specified")

        with self._write_lock:
            try:
                settings = load_settings(source)
            except ConfigError as e:
                self.last_error = str(e)
                logger.error(f"Configuration load failed: {e}")
                raise

            self._snapshot = settings
            self.reload_count += 1
            self.last_error = None

        logger.info(f"Loaded configuration from {settings.source} with {len(settings.tasks)} tasks")
        return settings

    def current_snapshot(self) -> Settings:
        """Return the latest successfully loaded snapshot."""
        snapshot = self._snapshot
        if snapshot is None:
            raise ConfigError("No configuration loaded")
        return snapshot

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None
