# src/cloudwatch_exporter/collector/converter.py
"""Conversion of raw CloudWatch datapoints into exposition samples."""

from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional, Sequence
import logging

from ..core.models import DataPoint, MetricQuery, MetricTemplate, Sample

logger = logging.getLogger(__name__)

_NAME_INVALID = re.compile(r"[^a-z0-9]+")
_LABEL_INVALID = re.compile(r"[^a-zA-Z0-9_]+")

TARGET_LABEL = "target"

# Factor to the base unit of each CloudWatch unit that has one
UNIT_SCALES: Dict[str, float] = {
    "Microseconds": 1e-6,
    "Milliseconds": 1e-3,
    "Seconds": 1.0,
    "Bytes": 1.0,
    "Kilobytes": 1024.0,
    "Megabytes": 1024.0 ** 2,
    "Gigabytes": 1024.0 ** 3,
    "Terabytes": 1024.0 ** 4,
    "Bits": 1.0,
    "Kilobits": 1e3,
    "Megabits": 1e6,
    "Gigabits": 1e9,
    "Terabits": 1e12,
    "Bytes/Second": 1.0,
    "Kilobytes/Second": 1024.0,
    "Megabytes/Second": 1024.0 ** 2,
    "Gigabytes/Second": 1024.0 ** 3,
    "Terabytes/Second": 1024.0 ** 4,
    "Bits/Second": 1.0,
    "Kilobits/Second": 1e3,
    "Megabits/Second": 1e6,
    "Gigabits/Second": 1e9,
    "Terabits/Second": 1e12,
}


def normalize_name(text: str) -> str:
    """
    Normalize text into an output metric name.

    Lower-cases, collapses every run of characters outside [a-z0-9] into a
    single underscore and trims underscores at both ends. A leading digit
    gets an underscore prefix.
    """
    name = _NAME_INVALID.sub("_", text.lower()).strip("_")
    if not name:
        return "_"
    if name[0].isdigit():
        name = "_" + name
    return name


def sanitize_label_name(text: str) -> str:
    """Make a dimension name usable as a label name, preserving case."""
    name = _LABEL_INVALID.sub("_", text).strip("_")
    if not name:
        return "_"
    if name[0].isdigit():
        name = "_" + name
    return name


def output_name(template: MetricTemplate, statistic: str) -> str:
    """Output metric name for one statistic of a template."""
    if template.output_name:
        base = normalize_name(template.output_name)
    else:
        base = normalize_name(f"{template.namespace}_{template.metric_name}")
    if len(template.statistics) > 1:
        return f"{base}_{normalize_name(statistic)}"
    return base


def template_output_names(template: MetricTemplate) -> List[str]:
    return [output_name(template, statistic) for statistic in template.statistics]


def unit_scale(unit: Optional[str]) -> float:
    if not unit:
        return 1.0
    return UNIT_SCALES.get(unit, 1.0)


class SampleConverter:
    """Maps the datapoints of one query to output samples."""

    def convert(self,
                query: MetricQuery,
                datapoints: Sequence[DataPoint],
                target: str,
                static_labels: Optional[Mapping[str, str]] = None) -> List[Sample]:
        """
        Convert the datapoints of a query.

        The latest datapoint inside the query window is kept. A query without
        datapoints in its window yields no samples.

        Args:
            query: The executed query
            datapoints: Raw datapoints returned for it
            target: Scrape target, always emitted as the 'target' label
            static_labels: Task-level labels

        Returns:
            Zero or one samples
        """
        point = self.select_datapoint(query, datapoints)
        if point is None:
            logger.debug(f"No datapoints for {query.output_name} {query.dimension_dict}")
            return []

        return [Sample(
            name=query.output_name,
            labels=self.build_labels(query, target, static_labels),
            value=float(point.value) * unit_scale(query.unit),
            timestamp=point.timestamp.timestamp(),
        )]

    @staticmethod
    def select_datapoint(query: MetricQuery, datapoints: Sequence[DataPoint]) -> Optional[DataPoint]:
        """Latest datapoint whose timestamp lies inside the query window."""
        latest: Optional[DataPoint] = None
        for point in datapoints:
            if point.timestamp < query.start or point.timestamp > query.end:
                continue
            if latest is None or point.timestamp > latest.timestamp:
                latest = point
        return latest

    @staticmethod
    def build_labels(query: MetricQuery,
                     target: str,
                     static_labels: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Label set: target first, then dimensions, then static labels.

        Earlier entries win when sanitized names collide.
        """
        labels = {TARGET_LABEL: target}
        for name, value in query.dimensions:
            label = sanitize_label_name(name)
            if label in labels:
                label = f"dimension_{label}"
            labels.setdefault(label, value)
        for name, value in (static_labels or {}).items():
            labels.setdefault(sanitize_label_name(name), value)
        return labels
