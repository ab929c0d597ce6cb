# src/cloudwatch_exporter/collector/discovery.py
"""Resource discovery over CloudWatch ListMetrics."""

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple
import logging

from .session import CloudWatchSession

logger = logging.getLogger(__name__)


class CloudWatchDiscovery:
    """Enumerates the dimension sets that exist for a metric."""

    def __init__(self, session: CloudWatchSession):
        self.session = session

    def list_instances(self,
                       namespace: str,
                       metric_name: str,
                       dimension_names: Sequence[str]) -> List[Dict[str, str]]:
        """
        List every instance publishing a metric with exactly these dimensions.

        Pages are followed until no NextToken is returned. Results keep API
        order and are de-duplicated.

        Args:
            namespace: CloudWatch namespace
            metric_name: Metric name
            dimension_names: Dimension names the template declares

        Returns:
            One {dimension name: value} dict per discovered instance
        """
        wanted = set(dimension_names)
        request = {
            "Namespace": namespace,
            "MetricName": metric_name,
            "Dimensions": [{"Name": name} for name in dimension_names],
        }

        instances: List[Dict[str, str]] = []
        seen: set = set()
        pages = 0

        while True:
            response = self.session.call("list_metrics", **request)
            pages += 1

            for metric in response.get("Metrics", []):
                dimensions = {d["Name"]: d["Value"] for d in metric.get("Dimensions", [])}
                # ListMetrics also returns metrics carrying extra dimensions
                if set(dimensions) != wanted:
                    continue
                key: Tuple[Tuple[str, str], ...] = tuple(sorted(dimensions.items()))
                if key in seen:
                    continue
                seen.add(key)
                instances.append(dimensions)

            token = response.get("NextToken")
            if not token:
                break
            request["NextToken"] = token

        logger.debug(f"Discovered {len(instances)} instances of {namespace}/{metric_name} "
                     f"in {pages} page(s)")
        return instances

    __call__ = list_instances
