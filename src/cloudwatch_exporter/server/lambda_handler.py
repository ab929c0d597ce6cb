"""AWS Lambda entry point.

The event carries the same parameters as the HTTP scrape endpoint:
``{"target": ..., "task": ..., "region": ..., "roleArn": ...}``. The
configuration is loaded once per container from ``CWE_CONFIG_FILE``.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional
import logging

from cloudwatch_exporter.core.config import ConfigStore
from cloudwatch_exporter.core.errors import ConfigError
from cloudwatch_exporter.monitoring.exporter import ScrapeHandler

logger = logging.getLogger(__name__)

_handler: Optional[ScrapeHandler] = None


def get_handler() -> ScrapeHandler:
    """Create the container-wide handler on first use."""
    global _handler
    if _handler is None:
        store = ConfigStore(os.environ.get("CWE_CONFIG_FILE", "config.yml"))
        store.load()
        _handler = ScrapeHandler(store)
        logger.info("CloudWatch exporter started...")
    return _handler


def _remaining_seconds(context: Any) -> Optional[float]:
    """Time left in this invocation, less a second to return the result."""
    remaining = getattr(context, "get_remaining_time_in_millis", None)
    if remaining is None:
        return None
    seconds = remaining() / 1000.0 - 1.0
    return seconds if seconds > 0 else None


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Serve one scrape and return the exposition text."""
    task = event.get("task")
    if not task:
        return {"scrape_result": "Error", "success": False, "error": "Missing task parameter"}

    try:
        scrape_handler = get_handler()
    except ConfigError as e:
        logger.error(f"Can't read configuration file: {e}")
        return {"scrape_result": "Error", "success": False, "error": f"Can't read configuration file: {e}"}

    result = scrape_handler.handle(
        event.get("target"),
        task,
        event.get("region"),
        event.get("roleArn"),
        timeout_seconds=_remaining_seconds(context),
    )
    if not result.success:
        return {"scrape_result": "Error", "success": False, "error": result.error}

    return {"scrape_result": result.body.decode("utf-8"), "success": True}
