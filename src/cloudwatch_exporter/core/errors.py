# src/cloudwatch_exporter/core/errors.py
"""Exception hierarchy for the exporter."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ExporterError(Exception):
    """Base class for all exporter errors."""


class ConfigError(ExporterError):
    """Configuration document is missing, malformed or invalid."""


class ValidationReason(Enum):
    """Why a scrape request was rejected."""
    MISSING_PARAMETER = "missing_parameter"
    UNKNOWN_TASK = "unknown_task"
    INVALID_PARAMETER = "invalid_parameter"


class ValidationError(ExporterError):
    """Scrape request rejected before any remote call was made."""

    def __init__(self, reason: ValidationReason, field: str, message: Optional[str] = None):
        self.reason = reason
        self.field = field
        if message is None:
            if reason == ValidationReason.MISSING_PARAMETER:
                message = f"Missing {field} parameter"
            elif reason == ValidationReason.UNKNOWN_TASK:
                message = f"Unknown task: {field}"
            else:
                message = f"Invalid {field} parameter"
        super().__init__(message)


class AuthError(ExporterError):
    """Role assumption or credential setup failed for the whole scrape."""

    def __init__(self, message: str, role_arn: Optional[str] = None):
        self.role_arn = role_arn
        super().__init__(message)


class RemoteCallError(ExporterError):
    """A remote call failed for a single query (or a single discovery call)."""

    def __init__(self,
                 message: str,
                 query_id: Optional[str] = None,
                 code: Optional[str] = None,
                 throttled: bool = False):
        self.query_id = query_id
        self.code = code
        self.throttled = throttled
        super().__init__(message)


class DeadlineExceeded(RemoteCallError):
    """Marks a query that was cut short by the scrape deadline.

    Only ever recorded in a fetch result, never raised out of the engine.
    """

    def __init__(self, query_id: Optional[str] = None):
        super().__init__("Scrape deadline exceeded", query_id=query_id, code="DeadlineExceeded")
