# src/cloudwatch_exporter/collector/remote.py
"""Deadlines, call accounting and per-account rate limiting for remote calls."""

from __future__ import annotations

import random
import threading
import time
from typing import Callable, Dict, Optional, Tuple
import logging

from ..core.errors import DeadlineExceeded

logger = logging.getLogger(__name__)

# Error codes CloudWatch and STS use for rate limiting
THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "LimitExceededException",
    "RequestThrottled",
    "RequestThrottledException",
})

# Error codes that affect every call made with the scrape's credentials
AUTH_ERROR_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "SignatureDoesNotMatch",
    "AuthFailure",
})


def is_throttling(code: Optional[str]) -> bool:
    return code in THROTTLING_CODES


def backoff_delay(attempt: int,
                  base_seconds: float,
                  max_seconds: float,
                  rng: Callable[[], float] = random.random) -> float:
    """
    Exponential backoff with full jitter.

    Args:
        attempt: Zero-based retry attempt
        base_seconds: Delay ceiling for the first retry
        max_seconds: Upper bound for the delay ceiling
        rng: Source of uniform values in [0, 1)

    Returns:
        Seconds to sleep before the next attempt
    """
    ceiling = min(max_seconds, base_seconds * (2 ** attempt))
    return ceiling * rng()


class Deadline:
    """Monotonic deadline for a single scrape."""

    def __init__(self, timeout_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._expires_at = clock() + timeout_seconds

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, query_id: Optional[str] = None) -> None:
        """Raise DeadlineExceeded if no time is left."""
        if self.expired:
            raise DeadlineExceeded(query_id)


class CallCounter:
    """Thread-safe count of remote calls made during one scrape."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        return self._value


class RateLimiterRegistry:
    """Bounded semaphores keyed by (region, role).

    Scrapes against the same account and region share one limiter, unrelated
    scrapes never wait on each other.
    """

    def __init__(self, max_concurrent_calls: int = 4):
        self.max_concurrent_calls = max_concurrent_calls
        self._limiters: Dict[Tuple[str, str], threading.BoundedSemaphore] = {}
        self._lock = threading.Lock()

    def limiter(self,
                region: str,
                role_arn: Optional[str],
                max_concurrent_calls: Optional[int] = None) -> threading.BoundedSemaphore:
        """Get or lazily create the limiter for a (region, role) pair."""
        key = (region, role_arn or "")
        limiter = self._limiters.get(key)
        if limiter is not None:
            return limiter

        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                size = max_concurrent_calls or self.max_concurrent_calls
                limiter = threading.BoundedSemaphore(size)
                self._limiters[key] = limiter
                logger.debug(f"Created rate limiter for region={region} role={role_arn or '-'} size={size}")
        return limiter

    def __len__(self) -> int:
        return len(self._limiters)


# Shared by every scrape in the process
default_limiters = RateLimiterRegistry()
