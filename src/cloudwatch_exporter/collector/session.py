# src/cloudwatch_exporter/collector/session.py
"""
CloudWatch sessions

Builds region-scoped boto3 clients, assumes cross-account roles through STS
and wraps every remote call with rate limiting, throttling backoff and the
scrape deadline.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from ..core.errors import AuthError, DeadlineExceeded, RemoteCallError
from ..core.models import Defaults
from .remote import (
    AUTH_ERROR_CODES,
    CallCounter,
    Deadline,
    RateLimiterRegistry,
    backoff_delay,
    default_limiters,
    is_throttling,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def client_config(deadline: Deadline, max_pool_connections: int = 10) -> Config:
    """botocore client config bounded by the scrape deadline.

    botocore's own retries are disabled, CloudWatchSession owns the policy.
    """
    timeout = max(1.0, deadline.remaining())
    return Config(
        connect_timeout=min(timeout, 10.0),
        read_timeout=timeout,
        retries={"total_max_attempts": 1},
        max_pool_connections=max_pool_connections,
    )


class CloudWatchSession:
    """Remote call wrapper for one scrape against one (region, role) pair."""

    def __init__(self,
                 client: Any,
                 region: str,
                 role_arn: Optional[str],
                 deadline: Deadline,
                 counter: CallCounter,
                 limiter: threading.BoundedSemaphore,
                 max_attempts: int = 5,
                 backoff_base_seconds: float = 0.2,
                 backoff_max_seconds: float = 5.0,
                 max_workers: int = 2,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize session.

        Args:
            client: boto3 CloudWatch client (or a compatible fake)
            region: AWS region the client is scoped to
            role_arn: Assumed role, None for ambient credentials
            deadline: Scrape deadline bounding every call and backoff
            counter: Scrape-local remote call counter
            limiter: Shared semaphore for this (region, role) pair
            max_attempts: Attempts per call on throttling or transient errors
            backoff_base_seconds: First backoff ceiling
            backoff_max_seconds: Backoff ceiling cap
            max_workers: Threads used to run calls under the deadline
            sleep: Sleep function, replaceable in tests
        """
        self.client = client
        self.region = region
        self.role_arn = role_arn
        self.deadline = deadline
        self.counter = counter
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

        self._limiter = limiter
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cwe-call")
        self._closed = False

    def call(self, operation: str, **kwargs) -> Dict[str, Any]:
        """
        Invoke a client operation with retries.

        Raises:
            AuthError: Credentials were rejected
            DeadlineExceeded: The scrape deadline elapsed
            RemoteCallError: Throttling exhausted or a non-retryable failure
        """
        if self._closed:
            raise RuntimeError("Session already closed")

        method = getattr(self.client, operation)
        attempt = 0

        while True:
            self.deadline.check()
            if not self._limiter.acquire(timeout=self.deadline.remaining()):
                raise DeadlineExceeded()

            self.counter.increment()
            try:
                future = self._executor.submit(method, **kwargs)
            except BaseException:
                self._limiter.release()
                raise
            # Slot is held until the call really finishes, even if abandoned
            future.add_done_callback(lambda _: self._limiter.release())

            try:
                return future.result(timeout=self.deadline.remaining())

            except FutureTimeoutError:
                future.cancel()
                logger.warning(f"{operation} abandoned: scrape deadline reached")
                raise DeadlineExceeded()

            except ClientError as e:
                code = e.response.get("Error", {}).get("Code")
                if code in AUTH_ERROR_CODES:
                    raise AuthError(f"{operation} rejected credentials: {e}", role_arn=self.role_arn) from e
                if is_throttling(code) and attempt + 1 < self.max_attempts:
                    self._wait_before_retry(operation, attempt, code)
                    attempt += 1
                    continue
                raise RemoteCallError(f"{operation} failed: {e}", code=code, throttled=is_throttling(code)) from e

            except TRANSIENT_ERRORS as e:
                if attempt + 1 < self.max_attempts:
                    self._wait_before_retry(operation, attempt, type(e).__name__)
                    attempt += 1
                    continue
                raise RemoteCallError(f"{operation} failed: {e}", code=type(e).__name__) from e

            except (NoCredentialsError, PartialCredentialsError) as e:
                raise AuthError(f"{operation} has no usable credentials: {e}", role_arn=self.role_arn) from e

            except BotoCoreError as e:
                raise RemoteCallError(f"{operation} failed: {e}", code=type(e).__name__) from e

    def _wait_before_retry(self, operation: str, attempt: int, reason: Optional[str]) -> None:
        delay = backoff_delay(attempt, self.backoff_base_seconds, self.backoff_max_seconds)
        if delay >= self.deadline.remaining():
            raise DeadlineExceeded()
        logger.warning(f"Retry {attempt + 1}/{self.max_attempts - 1} for {operation} "
                       f"after {delay:.2f}s ({reason})")
        self._sleep(delay)

    def close(self) -> None:
        """Abandon in-flight calls and release worker threads."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class SessionFactory:
    """Creates CloudWatch sessions, assuming roles when asked to."""

    def __init__(self,
                 limiters: Optional[RateLimiterRegistry] = None,
                 role_session_name: str = "cloudwatch-exporter",
                 refresh_margin_seconds: int = 60):
        self.limiters = limiters or default_limiters
        self.role_session_name = role_session_name
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)

        # role ARN -> (credentials, expiry); shared across scrapes
        self._credentials: Dict[str, Tuple[Dict[str, str], datetime]] = {}
        self._lock = threading.Lock()

    def open(self,
             region: str,
             role_arn: Optional[str],
             deadline: Deadline,
             counter: CallCounter,
             defaults: Defaults) -> CloudWatchSession:
        """
        Open a session for one scrape.

        Raises:
            AuthError: If the role cannot be assumed
        """
        if role_arn:
            credentials = self.assume_role(role_arn, region, deadline, counter,
                                           defaults.role_session_duration_seconds)
            boto_session = boto3.Session(
                region_name=region,
                aws_access_key_id=credentials["AccessKeyId"],
                aws_secret_access_key=credentials["SecretAccessKey"],
                aws_session_token=credentials["SessionToken"],
            )
        else:
            boto_session = boto3.Session(region_name=region)

        client = boto_session.client("cloudwatch", config=client_config(deadline, defaults.max_concurrent_calls))

        return CloudWatchSession(
            client=client,
            region=region,
            role_arn=role_arn,
            deadline=deadline,
            counter=counter,
            limiter=self.limiters.limiter(region, role_arn, defaults.max_concurrent_calls),
            max_attempts=defaults.max_attempts,
            backoff_base_seconds=defaults.backoff_base_seconds,
            backoff_max_seconds=defaults.backoff_max_seconds,
        )

    def assume_role(self,
                    role_arn: str,
                    region: str,
                    deadline: Deadline,
                    counter: CallCounter,
                    duration_seconds: int = 900) -> Dict[str, str]:
        """Exchange a role ARN for temporary credentials, reusing unexpired ones."""
        cached = self._cached_credentials(role_arn)
        if cached is not None:
            logger.debug(f"Reusing cached credentials for {role_arn}")
            return cached

        if deadline.expired:
            raise AuthError(f"No time left to assume role {role_arn}", role_arn=role_arn)

        sts = boto3.Session(region_name=region).client("sts", config=client_config(deadline))
        counter.increment()
        try:
            response = sts.assume_role(
                RoleArn=role_arn,
                RoleSessionName=self.role_session_name,
                DurationSeconds=duration_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to assume role {role_arn}: {e}")
            raise AuthError(f"Failed to assume role {role_arn}: {e}", role_arn=role_arn) from e

        raw = response["Credentials"]
        credentials = {
            "AccessKeyId": raw["AccessKeyId"],
            "SecretAccessKey": raw["SecretAccessKey"],
            "SessionToken": raw["SessionToken"],
        }
        expiration = raw.get("Expiration")
        if not isinstance(expiration, datetime):
            expiration = datetime.now(timezone.utc) + timedelta(seconds=duration_seconds)
        elif expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        with self._lock:
            self._credentials[role_arn] = (credentials, expiration)

        logger.info(f"Assumed role {role_arn} (expires {expiration.isoformat()})")
        return credentials

    def _cached_credentials(self, role_arn: str) -> Optional[Dict[str, str]]:
        with self._lock:
            entry = self._credentials.get(role_arn)
        if entry is None:
            return None
        credentials, expiration = entry
        if expiration - self.refresh_margin <= datetime.now(timezone.utc):
            return None
        return credentials

    def forget(self, role_arn: Optional[str] = None) -> None:
        """Drop cached credentials (all of them when no role is given)."""
        with self._lock:
            if role_arn is None:
                self._credentials.clear()
            else:
                self._credentials.pop(role_arn, None)
