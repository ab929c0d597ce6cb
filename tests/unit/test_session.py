"""Unit tests for remote call handling, sessions and role assumption."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError, PartialCredentialsError

from cloudwatch_exporter.collector.remote import (
    CallCounter,
    Deadline,
    RateLimiterRegistry,
    backoff_delay,
    is_throttling,
)
from cloudwatch_exporter.collector.session import CloudWatchSession, SessionFactory
from cloudwatch_exporter.core.errors import AuthError, DeadlineExceeded, RemoteCallError
from cloudwatch_exporter.core.models import Defaults

from tests.mocks import MockCloudWatchClient, MockSessionFactory, client_error

ROLE = "arn:aws:iam::123456789012:role/exporter"


class FlakyClient:
    """Client whose get_metric_data raises the queued errors first."""

    def __init__(self, errors):
        self.errors = list(errors)
        self.calls = 0

    def get_metric_data(self, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return {"MetricDataResults": []}


def _session(client, max_attempts=3, timeout=10.0, sleeps=None):
    return CloudWatchSession(
        client=client,
        region="us-east-1",
        role_arn=None,
        deadline=Deadline(timeout),
        counter=CallCounter(),
        limiter=threading.BoundedSemaphore(2),
        max_attempts=max_attempts,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
    )


@pytest.mark.unit
class TestRemoteHelpers:
    """Test deadline, backoff and limiter helpers."""

    def test_backoff_grows_and_caps(self):
        assert backoff_delay(0, 0.2, 5.0, rng=lambda: 1.0) == 0.2
        assert backoff_delay(3, 0.2, 5.0, rng=lambda: 1.0) == pytest.approx(1.6)
        assert backoff_delay(10, 0.2, 5.0, rng=lambda: 1.0) == 5.0
        assert backoff_delay(10, 0.2, 5.0, rng=lambda: 0.5) == 2.5

    def test_deadline_uses_clock(self):
        ticks = [100.0]
        deadline = Deadline(5.0, clock=lambda: ticks[0])

        assert deadline.remaining() == 5.0
        ticks[0] = 104.0
        assert deadline.remaining() == 1.0
        assert not deadline.expired
        ticks[0] = 106.0
        assert deadline.remaining() == 0.0
        with pytest.raises(DeadlineExceeded):
            deadline.check("q7")

    def test_throttling_codes(self):
        assert is_throttling("Throttling")
        assert is_throttling("TooManyRequestsException")
        assert not is_throttling("AccessDenied")
        assert not is_throttling(None)

    def test_limiters_are_keyed_by_region_and_role(self):
        registry = RateLimiterRegistry(max_concurrent_calls=3)

        a = registry.limiter("us-east-1", ROLE)
        assert registry.limiter("us-east-1", ROLE) is a
        assert registry.limiter("us-east-1", None) is not a
        assert registry.limiter("eu-west-1", ROLE) is not a
        assert len(registry) == 3

    def test_call_counter_is_thread_safe(self):
        counter = CallCounter()
        threads = [threading.Thread(target=lambda: [counter.increment() for _ in range(1000)])
                   for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counter.value == 4000


@pytest.mark.unit
class TestCloudWatchSession:
    """Test retries and error classification."""

    def test_throttling_is_retried(self):
        sleeps = []
        client = FlakyClient([client_error("Throttling"), client_error("Throttling")])

        with _session(client, sleeps=sleeps) as session:
            response = session.call("get_metric_data")

        assert response == {"MetricDataResults": []}
        assert client.calls == 3
        assert len(sleeps) == 2
        assert session.counter.value == 3

    def test_throttling_exhausts_attempts(self):
        client = FlakyClient([client_error("Throttling")] * 5)

        with _session(client, max_attempts=2) as session:
            with pytest.raises(RemoteCallError) as exc_info:
                session.call("get_metric_data")

        assert exc_info.value.throttled
        assert client.calls == 2

    def test_transient_errors_are_retried(self):
        client = FlakyClient([EndpointConnectionError(endpoint_url="https://monitoring")])

        with _session(client) as session:
            session.call("get_metric_data")

        assert client.calls == 2

    def test_auth_errors_are_not_retried(self):
        client = FlakyClient([client_error("ExpiredToken")])

        with _session(client) as session:
            with pytest.raises(AuthError):
                session.call("get_metric_data")

        assert client.calls == 1

    @pytest.mark.parametrize("error", [
        NoCredentialsError(),
        PartialCredentialsError(provider="env", cred_var="AWS_SECRET_ACCESS_KEY"),
    ])
    def test_missing_credentials_are_auth_errors(self, error):
        client = FlakyClient([error])

        with _session(client) as session:
            with pytest.raises(AuthError):
                session.call("get_metric_data")

        assert client.calls == 1

    def test_other_client_errors_fail_the_call(self):
        client = FlakyClient([client_error("InvalidParameterValue")])

        with _session(client) as session:
            with pytest.raises(RemoteCallError) as exc_info:
                session.call("get_metric_data")

        assert exc_info.value.code == "InvalidParameterValue"
        assert not exc_info.value.throttled

    def test_backoff_never_outlives_deadline(self):
        client = FlakyClient([client_error("Throttling")] * 5)
        session = _session(client, timeout=0.5)
        session.backoff_base_seconds = session.backoff_max_seconds = 1e6

        try:
            with pytest.raises(DeadlineExceeded):
                session.call("get_metric_data")
        finally:
            session.close()
        assert client.calls == 1

    def test_slow_call_is_abandoned_at_deadline(self):
        release = threading.Event()

        class SlowClient:
            def get_metric_data(self, **kwargs):
                release.wait(5)
                return {}

        session = _session(SlowClient(), timeout=0.2)
        try:
            with pytest.raises(DeadlineExceeded):
                session.call("get_metric_data")
        finally:
            release.set()
            session.close()

    def test_closed_session_rejects_calls(self):
        session = _session(FlakyClient([]))
        session.close()
        with pytest.raises(RuntimeError):
            session.call("get_metric_data")


@pytest.mark.unit
class TestSessionFactory:
    """Test client creation and role assumption against a patched boto3."""

    @pytest.fixture
    def boto_session(self, mocker):
        session_cls = mocker.patch("cloudwatch_exporter.collector.session.boto3.Session")
        sts = session_cls.return_value.client.return_value
        sts.assume_role.return_value = {
            "Credentials": {
                "AccessKeyId": "AKIA",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
                "Expiration": datetime.now(timezone.utc) + timedelta(hours=1),
            }
        }
        return session_cls

    def test_ambient_credentials(self, boto_session):
        factory = SessionFactory(limiters=RateLimiterRegistry())
        counter = CallCounter()

        with factory.open("eu-west-1", None, Deadline(10), counter, Defaults()) as session:
            assert session.region == "eu-west-1"

        boto_session.assert_called_once_with(region_name="eu-west-1")
        assert counter.value == 0

    def test_role_is_assumed_once_and_cached(self, boto_session):
        factory = SessionFactory(limiters=RateLimiterRegistry())
        counter = CallCounter()

        factory.open("us-east-1", ROLE, Deadline(10), counter, Defaults()).close()
        factory.open("us-east-1", ROLE, Deadline(10), counter, Defaults()).close()

        sts = boto_session.return_value.client.return_value
        assert sts.assume_role.call_count == 1
        assert counter.value == 1
        boto_session.assert_any_call(
            region_name="us-east-1",
            aws_access_key_id="AKIA",
            aws_secret_access_key="secret",
            aws_session_token="token",
        )

    def test_expiring_credentials_are_refreshed(self, boto_session):
        sts = boto_session.return_value.client.return_value
        sts.assume_role.return_value["Credentials"]["Expiration"] = (
            datetime.now(timezone.utc) + timedelta(seconds=30)
        )
        factory = SessionFactory(limiters=RateLimiterRegistry(), refresh_margin_seconds=60)

        factory.assume_role(ROLE, "us-east-1", Deadline(10), CallCounter())
        factory.assume_role(ROLE, "us-east-1", Deadline(10), CallCounter())

        assert sts.assume_role.call_count == 2

    def test_assume_role_failure_raises_auth_error(self, boto_session):
        sts = boto_session.return_value.client.return_value
        sts.assume_role.side_effect = client_error("AccessDenied", "AssumeRole")
        factory = SessionFactory(limiters=RateLimiterRegistry())

        with pytest.raises(AuthError) as exc_info:
            factory.open("us-east-1", ROLE, Deadline(10), CallCounter(), Defaults())

        assert exc_info.value.role_arn == ROLE

    def test_forget_drops_cached_credentials(self, boto_session):
        factory = SessionFactory(limiters=RateLimiterRegistry())
        factory.assume_role(ROLE, "us-east-1", Deadline(10), CallCounter())
        factory.forget(ROLE)
        factory.assume_role(ROLE, "us-east-1", Deadline(10), CallCounter())

        sts = boto_session.return_value.client.return_value
        assert sts.assume_role.call_count == 2


def _wait_for(condition, timeout=5.0):
    expires = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > expires:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


@pytest.mark.unit
class TestSharedLimiter:
    """Test that sessions opened by one factory share per-account limits."""

    def test_same_region_and_role_share_one_limiter(self):
        client = MockCloudWatchClient()
        client.gate = threading.Event()
        factory = MockSessionFactory(client)
        defaults = Defaults(max_concurrent_calls=2)
        deadline = Deadline(10.0)
        sessions = [factory.open("us-east-1", ROLE, deadline, CallCounter(), defaults) for _ in range(4)]
        other = factory.open("eu-west-1", ROLE, deadline, CallCounter(), defaults)

        def call(session):
            session.call("list_metrics", Namespace="ns", MetricName="m")

        threads = [threading.Thread(target=call, args=(s,)) for s in sessions]
        try:
            for t in threads:
                t.start()
            _wait_for(lambda: client.in_flight == 2)
            time.sleep(0.1)
            assert client.in_flight == 2

            threads.append(threading.Thread(target=call, args=(other,)))
            threads[-1].start()
            _wait_for(lambda: client.in_flight == 3)
        finally:
            client.gate.set()
            for t in threads:
                t.join(timeout=5)
            for session in sessions + [other]:
                session.close()

        assert client.peak_in_flight == 3
        assert client.call_count["list_metrics"] == 5
