"""Integration tests for the HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from cloudwatch_exporter.collector.factory import CollectorFactory
from cloudwatch_exporter.monitoring import ExporterMetrics, ScrapeHandler
from cloudwatch_exporter.server.app import create_app, scrape_timeout

from tests.mocks import MockCloudWatchClient, MockSessionFactory


@pytest.fixture
def handler(config_store, session_factory):
    return ScrapeHandler(
        config_store,
        factory=CollectorFactory(session_factory=session_factory),
        metrics=ExporterMetrics(CollectorRegistry()),
    )


@pytest.fixture
def client(handler):
    return TestClient(create_app(handler))


@pytest.mark.integration
class TestScrapeEndpoint:
    """Test /scrape end to end against the mock CloudWatch client."""

    def test_scrape_literal_task(self, client):
        response = client.get("/scrape", params={"task": "ns_task", "target": "tgt1"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'ns_m{Id="abc",target="tgt1"} 42.0' in response.text

    def test_scrape_discovery_task(self, client):
        response = client.get("/scrape", params={"task": "ec2", "target": "fleet"})

        assert response.status_code == 200
        lines = [l for l in response.text.splitlines() if l.startswith("aws_ec2_cpuutilization{")]
        assert [l.split('InstanceId="')[1].split('"')[0] for l in lines] == ["i-3", "i-1", "i-2"]

    def test_missing_task(self, client, mock_client):
        response = client.get("/scrape", params={"target": "tgt1"})

        assert response.status_code == 400
        assert response.text == "Error: Missing task parameter\n"
        assert mock_client.calls == []

    def test_unknown_task(self, client, mock_client):
        response = client.get("/scrape", params={"task": "nope", "target": "tgt1"})

        assert response.status_code == 400
        assert "Unknown task: nope" in response.text
        assert mock_client.calls == []

    def test_missing_target(self, client):
        response = client.get("/scrape", params={"task": "ns_task"})

        assert response.status_code == 400
        assert "Missing target parameter" in response.text

    def test_invalid_role(self, client):
        response = client.get("/scrape", params={"task": "ns_task", "target": "t", "roleArn": "bogus"})

        assert response.status_code == 400
        assert "Invalid roleArn parameter" in response.text

    def test_auth_failure_is_forbidden(self, config_store):
        handler = ScrapeHandler(
            config_store,
            factory=CollectorFactory(session_factory=MockSessionFactory(MockCloudWatchClient(), fail_auth=True)),
            metrics=ExporterMetrics(CollectorRegistry()),
        )
        client = TestClient(create_app(handler))

        response = client.get("/scrape", params={"task": "secure", "target": "tgt1"})

        assert response.status_code == 403
        assert "ns_m" not in response.text

    def test_scrape_timeout_header_bounds_the_scrape(self, client, handler, mocker):
        handle = mocker.spy(handler, "handle")

        response = client.get("/scrape", params={"task": "ns_task", "target": "tgt1"},
                              headers={"X-Prometheus-Scrape-Timeout-Seconds": "4"})

        assert response.status_code == 200
        assert handle.call_args.kwargs["timeout_seconds"] == pytest.approx(3.5)

    def test_without_timeout_header_the_configured_timeout_applies(self, client, handler, mocker):
        handle = mocker.spy(handler, "handle")

        client.get("/scrape", params={"task": "ns_task", "target": "tgt1"})

        assert handle.call_args.kwargs["timeout_seconds"] is None


@pytest.mark.integration
class TestOperationalEndpoints:
    """Test /reload, /metrics and /healthz."""

    def test_reload_success(self, client):
        response = client.post("/reload")

        assert response.status_code == 200
        assert response.text == "Reload complete\n"

    def test_reload_failure_keeps_serving(self, client, config_file):
        config_file.write_text("tasks: [unclosed\n")

        response = client.get("/reload")
        assert response.status_code == 500
        assert response.text.startswith("Can't read configuration file")

        scrape = client.get("/scrape", params={"task": "ns_task", "target": "tgt1"})
        assert scrape.status_code == 200

    def test_metrics(self, client):
        client.get("/scrape", params={"task": "ns_task", "target": "tgt1"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'cloudwatch_exporter_scrapes_total{outcome="success",task="ns_task"} 1.0' in response.text
        assert "cloudwatch_requests_total 1.0" in response.text

    def test_healthz(self, client):
        data = client.get("/healthz").json()

        assert data["status"] == "ok"
        assert data["tasks"] == ["ns_task", "ec2", "per_target", "secure"]
        assert data["reloads"] == 1
        assert data["last_error"] is None

    def test_custom_paths(self, handler):
        client = TestClient(create_app(handler, scrape_path="/cloudwatch", metrics_path="/internal"))

        assert client.get("/cloudwatch", params={"task": "ns_task", "target": "t"}).status_code == 200
        assert client.get("/internal").status_code == 200
        assert client.get("/scrape").status_code == 404


@pytest.mark.unit
@pytest.mark.parametrize("header, expected", [
    (None, None),
    ("abc", None),
    ("0", None),
    ("-3", None),
    ("nan", None),
    ("10", 9.5),
    ("0.6", 0.3),
])
def test_scrape_timeout(header, expected):
    assert scrape_timeout(header) == (pytest.approx(expected) if expected is not None else None)
