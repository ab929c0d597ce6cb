"""Integration tests for the Lambda entry point."""

import pytest
from prometheus_client import CollectorRegistry

from cloudwatch_exporter.collector.factory import CollectorFactory
from cloudwatch_exporter.monitoring import ExporterMetrics, ScrapeHandler
from cloudwatch_exporter.server import lambda_handler


@pytest.fixture
def installed_handler(monkeypatch, config_store, session_factory):
    handler = ScrapeHandler(
        config_store,
        factory=CollectorFactory(session_factory=session_factory),
        metrics=ExporterMetrics(CollectorRegistry()),
    )
    monkeypatch.setattr(lambda_handler, "_handler", handler)
    return handler


@pytest.mark.integration
class TestLambdaHandler:
    """Test event handling with a preinstalled handler."""

    def test_successful_event(self, installed_handler):
        result = lambda_handler.handler({"task": "ns_task", "target": "tgt1"}, None)

        assert result["success"] is True
        assert 'ns_m{Id="abc",target="tgt1"} 42.0' in result["scrape_result"]

    def test_missing_task(self, installed_handler, mock_client):
        result = lambda_handler.handler({"target": "tgt1"}, None)

        assert result["success"] is False
        assert result["error"] == "Missing task parameter"
        assert mock_client.calls == []

    def test_unknown_task(self, installed_handler):
        result = lambda_handler.handler({"task": "nope", "target": "tgt1"}, None)

        assert result["success"] is False
        assert result["error"] == "Unknown task: nope"


@pytest.mark.integration
def test_configuration_is_loaded_from_environment(monkeypatch, config_file):
    monkeypatch.setattr(lambda_handler, "_handler", None)
    monkeypatch.setenv("CWE_CONFIG_FILE", str(config_file))

    handler = lambda_handler.get_handler()

    assert lambda_handler.get_handler() is handler
    assert handler.store.current_snapshot().task_names()[0] == "ns_task"


@pytest.mark.integration
def test_unreadable_configuration(monkeypatch, tmp_path):
    monkeypatch.setattr(lambda_handler, "_handler", None)
    monkeypatch.setenv("CWE_CONFIG_FILE", str(tmp_path / "absent.yml"))

    result = lambda_handler.handler({"task": "ns_task", "target": "tgt1"}, None)

    assert result["success"] is False
    assert result["error"].startswith("Can't read configuration file")


@pytest.mark.integration
def test_remaining_invocation_time_bounds_the_scrape(installed_handler, mocker):
    handle = mocker.spy(installed_handler, "handle")
    context = mocker.Mock()
    context.get_remaining_time_in_millis.return_value = 3000

    result = lambda_handler.handler({"task": "ns_task", "target": "tgt1"}, context)

    assert result["success"] is True
    assert handle.call_args.kwargs["timeout_seconds"] == pytest.approx(2.0)
    assert lambda_handler._remaining_seconds(None) is None
