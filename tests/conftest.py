# tests/conftest.py
"""Pytest configuration and shared fixtures."""

import copy
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from tests.mocks import MockCloudWatchClient, MockSessionFactory, metric_key

from cloudwatch_exporter.core import ConfigStore, parse_settings


SAMPLE_CONFIG = {
    "defaults": {
        "region": "us-east-1",
        "statistics": ["Average"],
        "period_seconds": 60,
        "range_seconds": 600,
        "scrape_timeout_seconds": 10,
    },
    "accounts": {
        "prod": "arn:aws:iam::123456789012:role/exporter",
    },
    "tasks": [
        {
            "name": "ns_task",
            "metrics": [
                {
                    "aws_namespace": "ns",
                    "aws_metric_name": "m",
                    "aws_dimensions": ["Id"],
                    "aws_dimensions_select": {"Id": ["abc"]},
                    "aws_statistics": ["Average"],
                },
            ],
        },
        {
            "name": "ec2",
            "metrics": [
                {
                    "aws_namespace": "AWS/EC2",
                    "aws_metric_name": "CPUUtilization",
                    "aws_dimensions": ["InstanceId"],
                    "aws_statistics": ["Average"],
                },
            ],
        },
        {
            "name": "per_target",
            "metrics": [
                {
                    "aws_namespace": "AWS/EC2",
                    "aws_metric_name": "CPUUtilization",
                    "aws_dimensions": ["InstanceId"],
                    "aws_dimensions_select_param": {"InstanceId": ["$_target"]},
                    "aws_statistics": ["Maximum"],
                },
            ],
        },
        {
            "name": "secure",
            "role_arn": "prod",
            "role_policy": "required",
            "labels": {"team": "platform"},
            "metrics": [
                {
                    "aws_namespace": "AWS/SQS",
                    "aws_metric_name": "NumberOfMessagesSent",
                    "aws_dimensions": ["QueueName"],
                    "aws_dimensions_select": {"QueueName": ["orders"]},
                    "aws_statistics": ["Sum"],
                },
            ],
        },
    ],
}

EC2_INSTANCES = [
    {"Namespace": "AWS/EC2", "MetricName": "CPUUtilization",
     "Dimensions": [{"Name": "InstanceId", "Value": f"i-{n}"}]}
    for n in (3, 1, 2)
]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture
def config_data():
    """Provide a fresh copy of the sample configuration document."""
    return copy.deepcopy(SAMPLE_CONFIG)


@pytest.fixture
def settings(config_data):
    """Provide a parsed Settings snapshot."""
    return parse_settings(config_data, source="<test>")


@pytest.fixture
def config_file(tmp_path, config_data) -> Path:
    """Provide the sample configuration written to a YAML file."""
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(config_data))
    return path


@pytest.fixture
def config_store(config_file):
    """Provide a loaded ConfigStore."""
    store = ConfigStore(config_file)
    store.load()
    return store


@pytest.fixture
def mock_client():
    """Provide a mock CloudWatch client with a few known values."""
    return MockCloudWatchClient(
        metrics=list(EC2_INSTANCES),
        values={
            metric_key("m", "Average", Id="abc"): 42.0,
            metric_key("CPUUtilization", "Average", InstanceId="i-1"): 10.0,
            metric_key("CPUUtilization", "Average", InstanceId="i-2"): 20.0,
            metric_key("CPUUtilization", "Average", InstanceId="i-3"): 30.0,
            metric_key("NumberOfMessagesSent", "Sum", QueueName="orders"): 7.0,
        },
    )


@pytest.fixture
def session_factory(mock_client):
    """Provide a session factory bound to the mock client."""
    return MockSessionFactory(mock_client)


@pytest.fixture
def now():
    """Fixed reference time for query windows."""
    return datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
