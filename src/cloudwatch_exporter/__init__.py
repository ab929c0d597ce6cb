"""Scrape-time bridge from CloudWatch metrics to the Prometheus exposition format."""

__version__ = "0.1.0"
