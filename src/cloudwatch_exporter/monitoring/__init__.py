"""Exporter self-monitoring and scrape rendering."""

from .exporter import ExporterMetrics, ScrapeHandler, ScrapeResponse

__all__ = [
    "ExporterMetrics",
    "ScrapeHandler",
    "ScrapeResponse",
]
