"""CLI command modules."""

from . import serve, scrape, validate, info

__all__ = ["serve", "scrape", "validate", "info"]
