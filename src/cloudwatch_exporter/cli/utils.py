"""CLI utility functions."""

from pathlib import Path
import logging

import typer

from ..core.config import ConfigStore
from ..core.errors import ConfigError

logger = logging.getLogger(__name__)


def load_store(config_file: Path) -> ConfigStore:
    """Load a configuration store or exit with an error message."""
    store = ConfigStore(config_file)
    try:
        store.load()
    except ConfigError as e:
        typer.echo(f"❌ Can't read configuration file: {e}", err=True)
        raise typer.Exit(1)
    return store


def format_duration(seconds: float) -> str:
    """Format duration as human-readable string."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"
