"""Serve command: run the HTTP exporter."""

import signal
from pathlib import Path
import logging

import typer
import uvicorn

from ...monitoring.exporter import ScrapeHandler
from ...server.app import create_app
from ..utils import load_store

logger = logging.getLogger(__name__)


def _install_reload_signal(handler: ScrapeHandler) -> None:
    """Reload the configuration on SIGHUP where the platform has it."""
    if not hasattr(signal, "SIGHUP"):
        return

    def _on_sighup(signum, frame):
        ok, message = handler.reload()
        logger.info(f"SIGHUP: {message}")

    signal.signal(signal.SIGHUP, _on_sighup)


def serve(
    config_file: Path = typer.Option(Path("config.yml"), "--config", "-c", envvar="CWE_CONFIG_FILE",
                                     help="Path to configuration file"),
    host: str = typer.Option("0.0.0.0", "--host", help="Address to listen on"),
    port: int = typer.Option(9042, "--port", "-p", help="Port to listen on"),
    scrape_path: str = typer.Option("/scrape", "--scrape-path", help="Path under which CloudWatch metrics are exposed"),
    metrics_path: str = typer.Option("/metrics", "--metrics-path", help="Path under which exporter metrics are exposed"),
):
    """Serve scrapes over HTTP."""
    store = load_store(config_file)
    handler = ScrapeHandler(store)
    app = create_app(handler, scrape_path=scrape_path, metrics_path=metrics_path)

    _install_reload_signal(handler)

    typer.echo("CloudWatch exporter started...")
    uvicorn.run(app, host=host, port=port, log_level="warning")
