"""Scrape command: run one scrape from the command line."""

import time
from pathlib import Path
from typing import Optional

import typer

from ...monitoring.exporter import ScrapeHandler
from ..utils import load_store, format_duration


def scrape(
    task: str = typer.Option(..., "--task", "-t", help="Task name"),
    target: str = typer.Option(..., "--target", help="Target label value"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="AWS region"),
    role_arn: Optional[str] = typer.Option(None, "--role-arn", help="Role ARN or account alias to assume"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Scrape timeout in seconds, capped by the configured one"),
    config_file: Path = typer.Option(Path("config.yml"), "--config", "-c", envvar="CWE_CONFIG_FILE",
                                     help="Path to configuration file"),
):
    """Run one scrape and print the exposition."""
    store = load_store(config_file)
    handler = ScrapeHandler(store)

    started = time.monotonic()
    result = handler.handle(target, task, region, role_arn, timeout_seconds=timeout)
    elapsed = time.monotonic() - started

    if not result.success:
        typer.echo(f"❌ {result.error}", err=True)
        raise typer.Exit(1)

    typer.echo(result.body.decode("utf-8"), nl=False)
    typer.echo(f"Scrape completed in {format_duration(elapsed)}", err=True)
