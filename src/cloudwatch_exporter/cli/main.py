"""
CloudWatch Exporter CLI

Main entry point for the cwe command-line tool.
"""

import typer
from typing import Optional
import logging
import os
import sys

from . import commands

app = typer.Typer(
    name="cwe",
    help="CloudWatch to Prometheus exporter",
    add_completion=False,
)

# Add command groups
app.add_typer(commands.validate.app, name="validate", help="Validate configurations")
app.add_typer(commands.info.app, name="info", help="Display configuration information")

# Single commands
app.command("serve", help="Serve scrapes over HTTP")(commands.serve.serve)
app.command("scrape", help="Run one scrape and print the exposition")(commands.scrape.scrape)


def _configure_logging(verbose: bool, quiet: bool) -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.environ.get("CWE_LOG_LEVEL", "INFO").upper(), logging.INFO)

    # Configure root logger
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    # Reduce noise from third-party libraries
    if not verbose:
        logging.getLogger('botocore').setLevel(logging.WARNING)
        logging.getLogger('boto3').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
):
    """CloudWatch to Prometheus exporter."""
    # Validate conflicting options
    if verbose and quiet:
        typer.echo("Error: Cannot use both --verbose and --quiet", err=True)
        raise typer.Exit(1)

    _configure_logging(verbose, quiet)


def _get_version() -> str:
    """Get package version."""
    try:
        import importlib.metadata
        return importlib.metadata.version("cloudwatch-exporter")
    except Exception:
        # Fallback version if package metadata is not available
        from .. import __version__
        return __version__


@app.command()
def version():
    """Display version information."""
    typer.echo(f"cloudwatch-exporter version {_get_version()}")

    try:
        import importlib.metadata

        typer.echo(f"Python {sys.version}")

        # Show key dependency versions
        deps = ['boto3', 'prometheus-client', 'fastapi', 'typer', 'pyyaml']
        typer.echo("\nKey dependencies:")
        for dep in deps:
            try:
                dep_version = importlib.metadata.version(dep)
                typer.echo(f"  {dep}: {dep_version}")
            except importlib.metadata.PackageNotFoundError:
                typer.echo(f"  {dep}: Not found")

    except ImportError:
        pass


if __name__ == "__main__":
    app()
