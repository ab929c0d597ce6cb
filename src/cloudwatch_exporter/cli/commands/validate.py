"""Configuration validation commands."""

import typer
from pathlib import Path

from ...core.config import load_settings
from ...core.errors import ConfigError
from ...collector.converter import template_output_names

app = typer.Typer()


@app.command()
def config(
    config_file: Path = typer.Argument(..., help="Path to configuration file"),
    strict: bool = typer.Option(False, "--strict", help="Fail when output names collide across templates"),
):
    """Validate a configuration file."""
    typer.echo(f"Validating config: {config_file}")

    if not config_file.exists():
        typer.echo(f"❌ Configuration file not found: {config_file}", err=True)
        raise typer.Exit(1)

    try:
        settings = load_settings(config_file)
    except ConfigError as e:
        typer.echo(f"❌ Configuration validation failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("✅ Configuration validation successful!")
    typer.echo(f"  Tasks: {len(settings.tasks)}")
    if settings.accounts:
        typer.echo(f"  Accounts: {', '.join(settings.accounts)}")

    collisions = 0
    for task in settings.tasks.values():
        typer.echo(f"  {task.name}: {len(task.metrics)} metric template(s)")
        seen = set()
        for template in task.metrics:
            for name in template_output_names(template):
                if name in seen:
                    collisions += 1
                    typer.echo(f"      ⚠️  Output name '{name}' produced by more than one template")
                seen.add(name)

    if strict and collisions:
        typer.echo(f"❌ {collisions} output name collision(s)", err=True)
        raise typer.Exit(1)
