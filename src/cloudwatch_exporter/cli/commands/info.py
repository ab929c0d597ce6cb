"""Configuration information commands."""

import json
import typer
from pathlib import Path

import rich.console
import rich.table

from ...collector.converter import template_output_names
from ...collector.expander import literal_only
from ..utils import load_store

app = typer.Typer()
console = rich.console.Console()


@app.command()
def tasks(
    config_file: Path = typer.Option(Path("config.yml"), "--config", "-c", envvar="CWE_CONFIG_FILE",
                                     help="Path to configuration file"),
    output_format: str = typer.Option("rich", "--format", help="Output format (rich, json)"),
):
    """List configured tasks."""
    settings = load_store(config_file).current_snapshot()
    defaults = settings.defaults

    rows = []
    for task in settings.tasks.values():
        names = []
        for template in task.metrics:
            names.extend(template_output_names(template))
        rows.append({
            "name": task.name,
            "region": task.default_region or defaults.region,
            "role": settings.resolve_role(task.role_arn),
            "role_policy": task.role_policy.value,
            "templates": len(task.metrics),
            "discovery": not literal_only(task),
            "output_names": list(dict.fromkeys(names)),
        })

    if output_format == "json":
        typer.echo(json.dumps(rows, indent=2))
        return

    table = rich.table.Table(title="Tasks")
    table.add_column("Task", style="cyan")
    table.add_column("Region")
    table.add_column("Role")
    table.add_column("Policy")
    table.add_column("Templates", justify="right")
    table.add_column("Discovery")
    table.add_column("Output names")

    for row in rows:
        table.add_row(
            row["name"],
            row["region"] or "-",
            row["role"] or "-",
            row["role_policy"],
            str(row["templates"]),
            "yes" if row["discovery"] else "no",
            "\n".join(row["output_names"]),
        )

    console.print(table)
