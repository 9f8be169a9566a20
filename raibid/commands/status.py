import json
from typing import List, Optional

import typer
from rich.table import Table

from raibid.modules.infra.models import HealthStatus

from . import console, get_orchestrator, parse_components

STATUS_STYLES = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.DEGRADED: "yellow",
    HealthStatus.UNHEALTHY: "red",
    HealthStatus.UNKNOWN: "dim",
}


def status(
    ctx: typer.Context,
    components: Optional[List[str]] = typer.Argument(None, help="Components to check (default: all)"),
    as_json: bool = typer.Option(False, "--json", help="Print the status as JSON"),
):
    """Show installation state and current health of each component."""
    requested = parse_components(components) if components else None
    statuses = get_orchestrator(ctx).status([c.value for c in requested] if requested else None)

    if as_json:
        typer.echo(json.dumps([s.to_dict() for s in statuses], indent=2))
        return

    table = Table(title="raibid status")
    table.add_column("Component", style="cyan")
    table.add_column("Installed")
    table.add_column("Health")
    table.add_column("Details")
    table.add_column("Missing dependencies")
    for s in statuses:
        style = STATUS_STYLES[s.health.status]
        table.add_row(
            s.component.value,
            "yes" if s.installed else "no",
            f"[{style}]{s.health.status.value}[/{style}]",
            s.health.message,
            ", ".join(c.value for c in s.missing_dependencies) or "-",
        )
    console.print(table)
