from typing import List

import typer
from rich.table import Table

from . import cancel_on_interrupt, console, err_console, get_orchestrator, parse_components, print_error


def setup(
    ctx: typer.Context,
    components: List[str] = typer.Argument(..., help="Components to install (k3s, redis, gitea, keda, flux or all)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run pre-flight checks and show the plan without changing anything"),
):
    """Install components in dependency order, rolling back whatever fails."""
    requested = parse_components(components)
    orchestrator = get_orchestrator(ctx)

    with cancel_on_interrupt(orchestrator):
        report = orchestrator.setup([c.value for c in requested], dry_run=dry_run)

    if dry_run:
        for component, result in report.results.items():
            console.print(f"\n📋 [bold]{component.value}[/bold] (pre-flight passed)")
            for step in result.steps:
                console.print(f"   • {step}", highlight=False)
    elif report.results:
        table = Table(title="Setup")
        table.add_column("Component", style="cyan")
        table.add_column("Action")
        table.add_column("Duration", justify="right")
        table.add_column("Health")
        table.add_column("Credentials")
        for component, result in report.results.items():
            table.add_row(
                component.value,
                result.action,
                f"{result.duration:.1f}s",
                result.health.status.value if result.health else "-",
                str(result.credentials_path) if result.credentials_path else "-",
            )
        console.print(table)

    if not report.ok:
        print_error(report.error)
        if report.not_attempted:
            err_console.print(f"⏭️  Not attempted: {', '.join(c.value for c in report.not_attempted)}")
        raise typer.Exit(1)

    if dry_run:
        console.print("\n✅ Dry run complete, nothing was changed")
    else:
        console.print(f"✅ Setup complete: {', '.join(c.value for c in report.succeeded)}")
