from typing import List

import typer

from . import cancel_on_interrupt, console, err_console, get_orchestrator, parse_components, print_error


def teardown(
    ctx: typer.Context,
    components: List[str] = typer.Argument(..., help="Components to remove (k3s, redis, gitea, keda, flux or all)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be removed without changing anything"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Remove components in reverse dependency order."""
    requested = parse_components(components)
    orchestrator = get_orchestrator(ctx)

    if not (dry_run or yes):
        names = ", ".join(c.value for c in requested)
        confirm = typer.confirm(f"Are you sure you want to remove {names}?", default=False)
        if not confirm:
            console.print("❌ Teardown cancelled.")
            raise typer.Exit()

    with cancel_on_interrupt(orchestrator):
        report = orchestrator.teardown([c.value for c in requested], dry_run=dry_run)

    for component, steps in report.plans.items():
        console.print(f"\n📋 [bold]{component.value}[/bold]")
        for step in steps:
            console.print(f"   • {step}", highlight=False)

    if not report.ok:
        print_error(report.error)
        if report.not_attempted:
            err_console.print(f"⏭️  Not attempted: {', '.join(c.value for c in report.not_attempted)}")
        raise typer.Exit(1)

    if dry_run:
        console.print("\n✅ Dry run complete, nothing was changed")
    else:
        console.print(f"🗑️  Removed: {', '.join(c.value for c in report.removed) or 'nothing'}")
