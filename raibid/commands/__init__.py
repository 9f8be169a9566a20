"""CLI commands and the helpers they share."""
import logging
import signal
from contextlib import contextmanager
from typing import Iterator, List

import typer
from rich.console import Console

from raibid.modules.infra.errors import InfraError
from raibid.modules.infra.models import Component
from raibid.modules.infra.orchestrator import Orchestrator

logger = logging.getLogger("raibid.cli")

# Initialize consoles for rich output
console = Console()
err_console = Console(stderr=True)


def get_orchestrator(ctx: typer.Context) -> Orchestrator:
    """Orchestrator for this invocation, built from the loaded configuration."""
    obj = ctx.ensure_object(dict)
    if obj.get('orchestrator') is None:
        obj['orchestrator'] = Orchestrator(obj['config'])
    return obj['orchestrator']


def parse_components(names: List[str]) -> List[Component]:
    try:
        return Component.expand(names)
    except ValueError as e:
        err_console.print(f"❌ {e}")
        raise typer.Exit(1)


def print_error(error: InfraError) -> None:
    err_console.print(f"❌ [bold red]{error.component}[/bold red] failed", highlight=False)
    err_console.print(error.render(), markup=False, highlight=False)


@contextmanager
def cancel_on_interrupt(orchestrator: Orchestrator) -> Iterator[None]:
    """First Ctrl-C cancels the run cleanly (with rollback), the second aborts."""
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum, frame):
        if orchestrator.cancel.cancelled:
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        err_console.print("\n⚠️  Interrupted; cancelling after the current step and rolling back (Ctrl-C again to abort)")
        orchestrator.cancel.cancel()

    signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


__all__ = [
    'console',
    'err_console',
    'get_orchestrator',
    'parse_components',
    'print_error',
    'cancel_on_interrupt',
]
