import logging
import sys
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from raibid.commands import err_console, serve, setup, status, teardown
from raibid.logging import setup_logging
from raibid.modules.infra.config import RaibidConfig
from raibid.utils import redact_sensitive_data

app = typer.Typer(help="raibid - self-hosted CI infrastructure installer", no_args_is_help=True)

app.command("setup")(setup.setup)
app.command("teardown")(teardown.teardown)
app.command("status")(status.status)
app.command("serve")(serve.serve)


# Global options callback
@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Configuration file (default: $RAIBID_CONFIG, ~/.config/raibid/config.yaml, ./raibid.yaml)"
    ),
):
    """raibid - install, validate and tear down the CI stack."""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug
    if 'config' not in ctx.obj:
        try:
            ctx.obj['config'] = RaibidConfig.load(config)
        except (FileNotFoundError, ValidationError, ValueError, yaml.YAMLError) as e:
            err_console.print(f"❌ Invalid configuration: {e}")
            raise typer.Exit(1)

    settings = ctx.obj['config'].logging
    setup_logging(
        debug,
        log_file=settings.file,
        level=settings.level,
        max_size_mb=settings.max_size_mb,
        backup_count=settings.backup_count,
    )
    if debug:
        logging.debug("Debug mode enabled")
        logging.debug("Configuration: %s", redact_sensitive_data(ctx.obj['config'].model_dump(mode='json')))


if __name__ == "__main__":
    try:
        app()
    except Exception as e:
        logging.error(f"Error: {e}", exc_info=logging.getLogger().isEnabledFor(logging.DEBUG))
        sys.exit(1)
