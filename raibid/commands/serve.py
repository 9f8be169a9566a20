from typing import Optional

import typer
import uvicorn

from raibid.config import Config

from . import err_console


def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (default: $RAIBID_API_HOST or 127.0.0.1)"),
    port: Optional[int] = typer.Option(None, help="Port (default: $RAIBID_API_PORT or 8088)"),
):
    """Serve the read-only status API."""
    try:
        Config.validate()
    except ValueError as e:
        err_console.print(f"❌ {e}")
        raise typer.Exit(1)

    host = host or Config.API_HOST
    port = port or Config.API_PORT
    print(f"📡 Serving status API on http://{host}:{port}")
    uvicorn.run("raibid.api.main:app", host=host, port=port)
