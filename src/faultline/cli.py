from __future__ import annotations

import json

import typer
import uvicorn

from faultline.config import get_settings
from faultline.db_errors import extract, rules_for

app = typer.Typer(help="faultline error translation service")


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Host interface to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
    reload: bool | None = typer.Option(None, help="Enable auto-reload (development only)"),
    log_level: str | None = typer.Option(None, help="Log level for the server"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "faultline.api:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload if reload is not None else settings.reload,
        log_level=log_level or settings.log_level,
        factory=True,
    )


@app.command()
def explain(
    state: str = typer.Option(..., help="Engine error-state (SQLSTATE), e.g. 23000"),
    message: str = typer.Option(..., help="Raw vendor error message"),
    dialect: str = typer.Option("mysql", help="Rule set: mysql or postgres"),
    trigger_marker: str | None = typer.Option(None, help="Override the user-raised error marker regex"),
) -> None:
    """Show what a client would see for a raw database error."""
    try:
        rules = rules_for(dialect, trigger_marker)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1)

    result = extract(state, message, rules)
    typer.echo(json.dumps({"status": result.status, "code": result.code, "message": result.message}))
