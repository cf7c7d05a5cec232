#!/usr/bin/env python3
"""Main CLI entry point for Pulse using Typer.

Provides the `pulse` command: `serve` runs the API with the dispatcher, and
the `cron` group evaluates expressions offline.
"""

import os
from datetime import datetime
from typing import Optional

import typer
from typing_extensions import Annotated

from .. import __version__
from ..exceptions import InvalidExpression
from ..scheduling.cron import CronEvaluator
from ..scheduling.models import ensure_utc, utc_now


app = typer.Typer(
    name="pulse",
    help="Pulse - scheduled connection tests with live progress",
    add_completion=False,
)

cron_app = typer.Typer(help="Evaluate cron expressions")
app.add_typer(cron_app, name="cron")


@app.callback()
def main():
    """
    Pulse - scheduled connection tests with live progress.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"Pulse v{__version__}")


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on")] = 8000,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Log level (default: PULSE_LOG_LEVEL or INFO)")
    ] = None,
    reload: Annotated[bool, typer.Option("--reload", help="Reload on code changes")] = False,
):
    """Run the API server and the schedule dispatcher."""
    import uvicorn

    if log_level:
        os.environ["PULSE_LOG_LEVEL"] = log_level.upper()

    uvicorn.run(
        "pulse.api.main:build_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=(log_level or os.getenv("PULSE_LOG_LEVEL", "info")).lower(),
    )


def _parse_after(after: Optional[str]) -> datetime:
    if after is None:
        return utc_now()
    try:
        return ensure_utc(datetime.fromisoformat(after))
    except ValueError:
        typer.echo(f"Invalid --after timestamp: {after}", err=True)
        raise typer.Exit(code=2)


@cron_app.command("next")
def cron_next(
    expression: Annotated[str, typer.Argument(help="Cron expression, e.g. '*/15 * * * *'")],
    count: Annotated[int, typer.Option("--count", "-n", min=1, max=100, help="Number of occurrences")] = 5,
    after: Annotated[
        Optional[str],
        typer.Option("--after", help="ISO timestamp to start from (UTC when no offset, default: now)")
    ] = None,
):
    """Print the next occurrences of an expression."""
    evaluator = CronEvaluator()
    start = _parse_after(after)
    try:
        occurrences = evaluator.next_occurrences(expression, start, count)
    except InvalidExpression as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(evaluator.describe(expression))
    for occurrence in occurrences:
        typer.echo(occurrence.isoformat())


@cron_app.command("validate")
def cron_validate(
    expression: Annotated[str, typer.Argument(help="Cron expression to validate")],
):
    """Validate an expression and show when it runs next."""
    result = CronEvaluator().validate_expression(expression)
    if not result.is_valid:
        typer.echo(f"Invalid: {result.error_message}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Valid: {result.description}")
    typer.echo(f"Next run: {result.next_run_at.isoformat()}")


@cron_app.command("presets")
def cron_presets():
    """List the built-in cron presets."""
    for preset in CronEvaluator().presets():
        typer.echo(f"{preset.name:<20} {preset.expression:<16} {preset.label}")


if __name__ == "__main__":
    app()
