"""giftflow CLI.

Usage:
    giftflow run-batch        Run one batch pass now
    giftflow detect-missed    Raise alerts for missed delivery dates
    giftflow alerts           List admin alerts
    giftflow serve            Start the API with the batch cron
    giftflow config-show      Display resolved configuration
"""

import asyncio
import logging
import os
from typing import Optional

import typer
from rich.console import Console

from giftflow.cli.config import load_config
from giftflow.cli.output import format_alerts_table, format_batch_summary
from giftflow.db.connection import get_db_context, init_db
from giftflow.services.alert_service import list_alerts
from giftflow.services.cron import run_scheduled_batch
from giftflow.services.missed_orders import detect_missed_orders
from giftflow.utils.redaction import redact_for_logging

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="giftflow",
    help="Scheduled gift order fulfillment",
    no_args_is_help=True,
)

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to giftflow.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """giftflow CLI: batch scheduling and fulfillment operations."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


def _load():
    try:
        return load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e


@app.command("run-batch")
def run_batch(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run one batch pass over due orders."""
    cfg = _load()
    init_db()
    try:
        summary = asyncio.run(run_scheduled_batch(cfg))
    except Exception as e:
        _log.debug("Batch run failed", exc_info=True)
        console.print(f"[red]Batch run failed:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(format_batch_summary(summary, as_json=json_output))


@app.command("detect-missed")
def detect_missed():
    """Raise alerts for orders whose delivery date passed unfulfilled."""
    init_db()
    with get_db_context() as db:
        alerts = detect_missed_orders(db)
        console.print(f"[bold]{len(alerts)}[/bold] new missed-order alert(s)")


@app.command()
def alerts(
    unresolved: bool = typer.Option(True, "--unresolved/--all", help="Only unresolved alerts"),
    limit: int = typer.Option(50, "--limit", help="Maximum alerts to show"),
):
    """List admin alerts, newest first."""
    init_db()
    with get_db_context() as db:
        rows = list_alerts(db, unresolved_only=unresolved, limit=limit)
        console.print(format_alerts_table(rows))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the API server (webhooks, admin actions, batch cron)."""
    import uvicorn

    cfg = _load()
    # Propagate config path to the API lifespan via env var
    if _config_path:
        os.environ["GIFTFLOW_CONFIG_PATH"] = str(_config_path)
    final_host = host or cfg.server.host
    final_port = port or cfg.server.port
    console.print(f"[bold]Starting giftflow on {final_host}:{final_port}[/bold]")
    uvicorn.run(
        "giftflow.api.main:app",
        host=final_host,
        port=final_port,
        log_level=cfg.server.log_level,
    )


@app.command("config-show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _load()
    data = redact_for_logging(cfg.model_dump())
    for section, values in data.items():
        console.print(f"[bold]{section}:[/bold]")
        for key, value in values.items():
            console.print(f"  {key}: {value}")


if __name__ == "__main__":
    app()
