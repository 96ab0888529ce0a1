"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag) for batch summaries and admin alerts.
"""

import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from giftflow.db.models import AdminAlert
from giftflow.services.batch_scheduler import BatchSummary

console = Console()

# Batch outcome colors
OUTCOME_COLORS = {
    "submitted": "green",
    "retry_scheduled": "yellow",
    "failed": "red",
    "blocked": "red",
    "skipped": "dim",
    "reverted": "yellow",
    "error": "red",
}

SEVERITY_COLORS = {
    "info": "blue",
    "warning": "yellow",
    "critical": "red",
}


def format_batch_summary(summary: BatchSummary, as_json: bool = False) -> str:
    """Format a batch run as a Rich panel plus per-order table, or JSON.

    Args:
        summary: Result of BatchScheduler.run().
        as_json: If True, return JSON string instead of Rich output.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(summary.to_dict(), indent=2)

    lines = [
        f"[bold]Execution:[/bold] {summary.execution_id}",
        f"[bold]Status:[/bold]    {summary.status}",
        f"[bold]Processed:[/bold] {summary.processed}",
        f"[bold]Submitted:[/bold] [green]{summary.succeeded}[/green]",
        f"[bold]Failed:[/bold]    [red]{summary.failed}[/red]",
        f"[bold]Skipped:[/bold]   {summary.skipped}",
        f"[bold]Missed:[/bold]    {summary.missed_alerts} new alert(s)",
    ]

    with console.capture() as capture:
        console.print(Panel("\n".join(lines), title="Batch Run", border_style="cyan"))
        if summary.results:
            table = Table(title="Orders", show_lines=True)
            table.add_column("Order", style="cyan", no_wrap=True)
            table.add_column("Outcome")
            table.add_column("Status")
            table.add_column("Request ID")
            table.add_column("Error")
            for result in summary.results:
                color = OUTCOME_COLORS.get(result.outcome, "white")
                table.add_row(
                    result.order_number,
                    f"[{color}]{result.outcome}[/{color}]",
                    result.status or "—",
                    result.fulfillment_request_id or "—",
                    result.error_code or "",
                )
            console.print(table)
    return capture.get()


def format_alerts_table(alerts: list[AdminAlert]) -> str:
    """Format admin alerts as a Rich table."""
    if not alerts:
        return "No alerts found."

    table = Table(title="Admin Alerts", show_lines=True)
    table.add_column("Created", no_wrap=True)
    table.add_column("Severity")
    table.add_column("Type", style="cyan")
    table.add_column("Order")
    table.add_column("Message")

    for alert in alerts:
        color = SEVERITY_COLORS.get(alert.severity, "white")
        table.add_row(
            alert.created_at[:19],
            f"[{color}]{alert.severity}[/{color}]",
            alert.alert_type,
            (alert.order_id or "—")[:12],
            alert.message,
        )

    with console.capture() as capture:
        console.print(table)
    return capture.get()
