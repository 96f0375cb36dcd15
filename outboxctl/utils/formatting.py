"""Rich Formatting Utilities for CLI Output"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _short_error(error: str | None, width: int = 60) -> str:
    if not error:
        return "—"
    first_line = error.splitlines()[0]
    return first_line[:width] + "..." if len(first_line) > width else first_line


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a page of jobs"""
    table = Table(title="Outbox Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Scheduled For", justify="left")
    table.add_column("Last Error", justify="left", style="white")

    for job in jobs:
        table.add_row(
            str(job.get("job_id", ""))[:8],  # Short ID
            job.get("job_type", ""),
            _status(job.get("status", "")),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            job.get("scheduled_for") or "—",
            _short_error(job.get("last_error")),
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    lines = [
        f"• Type: [magenta]{job.get('job_type', '')}[/magenta]",
        f"• Status: {_status(job.get('status', ''))}",
        f"• Attempts: [yellow]{job.get('attempts', 0)}/{job.get('max_attempts', 0)}[/yellow]",
        f"• Created: {job.get('created_at') or '—'}",
        f"• Scheduled For: {job.get('scheduled_for') or '—'}",
        f"• Completed: {job.get('completed_at') or '—'}",
    ]
    if job.get("locked_by"):
        lines.append(
            f"• Leased By: [blue]{job['locked_by']}[/blue] until {job.get('locked_until')}"
        )
    if job.get("last_error"):
        lines.append(f"\n[bold red]Last Error[/bold red]\n{job['last_error']}")

    lines.append(
        f"\n[bold]Payload[/bold]\n{json.dumps(job.get('payload', {}), indent=2)}"
    )

    return Panel(
        "\n".join(lines),
        title=f"Job {job.get('job_id', '')}",
        border_style=STATUS_STYLES.get(job.get("status", ""), "cyan"),
    )


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  {_status(status)}: {count}" for status, count in sorted(by_status.items())
    )
    type_lines = "\n".join(
        f"  [magenta]{job_type}[/magenta]: {count}"
        for job_type, count in sorted(stats.get("by_type", {}).items())
    )

    content = f"""
📊 [bold blue]Queue[/bold blue]

• Total Jobs: [blue]{stats.get("total_jobs", 0)}[/blue]
• Queue Depth: [yellow]{stats.get("queue_depth", 0)}[/yellow]
• Due Now: [cyan]{stats.get("due_now", 0)}[/cyan]
• Expired Leases: [red]{stats.get("expired_leases", 0)}[/red]
• Failed (last hour): [red]{stats.get("failed_last_hour", 0)}[/red]

[bold]By Status[/bold]
{status_lines or "  —"}

[bold]By Type[/bold]
{type_lines or "  —"}
"""

    return Panel(content, title="Outbox Statistics", border_style="green")
