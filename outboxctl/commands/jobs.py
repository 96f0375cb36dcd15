"""Jobs Commands - Inspect and repair outbox jobs"""

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm

from ..client.endpoints import OutboxClient, OutboxError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Outbox job inspection and retry commands")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    page: int = typer.Option(1, "--page", "-p", min=1, help="Page number"),
    page_size: int | None = typer.Option(
        None, "--page-size", help="Jobs per page"
    ),
):
    """📋 List outbox jobs, newest first"""
    base_url = config.get("api.base_url")
    page_size = page_size or int(config.get("display.page_size", 20))

    try:
        with OutboxClient(base_url) as client:
            data = client.list_jobs(
                status=status, type=type, page=page, page_size=page_size
            )
    except OutboxError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    total = data.get("total", len(jobs))

    if not jobs:
        console.print(
            Panel(
                "📭 [yellow]No jobs found![/yellow]\n\n"
                f"• Status: {', '.join(status) if status else 'any'}\n"
                f"• Type: {type or 'any'}",
                title="Empty Results",
                border_style="yellow",
            )
        )
        return

    console.print(create_jobs_table(jobs))
    console.print(
        f"\n📊 Page [cyan]{page}[/cyan]: showing [cyan]{len(jobs)}[/cyan] "
        f"of [yellow]{total}[/yellow] jobs"
    )
    if page * page_size < total:
        console.print(f"💡 Use [cyan]--page {page + 1}[/cyan] to see more")


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID to show")):
    """🔍 Show a single job"""
    try:
        with OutboxClient(config.get("api.base_url")) as client:
            job = client.get_job(job_id)
    except OutboxError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("retry")
def retry_job(
    job_id: str = typer.Argument(..., help="Failed job to retry"),
    reset_attempts: bool = typer.Option(
        False, "--reset-attempts", help="Start the attempt count over"
    ),
):
    """🔁 Return a failed job to pending"""
    try:
        with OutboxClient(config.get("api.base_url")) as client:
            job = client.retry_job(job_id, reset_attempts=reset_attempts)
    except OutboxError as e:
        print_error(f"Failed to retry job: {e}")
        if e.status_code == 409 and not reset_attempts:
            print_info("Jobs out of attempts need --reset-attempts")
        raise typer.Exit(1) from None

    print_success(
        f"Job {job_id} queued for retry "
        f"(attempts {job.get('attempts', 0)}/{job.get('max_attempts', 0)})"
    )


@app.command("cancel")
def cancel_job(
    job_id: str = typer.Argument(..., help="Pending job to cancel"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """🛑 Cancel a pending job"""
    if not yes and not Confirm.ask(f"Cancel job {job_id}?"):
        console.print("Cancel aborted.")
        return

    try:
        with OutboxClient(config.get("api.base_url")) as client:
            client.cancel_job(job_id)
    except OutboxError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job_id} canceled")


@app.command("stats")
def job_stats():
    """📊 Show queue statistics"""
    try:
        with OutboxClient(config.get("api.base_url")) as client:
            stats = client.job_stats()
    except OutboxError as e:
        print_error(f"Failed to get stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel(stats))


@app.command("drain")
def drain_jobs(
    max_duration_s: float | None = typer.Option(
        None, "--max-duration", help="Time budget in seconds"
    ),
):
    """⏩ Ask the API to process due jobs once"""
    try:
        with OutboxClient(config.get("api.base_url")) as client:
            result = client.run_outbox(max_duration_s)
    except OutboxError as e:
        print_error(f"Failed to drain outbox: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Processed {result.get('processed', 0)} jobs: "
        f"{result.get('completed', 0)} completed, {result.get('retried', 0)} retried, "
        f"{result.get('dead_lettered', 0)} dead-lettered "
        f"in {result.get('duration_ms', 0)}ms"
    )
