"""Outbox CLI - Main Entry Point"""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import OutboxClient
from .commands import config, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="outboxctl",
    help="📬 SalesOps Outbox - job queue admin CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API status and queue health"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with OutboxClient(base_url) as client:
            health = client.health_check()
    except Exception as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the outbox API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]outboxctl config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    outbox = health.get("outbox") or {}
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Queue Depth: [cyan]{outbox.get('queue_depth', 0)}[/cyan]\n"
            f"• Active Leases: [cyan]{outbox.get('active_leases', 0)}[/cyan]\n"
            f"• Expired Leases: [red]{outbox.get('expired_leases', 0)}[/red]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"📬 [bold cyan]SalesOps Outbox CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.command()
def worker(
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", min=1, help="Worker loops to run"
    ),
):
    """⚙️ Run a dispatcher against the configured database until interrupted"""
    from salesops.config.logging import setup_logging
    from salesops.config.settings import settings
    from salesops.infra.database import Database
    from salesops.v1.core.registries import job_registry
    from salesops.v1.outbox.dispatcher import Dispatcher
    from salesops.v1.outbox.registry_init import register_job_handlers

    worker_settings = settings
    if concurrency:
        worker_settings = settings.model_copy(
            update={"outbox_worker_concurrency": concurrency}
        )

    setup_logging(worker_settings)
    if not job_registry.list():
        register_job_handlers(config=worker_settings)

    async def run() -> None:
        database = Database(worker_settings)
        dispatcher = Dispatcher(worker_settings, database.SessionLocal)
        try:
            await dispatcher.start()
        finally:
            await dispatcher.stop()
            await database.close()

    print_info(
        f"Starting {worker_settings.outbox_worker_concurrency} worker loop(s); "
        "press Ctrl+C to stop"
    )
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("Worker stopped.")


@app.callback()
def main():
    """
    📬 SalesOps Outbox CLI

    Inspect the outbox, retry dead-lettered jobs, and run a local worker.
    """


if __name__ == "__main__":
    app()
