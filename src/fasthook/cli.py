"""fasthook server CLI."""

import asyncio
import json
import subprocess
import uuid
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from fasthook import __version__
from fasthook.config import get_settings

app = typer.Typer(
    name="fasthook",
    help="fasthook - Webhook subscription and delivery service",
    no_args_is_help=True,
)

console = Console()

# Subcommands
db_app = typer.Typer(help="Database management commands")
webhook_app = typer.Typer(help="Webhook inspection commands")

app.add_typer(db_app, name="db")
app.add_typer(webhook_app, name="webhook")


def run_async(coro):
    """Run an async function synchronously, disposing the engine afterwards."""
    from fasthook.db.session import close_engine

    async def runner():
        try:
            return await coro
        finally:
            await close_engine()

    return asyncio.run(runner())


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label} ID: {value}[/red]")
        raise typer.Exit(1) from None


@app.command()
def serve(
    api_only: bool = typer.Option(False, "--api-only", help="Run only API server"),
    worker_only: bool = typer.Option(False, "--worker-only", help="Run only delivery worker"),
    shutdown_timeout: int = typer.Option(
        30, "--shutdown-timeout", help="Timeout for graceful shutdown in seconds"
    ),
):
    """Start the fasthook API server and delivery worker."""
    import signal

    import uvicorn

    from fasthook.webhook import WebhookWorker

    if api_only and worker_only:
        console.print("[red]--api-only and --worker-only are mutually exclusive[/red]")
        raise typer.Exit(1)

    settings = get_settings()

    async def run_all():
        uvicorn_server: uvicorn.Server | None = None
        webhook_worker: WebhookWorker | None = None

        async def graceful_shutdown(sig: signal.Signals | None = None) -> None:
            """Handle graceful shutdown of all components."""
            if sig:
                console.print(f"\n[yellow]Received {sig.name}, shutting down...[/yellow]")
            else:
                console.print("\n[yellow]Shutting down...[/yellow]")

            if webhook_worker is not None:
                console.print("[dim]Stopping webhook worker...[/dim]")
                try:
                    await asyncio.wait_for(webhook_worker.stop(), timeout=shutdown_timeout)
                except TimeoutError:
                    console.print("[red]Shutdown timed out, forcing exit[/red]")

            if uvicorn_server is not None:
                uvicorn_server.should_exit = True
                console.print("[dim]Stopping API server...[/dim]")

            console.print("[green]Shutdown complete[/green]")

        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            loop.create_task(graceful_shutdown(sig))

        # Register signal handlers (Unix only)
        try:
            loop.add_signal_handler(signal.SIGTERM, lambda: signal_handler(signal.SIGTERM))
            loop.add_signal_handler(signal.SIGINT, lambda: signal_handler(signal.SIGINT))
        except NotImplementedError:
            pass

        tasks = []

        if not worker_only:
            config = uvicorn.Config(
                "fasthook.main:create_app",
                factory=True,
                host=settings.api_host,
                port=settings.api_port,
                log_level="info",
            )
            uvicorn_server = uvicorn.Server(config)
            tasks.append(asyncio.create_task(uvicorn_server.serve()))
            console.print(
                f"[green]API server started on {settings.api_host}:{settings.api_port}[/green]"
            )

        if not api_only:
            webhook_worker = WebhookWorker(settings)
            webhook_worker.start()
            console.print("[green]Webhook worker started[/green]")
            tasks.append(asyncio.create_task(webhook_worker.wait()))

        await asyncio.gather(*tasks)

    try:
        asyncio.run(run_all())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")


@app.command()
def version():
    """Show version information."""
    console.print(f"fasthook version {__version__}")


@app.command()
def show_config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="fasthook Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for field_name in type(settings).model_fields:
        value = getattr(settings, field_name)
        # Hide sensitive values
        if "key" in field_name.lower() or "secret" in field_name.lower():
            value = "********"
        elif field_name == "database_url":
            value = _mask_url_password(str(value))
        table.add_row(field_name, str(value))

    console.print(table)


def _mask_url_password(url: str) -> str:
    from sqlalchemy.engine import make_url
    from sqlalchemy.exc import ArgumentError

    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "********"


@app.command()
def sign(
    payload: str = typer.Argument(..., help="JSON payload to sign"),
    secret: str = typer.Option(..., "--secret", "-s", help="Webhook secret"),
):
    """Print the X-Webhook-Signature value for a JSON payload."""
    from fasthook.webhook.signing import sign_payload

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON payload: {e}[/red]")
        raise typer.Exit(1) from None

    typer.echo(sign_payload(data, secret))


# Database commands


@db_app.command("init")
def db_init():
    """Create all tables directly from the models (development and tests)."""
    from fasthook.db.models import Base
    from fasthook.db.session import get_engine

    async def create():
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    run_async(create())
    console.print("[green]Database tables created[/green]")


@db_app.command("upgrade")
def db_upgrade(
    revision: str = typer.Argument("head", help="Revision to upgrade to"),
):
    """Upgrade database to a revision."""
    _run_alembic("upgrade", revision)


@db_app.command("downgrade")
def db_downgrade(
    revision: str = typer.Argument(..., help="Revision to downgrade to"),
):
    """Downgrade database to a revision."""
    _run_alembic("downgrade", revision)


@db_app.command("current")
def db_current():
    """Show current database revision."""
    _run_alembic("current")


def _run_alembic(*args):
    """Run alembic command."""
    project_dir = Path(__file__).resolve().parent.parent.parent
    alembic_ini = project_dir / "alembic.ini"

    if not alembic_ini.exists():
        console.print(f"[red]alembic.ini not found at {alembic_ini}[/red]")
        raise typer.Exit(1)

    cmd = ["alembic", "-c", str(alembic_ini), *args]
    result = subprocess.run(cmd, cwd=project_dir)
    if result.returncode != 0:
        raise typer.Exit(result.returncode)


# Webhook commands


@webhook_app.command("list")
def webhook_list(
    user: str = typer.Argument(..., help="Owner (created_by) of the webhooks"),
):
    """List the webhooks owned by a user."""
    from fasthook.db.session import async_session
    from fasthook.webhook import list_webhooks

    async def fetch():
        async with async_session() as session:
            return await list_webhooks(session, user)

    webhooks = run_async(fetch())

    table = Table(title=f"Webhooks of {user}")
    table.add_column("ID", style="dim")
    table.add_column("URL", style="cyan")
    table.add_column("Events")
    table.add_column("Active")

    for webhook in webhooks:
        table.add_row(
            str(webhook.id),
            webhook.url,
            ", ".join(webhook.events),
            "✓" if webhook.is_active else "✗",
        )

    console.print(table)


@webhook_app.command("stats")
def webhook_stats(
    webhook_id: str = typer.Argument(..., help="Webhook ID"),
):
    """Show delivery statistics of a webhook."""
    from fasthook.db.session import async_session
    from fasthook.webhook import get_webhook_stats

    parsed_id = _parse_uuid(webhook_id, "webhook")

    async def fetch():
        async with async_session() as session:
            return await get_webhook_stats(session, parsed_id)

    stats = run_async(fetch())

    table = Table(title=f"Delivery statistics for {parsed_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Total", str(stats.total))
    table.add_row("Success", str(stats.success_count))
    table.add_row("Failed", str(stats.failed_count))
    table.add_row("Pending", str(stats.pending_count))
    table.add_row("Success rate", f"{stats.success_rate}%")

    console.print(table)


@webhook_app.command("deliveries")
def webhook_deliveries(
    webhook_id: str = typer.Argument(..., help="Webhook ID"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of deliveries to show"),
    status: str = typer.Option(None, "--status", help="Filter by status"),
):
    """Show the most recent deliveries of a webhook."""
    from fasthook.db.enums import DeliveryStatus
    from fasthook.db.session import async_session
    from fasthook.webhook import list_deliveries

    parsed_id = _parse_uuid(webhook_id, "webhook")
    if status is not None and status not in {s.value for s in DeliveryStatus}:
        console.print(f"[red]Invalid status: {status}[/red]")
        raise typer.Exit(1)

    async def fetch():
        async with async_session() as session:
            return await list_deliveries(session, parsed_id, limit=limit, status=status)

    deliveries = run_async(fetch())

    table = Table(title=f"Deliveries for {parsed_id}")
    table.add_column("ID", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Error")
    table.add_column("Created")

    for delivery in deliveries:
        table.add_row(
            str(delivery.id)[:8],
            delivery.event_type,
            delivery.status,
            str(delivery.attempts),
            delivery.error or "",
            delivery.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


if __name__ == "__main__":
    app()
