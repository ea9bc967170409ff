"""Typer CLI for ledgersync."""

import asyncio
import signal

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="ledgersync", help="ledgersync: ledger event ingestion and milestone verification")
console = Console()


async def _open_db():
    from ledgersync.deps import get_db

    db = get_db()
    await db.init()
    await db.create_all()
    return db


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the ledgersync API server."""
    import uvicorn
    from ledgersync.app import create_app

    console.print(f"[bold green]Starting ledgersync on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


async def _ingest(service_name: str | None) -> None:
    from ledgersync.common.config import get_settings
    from ledgersync.common.logging import setup_logging
    from ledgersync.deps import get_event_processor, get_webhook_service
    from ledgersync.ingestion.fetcher import HttpLedgerFetcher
    from ledgersync.ingestion.listener import LedgerListener

    settings = get_settings()
    setup_logging(settings.log_level)
    db = await _open_db()
    fetcher = HttpLedgerFetcher(settings)
    listener = LedgerListener(
        settings, db, fetcher, get_event_processor(), service_name=service_name,
    )

    loop = asyncio.get_running_loop()
    task = asyncio.create_task(listener.run())

    def request_shutdown() -> None:
        console.print("[yellow]Shutdown requested, finishing in-flight event...[/yellow]")
        listener.stop()
        # Force the loop down if the in-flight event does not finish in time
        loop.call_later(settings.shutdown_timeout, task.cancel)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    try:
        await task
    except asyncio.CancelledError:
        console.print("[bold red]Shutdown timeout reached, listener cancelled[/bold red]")
    finally:
        await fetcher.close()
        await get_webhook_service().close()
        await db.close()


@app.command()
def ingest(
    service_name: str = typer.Option(None, help="Consumer name owning the cursor"),
):
    """Run the ledger listener until SIGINT/SIGTERM."""
    from ledgersync.common.exceptions import CursorRegressionError

    console.print("[bold green]Starting ledger listener[/bold green]")
    try:
        asyncio.run(_ingest(service_name))
    except CursorRegressionError as e:
        console.print(f"[bold red]{e.code}[/bold red] — {e.message}")
        raise typer.Exit(1)
    console.print("Listener stopped")


@app.command()
def sweep():
    """Expire pending milestones whose deadline has passed."""
    from ledgersync.deps import get_expiration_sweeper

    async def _run() -> list[str]:
        db = await _open_db()
        try:
            return await get_expiration_sweeper().run_once()
        finally:
            await db.close()

    expired = asyncio.run(_run())
    if expired:
        for milestone_id in expired:
            console.print(f"[yellow]expired[/yellow] {milestone_id}")
    else:
        console.print("No milestones expired")


@app.command("dlq-metrics")
def dlq_metrics():
    """Show dead-letter queue counts by status and job type."""
    from ledgersync.deps import get_dead_letter_service

    async def _run() -> dict:
        db = await _open_db()
        try:
            async with db.get_session() as session:
                return await get_dead_letter_service().metrics(session)
        finally:
            await db.close()

    metrics = asyncio.run(_run())
    table = Table(title="Dead-letter queue")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status in ("pending", "reprocessing", "discarded", "total"):
        table.add_row(status, str(metrics[status]))
    console.print(table)
    for job_type, count in sorted(metrics["by_job_type"].items()):
        console.print(f"  {job_type}: {count}")


@app.command("dlq-discard")
def dlq_discard(
    entry_id: str = typer.Argument(..., help="Dead-letter entry id"),
):
    """Discard a dead-letter entry."""
    from ledgersync.deps import get_dead_letter_service

    async def _run():
        db = await _open_db()
        try:
            async with db.get_session() as session:
                entry = await get_dead_letter_service().discard(session, entry_id)
                return None if entry is None else (entry.status, entry.resolved_at)
        finally:
            await db.close()

    result = asyncio.run(_run())
    if result is None:
        console.print(f"[bold red]Not found:[/bold red] {entry_id}")
        raise typer.Exit(1)
    status, resolved_at = result
    console.print(f"[bold]{entry_id}[/bold] {status} at {resolved_at}")


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check ledgersync server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] — v{data['version']}")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
