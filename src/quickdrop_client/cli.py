import asyncio
import typer
import logging
import sys
if sys.platform == "win32":
    # asyncpg и aiosqlite не дружат с ProactorEventLoop
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
from typing import Optional

from quickdrop_client import create_drop_client
from quickdrop_client import logging as qd_logging
from quickdrop_client.config import get_settings
from quickdrop_client.exceptions import DropClientError
from quickdrop_client.utils.cli_utils import get_rich_console, sweep_report_table


app = typer.Typer(help="CLI for QuickDrop storage management.")
logger = logging.getLogger(__name__)
console = get_rich_console()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Overrides LOG_LEVEL."),
):
    qd_logging.configure(log_level or get_settings().log_level)


@app.command()
def init():
    """
    Creates the record-store tables and makes sure the blob bucket (or local root) exists.
    """
    console.rule("[bold cyan]Service Initialization[/bold cyan]")

    async def _init() -> str:
        client = create_drop_client()
        try:
            await client.init_storage()
            return client.blobs.location
        finally:
            await client.aclose()

    with console.status("Creating tables and blob storage...", spinner="dots"):
        try:
            location = asyncio.run(_init())
        except DropClientError as e:
            console.log(f"[bold red]✖[/bold red] Initialization FAILED: {e}")
            raise typer.Exit(code=1)
        except Exception as e:
            console.log(f"[bold red]✖[/bold red] Database initialization FAILED: {e}")
            raise typer.Exit(code=1)

    console.log(f"[bold green]✔[/bold green] Database tables created, {location} is ready.")
    console.print("\n[bold green]✅ All services initialized successfully![/bold green]")


@app.command()
def check():
    """Checks connectivity to the record store and the blob store."""
    console.rule("[bold cyan]Connection Check[/bold cyan]")

    async def _check() -> dict[str, str]:
        client = create_drop_client()
        try:
            return await client.check_connections()
        finally:
            await client.aclose()

    statuses = asyncio.run(_check())
    failed = False
    for name, label in (("database", "Record store"), ("blob_store", "Blob store")):
        status = statuses.get(name, "unknown error")
        if status == "ok":
            console.print(f"[bold green]✔[/bold green] {label} connection: OK")
        else:
            failed = True
            console.print(f"[bold red]✖[/bold red] {label} connection: FAILED ({status})")

    if failed:
        raise typer.Exit(code=1)


@app.command()
def sweep(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Max drops to reclaim in this pass."),
    show_tokens: bool = typer.Option(False, "--show-tokens", help="List token prefixes of reclaimed drops."),
):
    """Runs a single Reaper pass and prints what was reclaimed."""
    console.rule("[bold cyan]Reaper Sweep[/bold cyan]")

    async def _sweep():
        client = create_drop_client()
        try:
            return await client.sweep(limit)
        finally:
            await client.aclose()

    try:
        report = asyncio.run(_sweep())
    except DropClientError as e:
        console.print(f"[bold red]✖[/bold red] Sweep FAILED: {e}")
        raise typer.Exit(code=1)

    console.print(sweep_report_table(report, show_tokens))
    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    no_reaper: bool = typer.Option(False, "--no-reaper", help="Do not start the background Reaper."),
):
    """Starts the HTTP API under uvicorn."""
    import uvicorn

    from quickdrop_client.server.main import create_app

    api = create_app(start_reaper=False if no_reaper else None)
    console.print(f"[bold cyan]QuickDrop API[/bold cyan] on http://{host}:{port}")
    uvicorn.run(api, host=host, port=port, log_config=None)


if __name__ == "__main__":
    app()
