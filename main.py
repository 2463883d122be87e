#!/usr/bin/env python3
"""
Virtual Browser - remote rendering sessions streamed over WebSocket.

Renders pages in managed headless browsers and streams frames to clients,
relaying their input back into the page.
"""
import click
import requests
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from virtual_browser import __version__
from virtual_browser.config import settings

console = Console()


def _base_url(port: int) -> str:
    return f"http://localhost:{port}"


@click.group()
@click.version_option(version=__version__)
def cli():
    """Virtual Browser - remote rendering server"""
    pass


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default: VIRTUAL_BROWSER_HOST or 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Port to bind to (default: VIRTUAL_BROWSER_PORT or 3000)")
def start(host: str, port: int):
    """Start the rendering server"""
    from virtual_browser.server import run_server

    host = host or settings.host
    port = port or settings.port

    console.print(Panel.fit(
        "[bold cyan]Virtual Browser[/bold cyan] - Remote rendering server\n"
        f"[dim]Listening on http://{host}:{port} (WebSocket at /ws)[/dim]",
        border_style="cyan"
    ))
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    run_server(host=host, port=port)


@cli.command()
@click.option("--port", default=None, type=int, help="Server port")
def status(port: int):
    """Show live rendering sessions"""
    port = port or settings.port
    try:
        resp = requests.get(f"{_base_url(port)}/api/sessions", timeout=10)
        sessions = resp.json().get("sessions", [])
    except requests.ConnectionError:
        console.print("[red]Error:[/red] Server not running. Start with: virtual-browser start")
        return

    if not sessions:
        console.print("[dim]No active sessions[/dim]")
        return

    table = Table(title="Rendering Sessions")
    table.add_column("Connection", style="cyan")
    table.add_column("URL", style="white")
    table.add_column("Stream", justify="center")
    table.add_column("Created", style="dim")

    stream_styles = {
        "streaming": "[green]Streaming[/green]",
        "paused": "[yellow]Navigating[/yellow]",
        "stopped": "[dim]Stopped[/dim]",
        "idle": "[blue]Idle[/blue]",
    }

    for session in sessions:
        url = session.get("current_url") or ""
        table.add_row(
            session["connection_id"],
            url[:60] + "..." if len(url) > 60 else url,
            stream_styles.get(session["stream_state"], session["stream_state"]),
            session["created_at"],
        )

    console.print(table)


@cli.command()
@click.option("--port", default=None, type=int, help="Server port")
def cleanup(port: int):
    """Clear session caches and remove expired workspaces"""
    port = port or settings.port
    try:
        resp = requests.post(f"{_base_url(port)}/cleanup", timeout=60)
    except requests.ConnectionError:
        console.print("[red]Error:[/red] Server not running. Start with: virtual-browser start")
        return

    data = resp.json()
    if data.get("success"):
        removed = data.get("removed", [])
        console.print(f"[green]✓[/green] {data.get('message')} ({len(removed)} workspace(s) removed)")
        for path in removed:
            console.print(f"  [dim]{path}[/dim]")
    else:
        console.print(f"[red]✗[/red] Cleanup failed: {data.get('error')}")


if __name__ == "__main__":
    cli()
