"""telerelay Server CLI - Main entry point."""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import structlog
import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from ..exceptions import ConfigError
from .api.server import create_app
from .config import load_config

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="telerelay-server",
    help="telerelay Server - accepts agent sessions and routes telemetry to sinks",
    no_args_is_help=True
)


def configure_logging(log_level: str) -> None:
    """Filter structlog events below log_level"""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


@app.command()
def serve(
    config_path: Path = typer.Option(..., "--config", "-c", help="Path to the server JSON configuration file"),
    host: Optional[str] = typer.Option(None, help="Override the listen host"),
    port: Optional[int] = typer.Option(None, help="Override the listen port"),
):
    """Run the server until interrupted."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        err_console.print(f"[red]✗ Configuration error:[/red] {e}")
        sys.exit(2)

    configure_logging(config.log_level)

    application = create_app(config)

    listen_host = host or config.host
    listen_port = port or config.port
    console.print(f"[green]Starting telerelay server on {listen_host}:{listen_port}[/green]")

    try:
        uvicorn.run(application, host=listen_host, port=listen_port, log_level=config.log_level.lower())
    except (OSError, RuntimeError) as e:
        err_console.print(f"[red]✗ Server failed:[/red] {e}")
        sys.exit(1)


def _fetch_agents(url: str) -> List[Dict[str, Any]]:
    response = httpx.get(f"{url.rstrip('/')}/api/agents", timeout=10.0)
    response.raise_for_status()
    data = response.json()
    if data.get("status") != "success":
        raise RuntimeError(f"API Error: {data.get('message', 'Unknown error')}")
    return data.get("data") or []


def _create_agents_table(agents: List[Dict[str, Any]]) -> Table:
    table = Table(title=f"Agents ({len(agents)})")
    table.add_column("Agent", style="cyan")
    table.add_column("Status")
    table.add_column("Session", style="dim")
    table.add_column("Remote")
    table.add_column("HWM", justify="right")
    table.add_column("Samples", justify="right")
    table.add_column("Gaps", justify="right")

    for agent in agents:
        status = "[green]connected[/green]" if agent.get("connected") else "[yellow]disconnected[/yellow]"
        table.add_row(
            agent.get("agent_id", "?"),
            status,
            (agent.get("session_id") or "-")[:12],
            agent.get("remote_address") or "-",
            str(agent.get("high_water_mark", 0)),
            str(agent.get("samples", 0)),
            str(agent.get("losses", 0)),
        )
    return table


@app.command()
def agents(url: str = typer.Option("http://127.0.0.1:8470", "--url", help="Server base URL")):
    """List agents known to a running server."""
    try:
        agent_list = _fetch_agents(url)
    except httpx.HTTPStatusError as e:
        err_console.print(f"[red]✗ API request failed:[/red] {e.response.status_code} {e.response.text}")
        sys.exit(1)
    except (httpx.RequestError, RuntimeError) as e:
        err_console.print(f"[red]✗ Failed to list agents:[/red] {e}")
        sys.exit(1)

    if not agent_list:
        console.print("[yellow]No agents known to the server[/yellow]")
        return
    console.print(_create_agents_table(agent_list))


@app.command()
def version():
    """Show telerelay Server version."""
    from .. import __version__
    console.print(f"telerelay Server v{__version__}")


if __name__ == "__main__":
    app()
