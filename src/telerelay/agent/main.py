"""telerelay Agent CLI - Main entry point."""

import asyncio
import json
import sys
from pathlib import Path

import typer

from ..exceptions import ConfigError
from .agent import Agent
from .config import load_config


app = typer.Typer(
    name="telerelay-agent",
    help="telerelay Agent - collects host telemetry and streams it to a telerelay server",
    no_args_is_help=True
)

CONFIG_OPTION = typer.Option(..., "--config", "-c", help="Path to the agent JSON configuration file")


@app.command()
def start(config_path: Path = CONFIG_OPTION):
    """Start the agent and stream telemetry until interrupted."""
    try:
        config = load_config(config_path)
        agent = Agent(config)
    except ConfigError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(2)

    typer.echo(f"Starting telerelay agent '{config.agent_identity}'...")
    typer.echo(f"Server endpoint: {config.endpoint}")

    try:
        asyncio.run(agent.start())
    except KeyboardInterrupt:
        typer.echo("\nAgent stopped by user")
    except Exception as e:
        typer.echo(f"❌ Agent failed: {e}", err=True)
        sys.exit(1)


@app.command("show-config")
def show_config(config_path: Path = CONFIG_OPTION):
    """Validate a configuration file and print the resolved settings."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        sys.exit(2)

    resolved = config.model_dump()
    if resolved.get("shared_key"):
        resolved["shared_key"] = "***"
    typer.echo(json.dumps(resolved, indent=2))


@app.command()
def version():
    """Show telerelay Agent version."""
    from .. import __version__
    typer.echo(f"telerelay Agent v{__version__}")


if __name__ == "__main__":
    app()
