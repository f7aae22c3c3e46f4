"""CLI commands for almondcloud.

Top-level commands: serve (run the front end), status (probe the engine's
control channel) and config (show or initialize the configuration file).
"""

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from almondcloud import __logo__, __version__
from almondcloud.cli.network_utils import is_port_in_use
from almondcloud.utils.logging_utils import configure_console, ensure_rotating_log_file

app = typer.Typer(
    name="almondcloud",
    help=f"{__logo__} almondcloud - Almond Cloud enterprise front end",
    no_args_is_help=True,
)

config_app = typer.Typer(help="Show or initialize configuration")
app.add_typer(config_app, name="config")

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} almondcloud v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """almondcloud - Almond Cloud enterprise front end."""
    pass


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind host (default from config)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port (default from config)"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Config file (default: $ALMOND_CONFIG or ~/.almondcloud/config.json)"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Start the HTTP/WebSocket front end and connect to the engine."""
    import uvicorn

    from almondcloud.api.server import create_app
    from almondcloud.config.access import get_config

    config = get_config(config_path=config_path)
    bind_host = host or config.api.host
    bind_port = port or config.api.port
    if is_port_in_use(bind_host, bind_port):
        console.print(
            f"[red]Port {bind_port} is already in use.[/red] "
            f"Stop the process using it, or pass [cyan]--port[/cyan] (current: {bind_host}:{bind_port})."
        )
        raise typer.Exit(1)

    level = "DEBUG" if verbose else config.logging.level
    configure_console(level)
    if config.logging.file:
        log_path = ensure_rotating_log_file("frontend", level=level)
        console.print(f"[dim]Logs: {log_path}[/dim]")

    console.print(f"{__logo__} Starting almondcloud on {bind_host}:{bind_port} (engine at {config.backend.address})")
    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_level=level.lower())


@app.command()
def status(
    timeout: float = typer.Option(5.0, "--timeout", "-t", help="Seconds to wait for the engine handshake"),
):
    """Show configuration and whether the engine's control channel answers."""
    from almondcloud.backend.client import probe_engine
    from almondcloud.config.loader import get_config_path, load_config
    from almondcloud.utils.exceptions import AlmondError

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} almondcloud Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[dim]defaults[/dim]'}")
    console.print(f"API: {config.api.host}:{config.api.port} ({len(config.api.tokens)} token(s))")

    try:
        root_id = asyncio.run(probe_engine(config.backend, timeout=timeout))
    except (OSError, asyncio.TimeoutError, AlmondError) as e:
        reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
        console.print(f"Engine: {config.backend.address} [red]✗ {reason}[/red]")
        raise typer.Exit(1)
    console.print(f"Engine: {config.backend.address} [green]✓ ready (root {root_id})[/green]")


@config_app.command("show")
def config_show(
    as_json: bool = typer.Option(False, "--json", help="Print the full configuration as JSON"),
):
    """Print the effective configuration."""
    from almondcloud.config.loader import convert_to_camel, load_config

    config = load_config()
    if as_json:
        data = convert_to_camel(config.model_dump())
        data["api"]["tokens"] = {f"{k[:4]}…": v for k, v in data["api"]["tokens"].items()}
        console.print_json(json.dumps(data))
        return

    table = Table(title="almondcloud configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("backend.address", config.backend.address)
    table.add_row("backend.reconnect_delay", f"{config.backend.reconnect_delay}s")
    table.add_row("backend.handshake_timeout", f"{config.backend.handshake_timeout}s")
    table.add_row("api", f"{config.api.host}:{config.api.port}")
    table.add_row("api.tokens", str(len(config.api.tokens)))
    table.add_row("server_origin", config.server_origin)
    table.add_row("extra_origins", ", ".join(config.extra_origins) or "-")
    table.add_row("nl_server_url", config.nl_server_url)
    table.add_row("logging", f"{config.logging.level}{' + file' if config.logging.file else ''}")
    console.print(table)


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write a default configuration file."""
    from almondcloud.config.loader import get_config_path, save_config
    from almondcloud.config.schema import AlmondConfig

    path = get_config_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists at {path}[/yellow] (use --force to overwrite)")
        raise typer.Exit(1)
    save_config(AlmondConfig(), path)
    console.print(f"[green]✓[/green] Wrote {path}")


if __name__ == "__main__":
    app()
