"""DoxyEdu CLI - Command line interface."""

from __future__ import annotations

import json
import logging
import sys

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from doxyedu.core.config import RestartPolicy, build_gateway_config, load_config_from_file

console = Console()

BANNER = """
 ____                   _____    _
|  _ \\  _____  ___   _| ____|__| |_   _
| | | |/ _ \\ \\/ / | | |  _| / _` | | | |
| |_| | (_) >  <| |_| | |__| (_| | |_| |
|____/ \\___/_/\\_\\\\__, |_____\\__,_|\\__,_|
                 |___/   Web Proxy Gateway
"""


def _configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


def _load_config(config_file: str | None, **overrides):
    file_config: dict = {}
    if config_file:
        try:
            file_config = load_config_from_file(config_file)
            console.print(f"Loaded config from {config_file}", style="dim")
        except (OSError, ValueError) as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    try:
        return build_gateway_config(file_config, **overrides)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)


@click.group()
def main():
    """DoxyEdu - proxied browsing through a tunnelled gateway.

    Examples:

        doxyedu serve

        PORT=3000 doxyedu serve --public-dir ./public

        doxyedu serve --restart-policy fail-fast
    """


@main.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--host", default=None, help="Bind address (default: 0.0.0.0)")
@click.option("--port", "-p", type=int, default=None, help="Listening port (default: $PORT or 8080)")
@click.option(
    "--public-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory with the browser UI",
)
@click.option("--tunnel-port", type=int, default=None, help="Tunnel backend port (default: 9090)")
@click.option("--tunnel-threads", type=int, default=None, help="Tunnel backend worker threads (default: 6)")
@click.option(
    "--restart-policy",
    type=click.Choice([p.value for p in RestartPolicy]),
    default=None,
    help="What to do when the tunnel backend exits (default: restart)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info)",
)
def serve(
    config_file: str | None,
    host: str | None,
    port: int | None,
    public_dir: str | None,
    tunnel_port: int | None,
    tunnel_threads: int | None,
    restart_policy: str | None,
    log_level: str,
):
    """Run the gateway and its tunnel backend."""
    from doxyedu.server.main import run_with_signal_handling

    _configure_logging(log_level)
    config = _load_config(
        config_file,
        host=host,
        port=port,
        public_dir=public_dir,
        tunnel_port=tunnel_port,
        tunnel_threads=tunnel_threads,
        tunnel_restart_policy=restart_policy,
    )

    console.print(BANNER, style="cyan")
    console.print(f"Public: {config.public_dir}", style="dim")
    console.print(
        f"Tunnel: {config.tunnel_prefix} -> {config.wisp.curl_host} "
        f"(restart policy: {config.tunnel.restart_policy.value})",
        style="dim",
    )

    sys.exit(run_with_signal_handling(config))


@main.command()
def version():
    """Show version information."""
    from doxyedu import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """Inspect the resolved configuration."""


@config.command("show")
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(config_file: str | None, json_output: bool):
    """Show the configuration the gateway would run with.

    Values come from defaults, environment variables and the config file.
    """
    cfg = _load_config(config_file)
    display = cfg.to_display_dict()

    if json_output:
        click.echo(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        for key, value in settings.items():
            table.add_row(key, str(value))
        console.print(table)
        console.print()


if __name__ == "__main__":
    main()
