"""Click CLI for the logging proxy."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING, Any

import click
from rich.logging import RichHandler

from middleware_logger import __version__
from middleware_logger.config import ProxyConfig
from middleware_logger.errors import BindError

if TYPE_CHECKING:
    from middleware_logger.display.terminal import TerminalDisplay


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Middleware Logger - HTTP/HTTPS proxy that logs the traffic it forwards."""


@cli.command()
@click.option(
    "--port", "-p", default=None, type=int, help="Local port to listen on (default: 8000)"
)
@click.option(
    "--host", "-h", default=None, help="Remote host address (default: api.anthropic.com)"
)
@click.option("--remote-port", "-r", default=None, type=int, help="Remote port (default: 443)")
@click.option(
    "--https/--no-https", "https", default=None, help="Use HTTPS for the remote connection"
)
@click.option(
    "--local-https", is_flag=True, default=False, help="Accept HTTPS connections locally"
)
@click.option("--cert", default=None, help="PEM certificate for --local-https")
@click.option("--key", default=None, help="PEM private key for --local-https")
@click.option("--listen", default=None, help="Address to bind to (default: 127.0.0.1)")
@click.option("--log-body", is_flag=True, default=False, help="Log request and response bodies")
@click.option(
    "--merge-sse", is_flag=True, default=False, help="Merge server-sent events into messages"
)
@click.option("--debug", is_flag=True, default=False, help="Show debug messages")
@click.option(
    "--chat-mode/--no-chat-mode",
    "chat_mode",
    default=None,
    help="Show only the chat conversation with live streaming (default: on)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show full prompts")
def start(
    port: int | None,
    host: str | None,
    remote_port: int | None,
    https: bool | None,
    local_https: bool,
    cert: str | None,
    key: str | None,
    listen: str | None,
    log_body: bool,
    merge_sse: bool,
    debug: bool,
    chat_mode: bool | None,
    verbose: bool,
) -> None:
    """Start the proxy server."""
    # Build config from CLI overrides (env vars handled by pydantic-settings)
    overrides: dict[str, Any] = {}
    if port is not None:
        overrides["port"] = port
    if host is not None:
        overrides["upstream_host"] = host
    if remote_port is not None:
        overrides["upstream_port"] = remote_port
    if https is not None:
        overrides["upstream_tls"] = https
    if local_https:
        overrides["local_tls"] = True
    if cert is not None:
        overrides["tls_certfile"] = cert
    if key is not None:
        overrides["tls_keyfile"] = key
    if listen is not None:
        overrides["host"] = listen
    if log_body:
        overrides["log_body"] = True
    if merge_sse:
        overrides["merge_sse"] = True
    if debug:
        overrides["debug"] = True
    if chat_mode is not None:
        overrides["chat_mode"] = chat_mode
    if verbose:
        overrides["verbose"] = True

    config = ProxyConfig(**overrides)

    from middleware_logger.display.terminal import TerminalDisplay

    display = TerminalDisplay(config)
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, show_path=False)],
    )

    try:
        asyncio.run(_serve(config, display))
    except BindError as e:
        display.console.print(f"[red]Failed to start proxy server:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        display.console.print("\n[dim]Stopped.[/dim]")


async def _serve(config: ProxyConfig, display: TerminalDisplay) -> None:
    from middleware_logger.proxy.server import ProxyServer

    server = ProxyServer(config, on_record=display.on_record)
    try:
        await server.start()
        local_scheme = "https" if config.local_tls else "http"
        display.console.print(
            f"[bold green]Proxy server started on[/bold green] "
            f"[green]{local_scheme}://{config.host}:{server.port}[/green]"
        )
        display.console.print(f"[blue]Forwarding to {config.upstream_base_url}[/blue]")
        display.console.print("[yellow]Logging all traffic to console...[/yellow]")
        display.console.print("[dim]Press Ctrl+C to stop[/dim]")
        await server.serve_forever()
    finally:
        await server.close()
