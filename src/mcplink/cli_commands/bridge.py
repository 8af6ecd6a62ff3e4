"""``mcplink-bridge`` / ``mcplink bridge`` — stdio-to-HTTP protocol bridge."""

from __future__ import annotations

import asyncio
import logging

import click

from mcplink.cli_commands._config import enable_tracing
from mcplink.cli_commands._output import configure_logging
from mcplink.config import BridgeSettings


@click.command()
@click.argument("url", required=False, envvar="MCP_SERVER_URL")
@click.pass_context
def bridge(ctx: click.Context, url: str | None) -> None:
    """Forward stdin JSON-RPC lines to URL over HTTP.

    URL defaults to $MCP_SERVER_URL, then http://127.0.0.1:4200/my-custom-path.
    Set DEBUG=1 for wire-level logs on stderr, MCPLINK_VERIFY_TLS=0 to
    accept self-signed certificates and MCPLINK_OTLP_ENDPOINT to export
    trace spans.
    """
    from mcplink.bridge import run_bridge

    settings = BridgeSettings.from_env(url)
    if settings.debug:
        configure_logging("DEBUG")
    elif not logging.getLogger().handlers:
        configure_logging("WARNING")
    # Under ``mcplink bridge`` the group has already set tracing up.
    if ctx.parent is None:
        enable_tracing(settings.otlp_endpoint)

    asyncio.run(run_bridge(settings))
