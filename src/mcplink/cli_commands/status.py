"""``mcplink status`` — show which clients the router can reach."""

from __future__ import annotations

import asyncio

import click

from mcplink.cli_commands._config import router_config
from mcplink.cli_commands._output import console, print_status_table


@click.command()
@click.option("--remote", is_flag=True, help="Also discover remote-<tool> clients from the remote backend.")
@click.pass_context
def status(ctx: click.Context, remote: bool) -> None:
    """Show the status of every configured and built-in client."""
    from mcplink.errors import McpLinkError
    from mcplink.router import CorrelationRouter, HostCapabilities

    router = CorrelationRouter(router_config(ctx), HostCapabilities.from_env())

    async def _discover() -> None:
        try:
            await router.discover_remote_clients()
        finally:
            await router.aclose()

    if remote:
        try:
            asyncio.run(_discover())
        except McpLinkError as exc:
            console.print(f"[red]Remote discovery error:[/red] {exc}")

    print_status_table(router.statuses())
