"""``mcplink tools`` — list tools exposed by MCP clients."""

from __future__ import annotations

import asyncio
import json
import sys

import click

from mcplink.cli_commands._config import router_config
from mcplink.cli_commands._output import console, print_tools_table
from mcplink.protocol.models import ToolDescriptor  # noqa: TC001


@click.group()
def tools() -> None:
    """Discover and inspect tools."""


@tools.command("list")
@click.argument("client", required=False)
@click.option("--remote", is_flag=True, help="Include remote-<tool> clients discovered from the remote backend.")
@click.option("--json", "as_json", is_flag=True, help="Print raw tool descriptors as JSON.")
@click.pass_context
def list_tools(ctx: click.Context, client: str | None, remote: bool, as_json: bool) -> None:
    """List tools of CLIENT, or of every active client when omitted."""
    from mcplink.errors import McpLinkError
    from mcplink.router import CorrelationRouter, HostCapabilities

    router = CorrelationRouter(router_config(ctx), HostCapabilities.from_env())

    async def _list() -> list[tuple[str, list[ToolDescriptor]]]:
        try:
            if remote:
                await router.discover_remote_clients()
            if client is not None:
                return [(client, await router.list_tools(client))]
            return await router.list_all_tools()
        finally:
            await router.aclose()

    try:
        listing = asyncio.run(_list())
    except McpLinkError as exc:
        console.print(f"[red]Discovery error:[/red] {exc}")
        sys.exit(1)

    if as_json:
        payload = {cid: [tool.to_wire() for tool in found] for cid, found in listing}
        console.print_json(json.dumps(payload))
        return

    if not any(found for _, found in listing):
        console.print("[yellow]No tools discovered.[/yellow]")
        return

    print_tools_table(listing)
