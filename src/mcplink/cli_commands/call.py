"""``mcplink call`` — invoke one tool through the router."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click

from mcplink.cli_commands._config import router_config
from mcplink.cli_commands._output import console, print_tool_result


def parse_arguments(pairs: tuple[str, ...]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into tool arguments; values are JSON when they parse."""
    arguments: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--arg")
        try:
            arguments[key] = json.loads(raw)
        except json.JSONDecodeError:
            arguments[key] = raw
    return arguments


@click.command()
@click.argument("client")
@click.argument("tool")
@click.option("--arg", "-a", "pairs", multiple=True, help="Tool argument as KEY=VALUE (repeatable).")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result as JSON.")
@click.pass_context
def call(ctx: click.Context, client: str, tool: str, pairs: tuple[str, ...], as_json: bool) -> None:
    """Call TOOL on CLIENT and print its result."""
    from mcplink.errors import HandlerError, McpLinkError
    from mcplink.router import CorrelationRouter, HostCapabilities

    arguments = parse_arguments(pairs)
    router = CorrelationRouter(router_config(ctx), HostCapabilities.from_env())

    async def _call() -> Any:
        try:
            return await router.call_tool(client, tool, arguments)
        finally:
            await router.aclose()

    try:
        result = asyncio.run(_call())
    except HandlerError as exc:
        console.print(f"[red]Tool error {exc.code}:[/red] {exc.message}")
        sys.exit(1)
    except McpLinkError as exc:
        console.print(f"[red]Call error:[/red] {exc}")
        sys.exit(1)

    print_tool_result(result, as_json=as_json)
