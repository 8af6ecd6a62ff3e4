"""Shared CLI output formatters and logging setup."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

from rich.console import Console
from rich.table import Table

from mcplink.protocol.models import ClientStatus, ToolDescriptor  # noqa: TC001

console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

_STATUS_STYLES = {"active": "green", "paused": "yellow", "undefined": "dim", "error": "red"}


def configure_logging(level: str) -> None:
    """Send log records to stderr; stdout may be carrying JSON-RPC."""
    logging.basicConfig(
        level=level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def print_status_table(statuses: dict[str, ClientStatus]) -> None:
    """Pretty-print client reachability as a table."""
    table = Table(title="MCP Clients")
    table.add_column("Client", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for client_id, status in sorted(statuses.items()):
        style = _STATUS_STYLES.get(status.status, "")
        table.add_row(client_id, f"[{style}]{status.status}[/{style}]", _truncate(status.error_msg or ""))

    console.print(table)


def print_tools_table(listing: list[tuple[str, list[ToolDescriptor]]]) -> None:
    """Pretty-print tool descriptors grouped by client."""
    table = Table(title="Discovered Tools")
    table.add_column("Client", style="magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for client_id, tools in listing:
        for tool in tools:
            table.add_row(client_id, tool.name, _truncate(tool.description))

    console.print(table)


def print_tool_result(result: Any, *, as_json: bool = False) -> None:
    """Print a ``tools/call`` result; text content items are shown as-is."""
    if as_json:
        console.print_json(json.dumps(result, default=str))
        return

    content = result.get("content") if isinstance(result, dict) else None
    if not isinstance(content, list):
        console.print(result)
        return
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text":
            console.print(item.get("text", ""), markup=False, highlight=False)
        else:
            console.print(item)


def _truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
