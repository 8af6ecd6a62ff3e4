"""``mcplink time-server`` — serve the built-in time tool over stdio."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from mcplink.protocol.models import JsonRpcRequest

logger = logging.getLogger(__name__)


async def _answer(request: JsonRpcRequest) -> dict[str, Any] | None:
    from mcplink.builtin import handle_time_request

    response = handle_time_request(request)
    return response.to_wire() if response is not None else None


async def serve_time_server() -> None:
    """Answer time-server requests on stdin/stdout until EOF."""
    from mcplink.stdio_server import dispatch_line, open_stdin_reader, serve_lines

    reader = await open_stdin_reader()

    async def _handle(line: str) -> dict[str, Any] | None:
        return await dispatch_line(line, _answer)

    logger.info("Time server listening on stdio")
    await serve_lines(reader, _handle)


@click.command("time-server")
def time_server() -> None:
    """Run the built-in time server on stdio (newline-delimited JSON-RPC)."""
    asyncio.run(serve_time_server())
