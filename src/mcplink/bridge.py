"""Stdio-to-HTTP protocol bridge.

Lets an MCP client that only speaks stdio reach a backend that only
speaks HTTP: every stdin line is one JSON-RPC transaction forwarded with
:class:`~mcplink.transport.http.HttpTransport`, and every response is
written back as one stdout line.  Diagnostics go to stderr only.

The bridge never dies on bad input: unparsable lines, invalid requests
and backend failures are all answered with JSON-RPC errors addressed to
the best-known id.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mcplink import __version__
from mcplink.errors import McpLinkError, TransportError
from mcplink.protocol.models import (
    HANDSHAKE_METHOD,
    INTERNAL_ERROR,
    JsonRpcRequest,
    JsonRpcResponse,
    error_payload,
    handshake_result,
)
from mcplink.stdio_server import Emitter, dispatch_line, open_stdin_reader, serve_lines, write_stdout
from mcplink.transport.http import HttpTransport

if TYPE_CHECKING:
    import asyncio

    from mcplink.config import BridgeSettings
    from mcplink.transport.base import Transport

logger = logging.getLogger(__name__)

BRIDGE_NAME = "mcplink-bridge"


class ProtocolBridge:
    """Translates stdin lines into transport calls and responses into stdout lines."""

    def __init__(
        self,
        transport: Transport,
        *,
        server_name: str = BRIDGE_NAME,
        server_version: str = __version__,
    ) -> None:
        self._transport = transport
        self._server_name = server_name
        self._server_version = server_version

    async def handle_line(self, line: str) -> dict[str, Any] | None:
        """Answer one input line; ``None`` means nothing is written."""
        return await dispatch_line(line, self.handle_request)

    async def handle_request(self, request: JsonRpcRequest) -> dict[str, Any] | None:
        if request.is_notification:
            logger.debug("Notification %s acknowledged locally", request.method)
            return None

        if request.method == HANDSHAKE_METHOD:
            try:
                return await self._forward(request)
            except McpLinkError as exc:
                logger.warning("Backend handshake failed (%s), answering with local capabilities", exc)
                result = handshake_result(self._server_name, self._server_version)
                return JsonRpcResponse.success(request.id, result).to_wire()

        try:
            return await self._forward(request)
        except McpLinkError as exc:
            level = logging.ERROR if isinstance(exc, TransportError) else logging.WARNING
            logger.log(level, "Forwarding %s (id=%r) failed: %s", request.method, request.id, exc)
            return error_payload(request.id, INTERNAL_ERROR, f"Internal error: {exc}")

    async def serve(self, reader: asyncio.StreamReader, emit: Emitter = write_stdout) -> None:
        """Process lines from *reader* until EOF."""
        await serve_lines(reader, self.handle_line, emit)

    async def _forward(self, request: JsonRpcRequest) -> dict[str, Any]:
        response = await self._transport.call(request)
        return response.to_wire()


async def run_bridge(settings: BridgeSettings, *, emit: Emitter = write_stdout) -> None:
    """Bridge this process's stdio to ``settings.url`` until stdin closes.

    An unrecoverable fault is reported as one last ``-32603`` line with id
    ``null`` before it propagates.
    """
    logger.info("Bridging stdio to %s", settings.url)
    if not settings.verify_tls:
        logger.warning("TLS certificate verification is disabled")
    try:
        async with HttpTransport(settings.url, timeout=settings.timeout, verify=settings.verify_tls) as transport:
            bridge = ProtocolBridge(transport)
            reader = await open_stdin_reader()
            await bridge.serve(reader, emit)
    except Exception as exc:
        logger.exception("Bridge failed")
        try:
            emit(error_payload(None, INTERNAL_ERROR, f"Internal error: {exc}"))
        except OSError:
            logger.exception("Could not report the failure on stdout")
        raise
    logger.info("stdin closed, bridge exiting")
