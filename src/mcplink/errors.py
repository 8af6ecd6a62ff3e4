"""Shared error types for transports, routing and the protocol bridge."""

from __future__ import annotations

from typing import Any


class McpLinkError(Exception):
    """Base error for all mcplink failures."""


# ---------------------------------------------------------------------------
# Malformed data
# ---------------------------------------------------------------------------


class ParseError(McpLinkError):
    """Data received on a transport is not valid JSON."""


class MalformedResponseError(ParseError):
    """A response body could not be decoded into a JSON-RPC message.

    The raw body is kept for diagnostics.
    """

    def __init__(self, body: str, detail: str = "") -> None:
        self.body = body
        self.detail = detail
        preview = body[:200]
        msg = f"Malformed response: {preview!r}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class ProtocolError(McpLinkError):
    """Well-formed JSON that lacks required JSON-RPC fields."""


# ---------------------------------------------------------------------------
# Transport failures
# ---------------------------------------------------------------------------


class TransportError(McpLinkError):
    """Delivering a request or receiving its response failed."""


class SpawnError(TransportError):
    """The backend child process could not be started."""

    def __init__(self, command: str, detail: str = "") -> None:
        self.command = command
        self.detail = detail
        super().__init__(f"Failed to spawn {command!r}" + (f": {detail}" if detail else ""))


class ProcessExitedError(TransportError):
    """The child process exited while calls were still outstanding."""

    def __init__(self, exit_code: int | None, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        msg = f"Process exited with code {exit_code}"
        if stderr:
            msg += f": {stderr[:500]}"
        super().__init__(msg)


class CallTimeoutError(TransportError):
    """No matching response arrived before the call's deadline."""

    def __init__(self, request_id: Any, timeout: float) -> None:
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {request_id!r} timed out after {timeout}s")


class CallCancelledError(TransportError):
    """The caller cancelled the call before it settled."""

    def __init__(self, request_id: Any) -> None:
        self.request_id = request_id
        super().__init__(f"Request {request_id!r} was cancelled")


class SessionClosedError(TransportError):
    """The session was closed while the call was pending, or before it was issued."""


class NetworkError(TransportError):
    """Connection refused, DNS failure, abrupt close and similar."""


class HttpStatusError(TransportError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"HTTP error {status_code}" + (f": {body[:500]}" if body else ""))


class CapabilityUnavailableError(TransportError):
    """The host command-execution capability is not available."""


class ShellError(TransportError):
    """The host command exited with a non-zero status."""

    def __init__(self, exit_code: int, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Shell command failed with code {exit_code}" + (f": {stderr[:500]}" if stderr else ""))


# ---------------------------------------------------------------------------
# Backend-reported failures and routing
# ---------------------------------------------------------------------------


class HandlerError(McpLinkError):
    """A backend reported a failure through a JSON-RPC ``error`` member.

    The error object is carried verbatim.
    """

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")


class RoutingError(McpLinkError):
    """No transport could be chosen for a client id."""


class ClientNotFoundError(RoutingError):
    """The client id is neither configured, remote, nor built in."""

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        super().__init__(f"MCP client '{client_id}' is not available")


class ClientUnavailableError(RoutingError):
    """The client is configured but not in a callable state (e.g. paused)."""

    def __init__(self, client_id: str, status: str) -> None:
        self.client_id = client_id
        self.status = status
        super().__init__(f"MCP client '{client_id}' is {status}")


class ConfigError(McpLinkError):
    """A configuration file could not be read or validated."""
