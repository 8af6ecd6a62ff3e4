"""Protocol models — JSON-RPC 2.0 messages, tool descriptors, server configs.

These shapes are shared by every transport.  A response always carries
exactly one of ``result`` / ``error``; a request without an id, or whose
method lives under ``notifications/``, is a notification and never gets a
response.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator

from mcplink.errors import ProtocolError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

HANDSHAKE_METHOD = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
TOOL_EXECUTION_ERROR = -32000

RequestId = int | str | float

# ---------------------------------------------------------------------------
# JSON-RPC 2.0 envelope
# ---------------------------------------------------------------------------


class JsonRpcRequest(BaseModel):
    """A JSON-RPC 2.0 request or notification."""

    jsonrpc: str = JSONRPC_VERSION
    method: str
    id: RequestId | None = None
    params: dict[str, Any] | None = None

    @property
    def is_notification(self) -> bool:
        return self.id is None or self.method.startswith("notifications/")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def to_line(self) -> str:
        """Serialize as one newline-terminated JSON line."""
        return json.dumps(self.to_wire(), ensure_ascii=False, separators=(",", ":")) + "\n"


class JsonRpcError(BaseModel):
    """A JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Any = None


class JsonRpcResponse(BaseModel):
    """A JSON-RPC 2.0 response message."""

    jsonrpc: str = JSONRPC_VERSION
    id: RequestId | None = None
    result: Any = None
    error: JsonRpcError | None = None

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> JsonRpcResponse:
        has_result = "result" in self.model_fields_set
        if self.error is not None and has_result and self.result is not None:
            msg = "response carries both 'result' and 'error'"
            raise ValueError(msg)
        if self.error is None and not has_result:
            msg = "response carries neither 'result' nor 'error'"
            raise ValueError(msg)
        return self

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, request_id: RequestId | None, result: Any) -> JsonRpcResponse:
        return cls(id=request_id, result=result)

    @classmethod
    def failure(
        cls,
        request_id: RequestId | None,
        code: int,
        message: str,
        data: Any = None,
    ) -> JsonRpcResponse:
        return cls(id=request_id, error=JsonRpcError(code=code, message=message, data=data))

    @classmethod
    def from_payload(cls, payload: Any) -> JsonRpcResponse:
        """Validate a decoded JSON value, raising :class:`ProtocolError` on bad shape."""
        if not isinstance(payload, dict):
            msg = f"Expected a JSON-RPC object, got {type(payload).__name__}"
            raise ProtocolError(msg)
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ProtocolError(f"Invalid JSON-RPC response: {exc}") from exc

    def to_wire(self) -> dict[str, Any]:
        """Render with exactly one of ``result`` / ``error``."""
        wire: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            wire["error"] = self.error.model_dump(exclude_none=True)
        else:
            wire["result"] = self.result
        return wire

    def to_line(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False, separators=(",", ":")) + "\n"


def error_payload(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a raw error response for an id that may not validate (e.g. ``null``)."""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": {"code": code, "message": message}}


def handshake_result(
    server_name: str,
    server_version: str,
    *,
    capabilities: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Minimal ``initialize`` result used when the real backend is unreachable."""
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": capabilities if capabilities is not None else {"tools": {}, "resources": {}, "prompts": {}},
        "serverInfo": {"name": server_name, "version": server_version},
    }


# ---------------------------------------------------------------------------
# MCP-specific payloads
# ---------------------------------------------------------------------------


class ToolDescriptor(BaseModel):
    """A tool definition as returned by ``tools/list``."""

    model_config = {"populate_by_name": True}

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


ServerStatus = Literal["active", "paused", "undefined", "error"]


class ServerConfig(BaseModel):
    """How to reach one backend.

    Stdio backends use ``command`` + ``args``; remote HTTP backends carry
    ``url`` and the single ``tool_name`` they expose.
    """

    model_config = {"populate_by_name": True}

    command: str = ""
    args: list[str] = []
    status: ServerStatus = "active"
    env: dict[str, str] = {}
    url: str | None = None
    tool_name: str | None = Field(default=None, alias="toolName")

    @property
    def is_remote(self) -> bool:
        return self.url is not None


class ClientStatus(BaseModel):
    """Reachability of one client id as reported by the router."""

    status: ServerStatus
    error_msg: str | None = None
