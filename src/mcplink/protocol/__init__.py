"""Protocol layer — JSON-RPC message model and response body decoding."""

from mcplink.protocol.models import (
    ClientStatus,
    JsonRpcError,
    JsonRpcRequest,
    JsonRpcResponse,
    ServerConfig,
    ToolDescriptor,
)
from mcplink.protocol.sse import decode_body, decode_response, extract_sse_response

__all__ = [
    "ClientStatus",
    "JsonRpcError",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "ServerConfig",
    "ToolDescriptor",
    "decode_body",
    "decode_response",
    "extract_sse_response",
]
