"""Response body decoding — Server-Sent-Events framing and plain JSON.

A streamable-HTTP backend may answer one POST with an event stream rather
than a JSON body.  Each event is a blank-line-delimited block of
``field: value`` lines; the JSON-RPC response travels in ``data:`` lines.
Backends may emit keep-alive or partial events before the final one, so the
last JSON-RPC-looking payload wins.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcplink.errors import MalformedResponseError
from mcplink.protocol.models import JsonRpcResponse

logger = logging.getLogger(__name__)

EVENT_STREAM = "text/event-stream"
_DATA_PREFIX = "data:"
_RESPONSE_KEYS = ("jsonrpc", "result", "error")


def extract_sse_response(body: str) -> dict[str, Any]:
    """Return the last JSON-RPC payload framed in *body*.

    Falls back to parsing the whole body as one JSON document when no
    ``data:`` line carries a JSON-RPC object.

    Raises:
        MalformedResponseError: If neither strategy yields a JSON object.
    """
    candidate: dict[str, Any] | None = None
    for event in body.replace("\r\n", "\n").split("\n\n"):
        for line in event.split("\n"):
            if not line.startswith(_DATA_PREFIX):
                continue
            data = line[len(_DATA_PREFIX) :].strip()
            if not data:
                continue
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON SSE data line: %s", data[:200])
                continue
            if isinstance(parsed, dict) and any(key in parsed for key in _RESPONSE_KEYS):
                candidate = parsed

    if candidate is not None:
        return candidate
    return _parse_json_object(body)


def decode_body(text: str, content_type: str | None = None) -> dict[str, Any]:
    """Decode a response body into a JSON object.

    An event-stream content type goes through :func:`extract_sse_response`.
    When the content type is not observable (``None``), event-stream
    extraction is attempted first since it falls back to plain JSON anyway.
    """
    if content_type is None or EVENT_STREAM in content_type.lower():
        return extract_sse_response(text)
    return _parse_json_object(text)


def decode_response(text: str, content_type: str | None = None) -> JsonRpcResponse:
    """Decode and validate a body into a :class:`JsonRpcResponse`."""
    return JsonRpcResponse.from_payload(decode_body(text, content_type))


def _parse_json_object(text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(text, str(exc)) from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError(text, "not a JSON object")
    return parsed
