"""Built-in time tool — the one backend simple enough to answer in-process.

The router falls back to :func:`handle_time_request` when the ``time-server``
client cannot be reached through a real transport, and ``mcplink
time-server`` serves the same handler over stdio.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mcplink.protocol.models import (
    HANDSHAKE_METHOD,
    METHOD_NOT_FOUND,
    TOOL_EXECUTION_ERROR,
    TOOLS_CALL,
    TOOLS_LIST,
    JsonRpcRequest,
    JsonRpcResponse,
    ToolDescriptor,
    handshake_result,
)

logger = logging.getLogger(__name__)

TIME_SERVER_ID = "time-server"
TIME_SERVER_VERSION = "1.0.0"
TIME_TOOL_NAME = "get_current_time"
TIME_FORMATS = ("full", "date", "time", "iso")

TIME_TOOL = ToolDescriptor(
    name=TIME_TOOL_NAME,
    description=(
        "Get the current system time, including date, time of day and time zone. "
        "Use it when the user asks what time or what day it is."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "timezone": {
                "type": "string",
                "description": (
                    'IANA time zone name such as "Asia/Taipei", "America/New_York" or "UTC". '
                    "Defaults to the system time zone."
                ),
            },
            "format": {
                "type": "string",
                "enum": list(TIME_FORMATS),
                "description": "full (date and time), date, time, or iso (ISO 8601, UTC).",
            },
        },
        "required": [],
    },
)


def format_current_time(
    timezone: str | None = None,
    fmt: str = "full",
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Describe *now* (default: the current instant) in *timezone*.

    Raises:
        ZoneInfoNotFoundError: Unknown time zone name.
    """
    instant = now or datetime.now(UTC)
    local = instant.astimezone(ZoneInfo(timezone) if timezone else None)
    zone = timezone or local.tzname() or "local"
    iso = instant.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    if fmt == "date":
        return {"date": local.strftime("%Y-%m-%d %A"), "timezone": zone}
    if fmt == "time":
        return {"time": local.strftime("%H:%M:%S"), "timezone": zone}
    if fmt == "iso":
        return {"iso": iso, "timezone": "UTC"}
    return {
        "datetime": local.strftime("%A, %B %d, %Y %H:%M:%S %Z"),
        "date": local.strftime("%Y-%m-%d %A"),
        "time": local.strftime("%H:%M:%S"),
        "timezone": zone,
        "timestamp": int(instant.timestamp() * 1000),
        "iso": iso,
    }


def handle_time_request(request: JsonRpcRequest) -> JsonRpcResponse | None:
    """Answer one request addressed to the time server; ``None`` for notifications."""
    if request.is_notification:
        return None

    if request.method == HANDSHAKE_METHOD:
        return JsonRpcResponse.success(
            request.id,
            handshake_result(TIME_SERVER_ID, TIME_SERVER_VERSION, capabilities={"tools": {}}),
        )

    if request.method == TOOLS_LIST:
        return JsonRpcResponse.success(request.id, {"tools": [TIME_TOOL.to_wire()]})

    if request.method == TOOLS_CALL:
        params = request.params or {}
        name = params.get("name")
        if name != TIME_TOOL_NAME:
            return JsonRpcResponse.failure(request.id, METHOD_NOT_FOUND, f"Unknown tool: {name}")
        arguments = params.get("arguments") or {}
        try:
            payload = format_current_time(arguments.get("timezone"), arguments.get("format") or "full")
        except (ZoneInfoNotFoundError, ValueError) as exc:
            logger.debug("get_current_time failed: %s", exc)
            return JsonRpcResponse.failure(request.id, TOOL_EXECUTION_ERROR, f"Error getting time: {exc}")
        return JsonRpcResponse.success(request.id, text_content(payload))

    return JsonRpcResponse.failure(request.id, METHOD_NOT_FOUND, f"Method not found: {request.method}")


def text_content(payload: Any) -> dict[str, Any]:
    """Wrap *payload* as a ``tools/call`` result with one text item."""
    return {"content": [{"type": "text", "text": json.dumps(payload, indent=2, ensure_ascii=False)}]}
