"""Newline-delimited JSON-RPC over this process's stdin/stdout.

Shared by the protocol bridge and the built-in time server: each input
line is one independent transaction, decoded by :func:`dispatch_line` and
answered with at most one output line.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from mcplink.protocol.models import INVALID_REQUEST, PARSE_ERROR, JsonRpcRequest, error_payload

logger = logging.getLogger(__name__)

# Large enough for tool results carrying file contents.
STDIN_LINE_LIMIT = 16 * 1024 * 1024

RequestHandler = Callable[[JsonRpcRequest], Awaitable[dict[str, Any] | None]]
LineHandler = Callable[[str], Awaitable[dict[str, Any] | None]]
Emitter = Callable[[dict[str, Any]], None]


async def dispatch_line(line: str, handler: RequestHandler) -> dict[str, Any] | None:
    """Decode one input line and pass the request to *handler*.

    Undecodable input is answered here: ``-32700`` (id ``null``) for
    invalid JSON, ``-32600`` addressed to the best-known id for JSON that
    is not a request object.
    """
    try:
        message = json.loads(line)
    except json.JSONDecodeError as exc:
        logger.warning("Unparsable input line: %s", line[:200])
        return error_payload(None, PARSE_ERROR, f"Parse error: {exc}")

    if not isinstance(message, dict):
        return error_payload(None, INVALID_REQUEST, "Invalid request: expected a JSON object")

    try:
        request = JsonRpcRequest.model_validate(message)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first["loc"]) or "request"
        return error_payload(_best_known_id(message), INVALID_REQUEST, f"Invalid request: {where}: {first['msg']}")

    return await handler(request)


def _best_known_id(message: dict[str, Any]) -> Any:
    candidate = message.get("id")
    if isinstance(candidate, (int, str, float)) and not isinstance(candidate, bool):
        return candidate
    return None


def write_stdout(payload: dict[str, Any]) -> None:
    """Emit one JSON line on stdout and flush."""
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n")
    sys.stdout.flush()


async def open_stdin_reader() -> asyncio.StreamReader:
    """Wrap this process's stdin in an :class:`asyncio.StreamReader`."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=STDIN_LINE_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


async def serve_lines(
    reader: asyncio.StreamReader,
    handle: LineHandler,
    emit: Emitter = write_stdout,
) -> None:
    """Handle every line from *reader* concurrently until EOF.

    Returns once EOF is reached and every in-flight line has been answered.
    An exception escaping *handle* propagates after the remaining lines
    finish.
    """
    tasks: set[asyncio.Task[None]] = set()
    failures: list[BaseException] = []

    async def _process(line: str) -> None:
        payload = await handle(line)
        if payload is not None:
            emit(payload)

    def _finished(task: asyncio.Task[None]) -> None:
        tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            failures.append(exc)

    while True:
        try:
            raw = await _read_line(reader)
        except asyncio.LimitOverrunError:
            logger.warning("Dropping over-long input line")
            emit(error_payload(None, PARSE_ERROR, "Parse error: input line too long"))
            continue
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        task = asyncio.create_task(_process(line))
        tasks.add(task)
        task.add_done_callback(_finished)

    logger.debug("stdin closed, waiting for %d in-flight line(s)", len(tasks))
    if tasks:
        await asyncio.wait(tasks)
    if failures:
        raise failures[0]


async def _read_line(reader: asyncio.StreamReader) -> bytes:
    """Next newline-terminated line, or the unterminated tail at EOF.

    An over-limit line is consumed up to and including its newline before
    :class:`asyncio.LimitOverrunError` is raised, so reading can resume
    at the next line.
    """
    try:
        return await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as exc:
        return exc.partial
    except asyncio.LimitOverrunError:
        await _skip_line(reader)
        raise


async def _skip_line(reader: asyncio.StreamReader) -> None:
    while True:
        try:
            await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError:
            return
        except asyncio.LimitOverrunError as exc:
            await reader.readexactly(exc.consumed)
        else:
            return
