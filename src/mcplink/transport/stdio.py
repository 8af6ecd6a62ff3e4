"""Stdio transport — JSON-RPC over a child process's stdin/stdout.

One :class:`StdioSession` owns one child process.  Requests are written as
one JSON line each; the process's stdout is fed through a :class:`LineBuffer`
and every complete line is matched against the session's pending calls by
id, so responses may arrive in any order.  Stderr is collected separately
for diagnostics and never parsed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mcplink.errors import (
    CallCancelledError,
    CallTimeoutError,
    ProcessExitedError,
    ProtocolError,
    SessionClosedError,
    SpawnError,
)
from mcplink.protocol.models import JsonRpcResponse
from mcplink.transport.base import CancelToken, wait_cancellable
from mcplink.utils.telemetry import ATTR_COMMAND, ATTR_METHOD, ATTR_REQUEST_ID, ATTR_TRANSPORT, get_tracer

if TYPE_CHECKING:
    from mcplink.protocol.models import JsonRpcRequest, ServerConfig

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

STDIO_TIMEOUT = 15.0
_READ_CHUNK = 64 * 1024
_STDERR_LIMIT = 64 * 1024
_CLOSE_GRACE = 5.0


class LineBuffer:
    """Accumulates output chunks and releases only newline-terminated lines.

    Splitting happens on raw bytes so a multi-byte UTF-8 sequence cut across
    two chunks is never decoded half-way.
    """

    def __init__(self) -> None:
        self._pending = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        """Append *chunk* and return the lines it completed, in order."""
        self._pending.extend(chunk)
        if b"\n" not in chunk:
            return []
        *complete, rest = bytes(self._pending).split(b"\n")
        self._pending = bytearray(rest)
        return [raw.decode("utf-8", errors="replace").rstrip("\r") for raw in complete]

    @property
    def pending(self) -> bytes:
        """Bytes received after the last line break."""
        return bytes(self._pending)


@dataclass
class PendingCall:
    """An outstanding request waiting for its response line."""

    id: Any
    future: asyncio.Future[JsonRpcResponse]
    created_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None

    def settle(self, response: JsonRpcResponse) -> bool:
        self._cancel_timer()
        if self.future.done():
            return False
        self.future.set_result(response)
        return True

    def fail(self, exc: BaseException) -> bool:
        self._cancel_timer()
        if self.future.done():
            return False
        self.future.set_exception(exc)
        return True

    def abandon(self) -> None:
        """Drop the call without settling it; nobody is waiting any more."""
        self._cancel_timer()
        if not self.future.done():
            self.future.cancel()

    def _cancel_timer(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


class StdioSession:
    """One live child process and its pending-call table.

    The table is only mutated from the session's own reader task, timer
    callbacks and ``call``/``close``, all on one event loop.

    Usage::

        session = await open_session(ServerConfig(command="node", args=["server.js"]))
        try:
            response = await session.call(JsonRpcRequest(id=1, method="tools/list"))
        finally:
            await session.close()
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        name: str = "stdio",
        timeout: float = STDIO_TIMEOUT,
    ) -> None:
        self.name = name
        self._process = process
        self._timeout = timeout
        self._pending: dict[Any, PendingCall] = {}
        self._buffer = LineBuffer()
        self._stderr = bytearray()
        self._closed = False
        self._done = asyncio.Event()
        self._stderr_reader: asyncio.Task[None] | None = None
        if process.stderr is not None:
            self._stderr_reader = asyncio.create_task(self._read_stderr(process.stderr))
        self._reader = asyncio.create_task(self._read_stdout())

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_alive(self) -> bool:
        return not self._closed and not self._done.is_set() and self._process.returncode is None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def stderr_text(self) -> str:
        return self._stderr.decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(
        self,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        """Write *request* and wait for the response line carrying its id.

        Raises:
            CallTimeoutError: No matching line before the deadline; the
                process is terminated.
            CallCancelledError: *cancel* fired; the whole session is closed.
            ProcessExitedError: The process died with the call outstanding.
            ProtocolError: The matching line is not a valid JSON-RPC response.
            SessionClosedError: The session was closed.
        """
        if request.id is None:
            msg = f"Request {request.method!r} has no id; use notify() for notifications"
            raise ValueError(msg)
        if not self.is_alive:
            msg = f"{self.name}: session is closed"
            raise SessionClosedError(msg)
        if request.id in self._pending:
            msg = f"Request id {request.id!r} is already outstanding on {self.name}"
            raise ValueError(msg)

        deadline = timeout if timeout is not None else self._timeout
        loop = asyncio.get_running_loop()
        pending = PendingCall(id=request.id, future=loop.create_future())
        pending.timeout_handle = loop.call_later(deadline, self._expire, request.id, deadline)
        self._pending[request.id] = pending

        try:
            await self._write(request.to_line())
        except BaseException:
            self._discard(request.id)
            raise

        try:
            return await wait_cancellable(pending.future, cancel, request.id)
        except CallTimeoutError:
            await self.wait_closed()
            raise
        except CallCancelledError:
            logger.warning("%s: request %r cancelled, closing session", self.name, request.id)
            self._discard(request.id)
            await self.close()
            raise
        except asyncio.CancelledError:
            self._discard(request.id)
            self._kill()
            raise

    async def notify(self, request: JsonRpcRequest) -> None:
        """Write a notification; nothing is registered and no response is awaited."""
        if not self.is_alive:
            msg = f"{self.name}: session is closed"
            raise SessionClosedError(msg)
        await self._write(request.to_line())

    def handle_line(self, line: str) -> bool:
        """Correlate one complete output line; return ``True`` if it settled a call.

        Unparsable lines, server-initiated messages and ids with no pending
        call (late or duplicate responses) are discarded.  A malformed
        response addressed to a pending id fails that call with
        :class:`ProtocolError`; the session stays up.
        """
        text = line.strip()
        if not text:
            return False
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("%s: ignoring non-JSON output line: %s", self.name, text[:200])
            return False
        if not isinstance(payload, dict) or "method" in payload:
            return False

        response_id = payload.get("id")
        if not isinstance(response_id, (int, str, float)) or isinstance(response_id, bool):
            return False
        pending = self._pending.get(response_id)
        if pending is None:
            logger.debug("%s: discarding response for unknown or settled id %r", self.name, response_id)
            return False

        del self._pending[response_id]
        try:
            response = JsonRpcResponse.from_payload(payload)
        except ProtocolError as exc:
            logger.warning("%s: malformed response for request %r: %s", self.name, response_id, exc)
            return pending.fail(exc)
        return pending.settle(response)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Terminate the process and settle whatever is still pending."""
        if self._closed:
            await self.wait_closed()
            return
        self._closed = True

        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=_CLOSE_GRACE)
            except TimeoutError:
                self._kill()

        try:
            await asyncio.wait_for(self.wait_closed(), timeout=_CLOSE_GRACE)
        except TimeoutError:
            self._reader.cancel()
            await self.wait_closed()
        logger.info("%s: stdio session closed", self.name)

    async def wait_closed(self) -> None:
        """Wait until stdout has closed and pending calls were settled."""
        await self._done.wait()

    def _expire(self, request_id: Any, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("%s: request %r timed out after %ss, terminating process", self.name, request_id, timeout)
        pending.fail(CallTimeoutError(request_id, timeout))
        self._kill()

    def _discard(self, request_id: Any) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.abandon()

    def _kill(self) -> None:
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()

    async def _write(self, line: str) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            msg = f"{self.name}: stdin is closed"
            raise SessionClosedError(msg)
        logger.debug("%s >>> %s", self.name, line.rstrip())
        try:
            stdin.write(line.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ProcessExitedError(self._process.returncode, self.stderr_text) from exc

    async def _read_stdout(self) -> None:
        try:
            stdout = self._process.stdout
            if stdout is not None:
                while True:
                    chunk = await stdout.read(_READ_CHUNK)
                    if not chunk:
                        break
                    for line in self._buffer.feed(chunk):
                        logger.debug("%s <<< %s", self.name, line[:500])
                        self.handle_line(line)
            if self._buffer.pending:
                logger.debug("%s: dropping unterminated trailing output", self.name)
            await self._process.wait()
            if self._stderr_reader is not None:
                await asyncio.wait({self._stderr_reader}, timeout=1.0)
        finally:
            self._finish()

    async def _read_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            chunk = await stderr.read(_READ_CHUNK)
            if not chunk:
                return
            logger.debug("%s stderr: %s", self.name, chunk.decode("utf-8", errors="replace").rstrip())
            if len(self._stderr) < _STDERR_LIMIT:
                self._stderr.extend(chunk[: _STDERR_LIMIT - len(self._stderr)])

    def _finish(self) -> None:
        error: Exception
        if self._closed:
            error = SessionClosedError(f"{self.name}: session closed")
        else:
            error = ProcessExitedError(self._process.returncode, self.stderr_text)
        outstanding = list(self._pending.values())
        self._pending.clear()
        for pending in outstanding:
            pending.fail(error)
        if outstanding:
            logger.warning("%s: %d call(s) failed: %s", self.name, len(outstanding), error)
        self._done.set()


async def open_session(
    config: ServerConfig,
    *,
    name: str | None = None,
    timeout: float = STDIO_TIMEOUT,
) -> StdioSession:
    """Spawn the configured command and wrap it in a :class:`StdioSession`."""
    if not config.command:
        raise SpawnError("", "no command configured")
    env = {**os.environ, **config.env} if config.env else None
    logger.info("Starting stdio session: %s %s", config.command, " ".join(config.args))
    try:
        process = await asyncio.create_subprocess_exec(
            config.command,
            *config.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        raise SpawnError(config.command, str(exc)) from exc
    return StdioSession(process, name=name or config.command, timeout=timeout)


class StdioTransport:
    """Routes calls to a backend reached through a child process.

    With ``persistent=True`` one session is opened lazily and reused across
    calls; otherwise every call spawns its own process and closes it once
    the call settles.
    """

    name = "stdio"

    def __init__(
        self,
        config: ServerConfig,
        *,
        timeout: float = STDIO_TIMEOUT,
        persistent: bool = True,
        label: str | None = None,
    ) -> None:
        self._config = config
        self._timeout = timeout
        self._persistent = persistent
        self._label = label or config.command
        self._session: StdioSession | None = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> StdioSession | None:
        return self._session

    async def open(self) -> StdioSession:
        """Return the live persistent session, spawning it if needed."""
        async with self._lock:
            if self._session is None or not self._session.is_alive:
                self._session = await open_session(self._config, name=self._label, timeout=self._timeout)
            return self._session

    async def call(
        self,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        with _tracer.start_as_current_span("mcplink.stdio.call") as span:
            span.set_attribute(ATTR_TRANSPORT, self.name)
            span.set_attribute(ATTR_METHOD, request.method)
            span.set_attribute(ATTR_COMMAND, self._config.command)
            span.set_attribute(ATTR_REQUEST_ID, str(request.id))

            if self._persistent:
                session = await self.open()
                return await session.call(request, timeout=timeout, cancel=cancel)

            session = await open_session(self._config, name=self._label, timeout=self._timeout)
            try:
                return await session.call(request, timeout=timeout, cancel=cancel)
            finally:
                await session.close()

    async def close(self) -> None:
        """Close the persistent session, if any."""
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()
