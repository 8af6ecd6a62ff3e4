"""Shell-bridge transport — the HTTP POST performed by a host command.

Used when the caller may not open network connections itself but the host
can run commands on its behalf.  The command performs the same POST as
:class:`~mcplink.transport.http.HttpTransport` (same headers, same body);
its captured stdout is decoded like an HTTP body whose content type is
unknown, so SSE extraction is tried before plain JSON.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from mcplink.errors import CallTimeoutError, CapabilityUnavailableError, ShellError
from mcplink.protocol.sse import decode_response
from mcplink.transport.base import CancelToken, wait_cancellable
from mcplink.transport.http import REQUEST_HEADERS
from mcplink.utils.telemetry import ATTR_COMMAND, ATTR_METHOD, ATTR_REQUEST_ID, ATTR_TRANSPORT, ATTR_URL, get_tracer

if TYPE_CHECKING:
    from mcplink.protocol.models import JsonRpcRequest, JsonRpcResponse

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

SHELL_TIMEOUT = 10.0

ShellFlavor = Literal["curl", "powershell"]


class CommandResult(BaseModel):
    """Captured outcome of one host command."""

    exit_code: int = Field(..., description="Process exit code.")
    stdout: str = Field(default="", description="Captured stdout.")
    stderr: str = Field(default="", description="Captured stderr.")
    timed_out: bool = Field(default=False, description="Whether the command was killed at its deadline.")


@runtime_checkable
class HostCommandRunner(Protocol):
    """Host-provided capability to execute a command outside the caller's sandbox."""

    async def run(
        self,
        argv: list[str],
        *,
        stdin: str | None = None,
        timeout: float = SHELL_TIMEOUT,
    ) -> CommandResult: ...


class SubprocessCommandRunner:
    """Runs host commands as local subprocesses."""

    async def run(
        self,
        argv: list[str],
        *,
        stdin: str | None = None,
        timeout: float = SHELL_TIMEOUT,
    ) -> CommandResult:
        logger.debug("Executing host command: %s", argv[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            msg = f"Cannot execute {argv[0]!r}: {exc}"
            raise CapabilityUnavailableError(msg) from exc

        stdin_bytes = stdin.encode("utf-8") if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(input=stdin_bytes), timeout=timeout)
        except TimeoutError:
            _kill(proc)
            await proc.wait()
            return CommandResult(exit_code=-1, timed_out=True)
        except asyncio.CancelledError:
            _kill(proc)
            raise

        return CommandResult(
            exit_code=proc.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
        )


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


def build_curl_command(url: str, *, timeout: float, verify: bool = True) -> list[str]:
    """curl argv posting stdin as the body; non-2xx exits non-zero with the body kept."""
    argv = [
        "curl",
        "--silent",
        "--show-error",
        "--fail-with-body",
        "--request",
        "POST",
        "--max-time",
        f"{timeout:g}",
        "--data-binary",
        "@-",
    ]
    for name, value in REQUEST_HEADERS.items():
        argv += ["--header", f"{name}: {value}"]
    if not verify:
        argv.append("--insecure")
    argv.append(url)
    return argv


def build_powershell_command(url: str, body: str, *, verify: bool = True) -> list[str]:
    """PowerShell argv running ``Invoke-WebRequest`` with the body inlined."""
    headers = "; ".join(f'"{name}" = "{value}"' for name, value in REQUEST_HEADERS.items())
    skip_check = " -SkipCertificateCheck" if not verify else ""
    script = "\n".join([
        f"$headers = @{{ {headers} }}",
        f"$body = '{_ps_quote(body)}'",
        f"$response = Invoke-WebRequest -Uri '{_ps_quote(url)}' -Method POST "
        f"-Headers $headers -Body $body -UseBasicParsing{skip_check}",
        "$response.Content",
    ])
    return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]


def _ps_quote(value: str) -> str:
    return value.replace("'", "''")


class ShellBridgeTransport:
    """Reaches an HTTP backend through a :class:`HostCommandRunner`.

    One command is spawned per call, so there is no session to keep alive.
    """

    name = "shell"

    def __init__(
        self,
        url: str,
        runner: HostCommandRunner | None,
        *,
        timeout: float = SHELL_TIMEOUT,
        verify: bool = True,
        flavor: ShellFlavor = "curl",
    ) -> None:
        self.url = url
        self._runner = runner
        self._timeout = timeout
        self._verify = verify
        self._flavor = flavor

    def build_command(self, request: JsonRpcRequest, timeout: float) -> tuple[list[str], str | None]:
        """Return ``(argv, stdin)`` for the host command performing the POST."""
        body = json.dumps(request.to_wire(), ensure_ascii=False)
        if self._flavor == "powershell":
            return build_powershell_command(self.url, body, verify=self._verify), None
        return build_curl_command(self.url, timeout=timeout, verify=self._verify), body

    async def call(
        self,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        """Execute the POST as a host command and decode its stdout.

        Raises:
            CapabilityUnavailableError: No runner was provided.
            ShellError: The command exited non-zero.
            CallTimeoutError: The command exceeded its timeout.
        """
        if self._runner is None:
            msg = "Host command execution capability is not available"
            raise CapabilityUnavailableError(msg)

        deadline = timeout if timeout is not None else self._timeout
        with _tracer.start_as_current_span("mcplink.shell.call") as span:
            span.set_attribute(ATTR_TRANSPORT, self.name)
            span.set_attribute(ATTR_URL, self.url)
            span.set_attribute(ATTR_METHOD, request.method)
            span.set_attribute(ATTR_REQUEST_ID, str(request.id))

            argv, stdin = self.build_command(request, deadline)
            span.set_attribute(ATTR_COMMAND, argv[0])
            result = await wait_cancellable(
                self._runner.run(argv, stdin=stdin, timeout=deadline),
                cancel,
                request.id,
            )

            if result.timed_out:
                raise CallTimeoutError(request.id, deadline)
            if result.exit_code != 0:
                logger.warning("Shell bridge command failed (%s): %s", result.exit_code, result.stderr[:500])
                raise ShellError(result.exit_code, result.stderr or result.stdout)
            logger.debug("Shell bridge output: %s", result.stdout[:500])
            return decode_response(result.stdout, content_type=None)

    async def close(self) -> None:
        """Nothing to release; each call owns its command."""
