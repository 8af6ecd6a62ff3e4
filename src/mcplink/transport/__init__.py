"""Transports — stdio child processes, HTTP, host shell bridge and in-process handlers."""

from mcplink.transport.base import CancelToken, Transport, wait_cancellable
from mcplink.transport.http import HttpTransport
from mcplink.transport.local import LocalTransport
from mcplink.transport.shell import (
    CommandResult,
    HostCommandRunner,
    ShellBridgeTransport,
    SubprocessCommandRunner,
)
from mcplink.transport.stdio import LineBuffer, StdioSession, StdioTransport, open_session

__all__ = [
    "CancelToken",
    "CommandResult",
    "HostCommandRunner",
    "HttpTransport",
    "LineBuffer",
    "LocalTransport",
    "ShellBridgeTransport",
    "StdioSession",
    "StdioTransport",
    "SubprocessCommandRunner",
    "Transport",
    "open_session",
    "wait_cancellable",
]
