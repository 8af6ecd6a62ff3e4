"""Transport protocol and call cancellation.

Every transport satisfies :class:`Transport`: deliver one JSON-RPC request
and return its correlated response.  A backend-reported ``error`` comes back
as a :class:`JsonRpcResponse` with ``is_error`` set; delivery failures raise
:class:`~mcplink.errors.TransportError` subclasses.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from mcplink.errors import CallCancelledError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from mcplink.protocol.models import JsonRpcRequest, JsonRpcResponse

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation signal threaded through a call.

    Usage::

        token = CancelToken()
        task = asyncio.create_task(transport.call(request, cancel=token))
        token.cancel()  # the call raises CallCancelledError
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@runtime_checkable
class Transport(Protocol):
    """Delivers one JSON-RPC request and returns its correlated response."""

    name: str

    async def call(
        self,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse: ...

    async def close(self) -> None: ...


async def wait_cancellable(
    aw: Awaitable[T],
    cancel: CancelToken | None,
    request_id: Any = None,
) -> T:
    """Await *aw* unless *cancel* fires first.

    When the token wins, the pending work is cancelled (which aborts an
    in-flight HTTP request or subprocess) and :class:`CallCancelledError`
    is raised.
    """
    if cancel is None:
        return await aw
    work = asyncio.ensure_future(aw)
    if cancel.cancelled:
        work.cancel()
        raise CallCancelledError(request_id)

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()
    work.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await work
    raise CallCancelledError(request_id)
