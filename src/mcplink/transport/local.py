"""In-process transport for backends answered by a Python handler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from mcplink.errors import CallCancelledError
from mcplink.protocol.models import JsonRpcRequest, JsonRpcResponse

if TYPE_CHECKING:
    from mcplink.transport.base import CancelToken

logger = logging.getLogger(__name__)

LocalHandler = Callable[[JsonRpcRequest], JsonRpcResponse | None]


class LocalTransport:
    """Hands requests straight to *handler*; no process, no network."""

    name = "local"

    def __init__(self, handler: LocalHandler, *, label: str = "local") -> None:
        self._handler = handler
        self._label = label

    async def call(
        self,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        if cancel is not None and cancel.cancelled:
            raise CallCancelledError(request.id)
        response = self._handler(request)
        if response is None:
            msg = f"{self._label}: {request.method!r} is a notification and has no response"
            raise ValueError(msg)
        logger.debug("%s answered %s locally", self._label, request.method)
        return response

    async def close(self) -> None:
        pass
