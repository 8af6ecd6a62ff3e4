"""HTTP transport — one POST per JSON-RPC call.

The backend may answer with a plain JSON body or with an event stream
framing a single response; both are decoded by
:func:`~mcplink.protocol.sse.decode_response`.  There is no retry here;
fallback between transports is the router's business.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from mcplink.errors import CallTimeoutError, HttpStatusError, NetworkError
from mcplink.protocol.sse import decode_response
from mcplink.transport.base import CancelToken, wait_cancellable
from mcplink.utils.telemetry import (
    ATTR_METHOD,
    ATTR_REQUEST_ID,
    ATTR_STATUS_CODE,
    ATTR_TRANSPORT,
    ATTR_URL,
    get_tracer,
)

if TYPE_CHECKING:
    from mcplink.protocol.models import JsonRpcRequest, JsonRpcResponse

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

HTTP_TIMEOUT = 30.0

REQUEST_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


class HttpTransport:
    """Posts JSON-RPC requests to a single backend URL.

    Certificate validation is controlled by *verify*; pass ``False`` only for
    development backends with self-signed certificates.

    Usage::

        async with HttpTransport("http://127.0.0.1:4200/mcp") as transport:
            response = await transport.call(JsonRpcRequest(id=1, method="tools/list"))
    """

    name = "http"

    def __init__(
        self,
        url: str,
        *,
        timeout: float = HTTP_TIMEOUT,
        verify: bool = True,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._verify = verify
        self._headers = {**REQUEST_HEADERS, **(headers or {})}
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=self._verify, timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def call(
        self,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        """POST *request* and decode the correlated response.

        Raises:
            HttpStatusError: Non-2xx status.
            NetworkError: Connection-level failure.
            CallTimeoutError: The request exceeded its timeout.
            CallCancelledError: *cancel* fired; the request is aborted.
            MalformedResponseError: The body is neither JSON nor SSE-framed JSON.
            ProtocolError: The body is JSON but not a JSON-RPC response.
        """
        deadline = timeout if timeout is not None else self._timeout
        with _tracer.start_as_current_span("mcplink.http.call") as span:
            span.set_attribute(ATTR_TRANSPORT, self.name)
            span.set_attribute(ATTR_URL, self.url)
            span.set_attribute(ATTR_METHOD, request.method)
            span.set_attribute(ATTR_REQUEST_ID, str(request.id))

            body = request.to_wire()
            logger.debug("POST %s: %s", self.url, body)
            try:
                response = await wait_cancellable(
                    self._http().post(self.url, json=body, headers=self._headers, timeout=deadline),
                    cancel,
                    request.id,
                )
            except httpx.TimeoutException as exc:
                raise CallTimeoutError(request.id, deadline) from exc
            except httpx.RequestError as exc:
                raise NetworkError(f"{type(exc).__name__}: {exc}") from exc

            span.set_attribute(ATTR_STATUS_CODE, response.status_code)
            content_type = response.headers.get("content-type", "")
            logger.debug("HTTP %s (%s): %s", response.status_code, content_type, response.text[:500])

            if not response.is_success:
                raise HttpStatusError(response.status_code, response.text)
            return decode_response(response.text, content_type)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
