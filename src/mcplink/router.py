"""Correlation router — picks a transport per client id and applies fallback.

Routing is an explicit policy over two injected inputs: the
:class:`~mcplink.config.RouterConfig` (which clients exist and how to
reach them) and :class:`HostCapabilities` (what this process may do).
Each client id resolves to an ordered *fallback chain* of transports; a
call walks the chain and the first transport that delivers wins.

Usage::

    router = CorrelationRouter(load_config("mcp.yaml"), HostCapabilities.from_env())
    try:
        tools = await router.list_tools("filesystem")
        response = await router.invoke("filesystem", JsonRpcRequest(id=1, method="tools/call", params={...}))
    finally:
        await router.aclose()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from pydantic import ValidationError

from mcplink import __version__
from mcplink.builtin import TIME_SERVER_ID, handle_time_request
from mcplink.config import RouterConfig, env_flag
from mcplink.errors import (
    CallCancelledError,
    ClientNotFoundError,
    ClientUnavailableError,
    HandlerError,
    McpLinkError,
    ParseError,
    ProtocolError,
    RoutingError,
    TransportError,
)
from mcplink.protocol.models import (
    HANDSHAKE_METHOD,
    INTERNAL_ERROR,
    PARSE_ERROR,
    TOOLS_CALL,
    TOOLS_LIST,
    ClientStatus,
    JsonRpcRequest,
    JsonRpcResponse,
    ServerConfig,
    ToolDescriptor,
    handshake_result,
)
from mcplink.transport.http import HttpTransport
from mcplink.transport.local import LocalHandler, LocalTransport
from mcplink.transport.shell import HostCommandRunner, ShellBridgeTransport, SubprocessCommandRunner
from mcplink.transport.stdio import StdioTransport
from mcplink.utils.telemetry import ATTR_CLIENT_ID, ATTR_FALLBACK, ATTR_METHOD, get_tracer

if TYPE_CHECKING:
    import httpx

    from mcplink.transport.base import CancelToken, Transport

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

BUILTIN_HANDLERS: dict[str, LocalHandler] = {TIME_SERVER_ID: handle_time_request}


@dataclass
class HostCapabilities:
    """What the execution context allows the router to do."""

    subprocess: bool = True
    direct_network: bool = True
    command_runner: HostCommandRunner | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> HostCapabilities:
        """Read ``MCPLINK_HOST_SUBPROCESS``, ``MCPLINK_DIRECT_NETWORK`` and ``MCPLINK_SHELL_BRIDGE``.

        All default to enabled; the shell bridge is backed by
        :class:`SubprocessCommandRunner`.
        """
        env = os.environ if environ is None else environ
        shell = env_flag(env.get("MCPLINK_SHELL_BRIDGE"), default=True)
        return cls(
            subprocess=env_flag(env.get("MCPLINK_HOST_SUBPROCESS"), default=True),
            direct_network=env_flag(env.get("MCPLINK_DIRECT_NETWORK"), default=True),
            command_runner=SubprocessCommandRunner() if shell else None,
        )


class ToolCache:
    """Per-client tool descriptor cache.

    Entries live until :meth:`invalidate` or, when *ttl* is set, until they
    are older than *ttl* seconds.
    """

    def __init__(self, ttl: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, list[ToolDescriptor]]] = {}

    def get(self, client_id: str) -> list[ToolDescriptor] | None:
        entry = self._entries.get(client_id)
        if entry is None:
            return None
        stored_at, tools = entry
        if self._ttl is not None and self._clock() - stored_at >= self._ttl:
            del self._entries[client_id]
            return None
        return list(tools)

    def set(self, client_id: str, tools: list[ToolDescriptor]) -> None:
        self._entries[client_id] = (self._clock(), list(tools))

    def invalidate(self, client_id: str | None = None) -> None:
        """Drop one client's entry, or every entry when *client_id* is ``None``."""
        if client_id is None:
            self._entries.clear()
        else:
            self._entries.pop(client_id, None)

    def __contains__(self, client_id: object) -> bool:
        return isinstance(client_id, str) and self.get(client_id) is not None

    def __len__(self) -> int:
        return len(self._entries)


class CorrelationRouter:
    """Maps client ids to transports and walks their fallback chains.

    Chain construction, in order:

    1. Remote family (``remote_prefix`` ids, or configs carrying ``url``):
       HTTP when direct network access is allowed, then the shell bridge
       when a host command runner is available.
    2. Other configured clients: stdio when subprocesses are allowed.
    3. Built-in clients: the in-process handler as last resort.

    Any :class:`TransportError` moves on to the next candidate.
    """

    def __init__(
        self,
        config: RouterConfig | None = None,
        capabilities: HostCapabilities | None = None,
        *,
        cache: ToolCache | None = None,
        builtins: Mapping[str, LocalHandler] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or RouterConfig()
        self._capabilities = capabilities or HostCapabilities()
        self.cache = cache or ToolCache(self._config.cache_ttl)
        self._builtins = dict(BUILTIN_HANDLERS if builtins is None else builtins)
        self._http_client = http_client
        self._servers: dict[str, ServerConfig] = dict(self._config.servers)
        self._chains: dict[str, list[Transport]] = {}
        self._remote_chains: dict[str, list[Transport]] = {}
        self._ids = itertools.count(1)

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def servers(self) -> dict[str, ServerConfig]:
        return dict(self._servers)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def is_remote(self, client_id: str) -> bool:
        server = self._servers.get(client_id)
        if server is not None and server.is_remote:
            return True
        return client_id.startswith(self._config.remote_prefix)

    def remote_tool_name(self, client_id: str) -> str:
        server = self._servers.get(client_id)
        if server is not None and server.tool_name:
            return server.tool_name
        return client_id.removeprefix(self._config.remote_prefix)

    def resolve_transport(self, client_id: str) -> Transport:
        """First candidate of *client_id*'s fallback chain.

        Raises:
            ClientNotFoundError: Nothing can reach this client.
            ClientUnavailableError: The client is configured but paused.
        """
        return self.fallback_chain(client_id)[0]

    def fallback_chain(self, client_id: str) -> list[Transport]:
        """Ordered transports for *client_id*; built once and reused."""
        server = self._servers.get(client_id)
        if server is not None and server.status == "paused":
            raise ClientUnavailableError(client_id, server.status)

        chain = self._chains.get(client_id)
        if chain is None:
            chain = self._build_chain(client_id, server)
            self._chains[client_id] = chain
        return chain

    def _build_chain(self, client_id: str, server: ServerConfig | None) -> list[Transport]:
        chain: list[Transport] = []
        if self.is_remote(client_id):
            url = (server.url if server is not None else None) or self._config.remote_url
            if url:
                chain.extend(self._remote_chain(url))
        elif server is not None and self._capabilities.subprocess:
            chain.append(
                StdioTransport(
                    server,
                    timeout=self._config.stdio_timeout,
                    persistent=self._config.session_mode == "persistent",
                    label=client_id,
                )
            )

        handler = self._builtins.get(client_id)
        if handler is not None and self._config.builtin_fallback:
            chain.append(LocalTransport(handler, label=client_id))

        if not chain:
            raise ClientNotFoundError(client_id)
        logger.debug("Fallback chain for %s: %s", client_id, [t.name for t in chain])
        return chain

    def _remote_chain(self, url: str) -> list[Transport]:
        chain = self._remote_chains.get(url)
        if chain is not None:
            return chain
        chain = []
        if self._capabilities.direct_network:
            chain.append(
                HttpTransport(
                    url,
                    timeout=self._config.http_timeout,
                    verify=self._config.verify_tls,
                    client=self._http_client,
                )
            )
        if self._capabilities.command_runner is not None:
            chain.append(
                ShellBridgeTransport(
                    url,
                    self._capabilities.command_runner,
                    timeout=self._config.shell_timeout,
                    verify=self._config.verify_tls,
                    flavor=self._config.shell_flavor,
                )
            )
        self._remote_chains[url] = chain
        return chain

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def invoke(
        self,
        client_id: str,
        request: JsonRpcRequest,
        *,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        """Deliver *request* to *client_id* and return the correlated response.

        Never consults the tool cache.  ``initialize`` is best-effort: when
        every transport fails, a minimal handshake is synthesized locally.
        Malformed backend data comes back as a JSON-RPC error response.

        Raises:
            RoutingError: The client cannot be resolved.
            TransportError: Every candidate transport failed.
        """
        with _tracer.start_as_current_span("mcplink.router.invoke") as span:
            span.set_attribute(ATTR_CLIENT_ID, client_id)
            span.set_attribute(ATTR_METHOD, request.method)
            chain = self.fallback_chain(client_id)
            try:
                return await self._call_chain(client_id, chain, request, cancel=cancel)
            except CallCancelledError:
                raise
            except (TransportError, ParseError, ProtocolError) as exc:
                if request.method != HANDSHAKE_METHOD:
                    if isinstance(exc, TransportError):
                        raise
                    code = PARSE_ERROR if isinstance(exc, ParseError) else INTERNAL_ERROR
                    return JsonRpcResponse.failure(request.id, code, str(exc))
                logger.warning("Handshake with %s failed (%s), answering locally", client_id, exc)
                return JsonRpcResponse.success(request.id, handshake_result(client_id, __version__))

    async def _call_chain(
        self,
        client_id: str,
        chain: list[Transport],
        request: JsonRpcRequest,
        *,
        cancel: CancelToken | None = None,
    ) -> JsonRpcResponse:
        for position, transport in enumerate(chain):
            try:
                response = await transport.call(request, cancel=cancel)
            except CallCancelledError:
                raise
            except (TransportError, ParseError, ProtocolError) as exc:
                if position + 1 == len(chain):
                    raise
                logger.warning(
                    "%s via %s failed (%s), falling back to %s",
                    client_id,
                    transport.name,
                    exc,
                    chain[position + 1].name,
                )
                continue
            if position > 0:
                trace.get_current_span().set_attribute(ATTR_FALLBACK, transport.name)
                logger.info("%s answered via fallback transport %s", client_id, transport.name)
            return response

        raise ClientNotFoundError(client_id)

    async def list_tools(self, client_id: str) -> list[ToolDescriptor]:
        """Tool descriptors for *client_id*, served from the cache when present.

        Remote-family clients only report the tool they are named after.

        Raises:
            RoutingError: The client cannot be resolved.
            TransportError: Every candidate transport failed.
            HandlerError: The backend answered ``tools/list`` with an error.
            ProtocolError: The result does not describe tools.
        """
        cached = self.cache.get(client_id)
        if cached is not None:
            logger.debug("Tool cache hit for %s", client_id)
            return cached

        chain = self.fallback_chain(client_id)
        request = JsonRpcRequest(id=self._next_id(), method=TOOLS_LIST, params={})
        response = await self._call_chain(client_id, chain, request)
        tools = parse_tools(_result_or_raise(response))

        if self.is_remote(client_id):
            wanted = self.remote_tool_name(client_id)
            tools = [tool for tool in tools if tool.name == wanted]

        self.cache.set(client_id, tools)
        logger.info("Cached %d tool(s) for %s", len(tools), client_id)
        return tools

    async def call_tool(
        self,
        client_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> Any:
        """Run ``tools/call`` on *client_id* and return the result.

        Raises:
            HandlerError: The backend reported an error.
        """
        request = JsonRpcRequest(
            id=self._next_id(),
            method=TOOLS_CALL,
            params={"name": tool_name, "arguments": arguments or {}},
        )
        return _result_or_raise(await self.invoke(client_id, request, cancel=cancel))

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def statuses(self) -> dict[str, ClientStatus]:
        """Reachability of every configured and built-in client id."""
        result: dict[str, ClientStatus] = {}
        for client_id, server in self._servers.items():
            if server.status != "active":
                result[client_id] = ClientStatus(status=server.status)
                continue
            try:
                self.fallback_chain(client_id)
            except RoutingError as exc:
                result[client_id] = ClientStatus(status="error", error_msg=str(exc))
            else:
                result[client_id] = ClientStatus(status="active")
        if self._config.builtin_fallback:
            for client_id in self._builtins:
                result.setdefault(client_id, ClientStatus(status="active"))
        return result

    async def discover_remote_clients(self) -> dict[str, ServerConfig]:
        """Register one ``remote-<tool>`` client per tool the remote backend exposes.

        The discovered descriptors are cached, so a following
        :meth:`list_tools` on any of them does not hit the network again.
        """
        url = self._config.remote_url
        if not url:
            return {}
        chain = self._remote_chain(url)
        if not chain:
            logger.warning("No transport can reach remote backend %s", url)
            return {}

        request = JsonRpcRequest(id=self._next_id(), method=TOOLS_LIST, params={})
        response = await self._call_chain("remote", chain, request)
        discovered: dict[str, ServerConfig] = {}
        for tool in parse_tools(_result_or_raise(response)):
            client_id = f"{self._config.remote_prefix}{tool.name}"
            discovered[client_id] = ServerConfig(command="remote", args=[url, tool.name], url=url, tool_name=tool.name)
            self.cache.set(client_id, [tool])
        self._servers.update(discovered)
        logger.info("Discovered %d remote client(s) at %s", len(discovered), url)
        return discovered

    async def list_all_tools(self) -> list[tuple[str, list[ToolDescriptor]]]:
        """Tools of every active client; unreachable clients are logged and skipped."""
        client_ids = [cid for cid, status in self.statuses().items() if status.status == "active"]
        results = await asyncio.gather(*(self.list_tools(cid) for cid in client_ids), return_exceptions=True)
        listing: list[tuple[str, list[ToolDescriptor]]] = []
        for client_id, outcome in zip(client_ids, results, strict=True):
            if isinstance(outcome, McpLinkError):
                logger.error("Failed to list tools for %s: %s", client_id, outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            listing.append((client_id, outcome))
        return listing

    async def aclose(self) -> None:
        """Close every transport the router opened."""
        transports = {id(t): t for chain in self._chains.values() for t in chain}
        transports.update({id(t): t for chain in self._remote_chains.values() for t in chain})
        self._chains.clear()
        self._remote_chains.clear()
        for transport in transports.values():
            try:
                await transport.close()
            except Exception:
                logger.exception("Failed to close %s transport", transport.name)

    def _next_id(self) -> int:
        return next(self._ids)


def _result_or_raise(response: JsonRpcResponse) -> Any:
    if response.error is not None:
        raise HandlerError(response.error.code, response.error.message, response.error.data)
    return response.result


def parse_tools(result: Any) -> list[ToolDescriptor]:
    """Validate a ``tools/list`` result (``{"tools": [...]}`` or a bare list)."""
    items = result.get("tools") if isinstance(result, dict) else result
    if not isinstance(items, list):
        msg = f"tools/list result has no tool array: {result!r}"
        raise ProtocolError(msg)
    try:
        return [ToolDescriptor.model_validate(item) for item in items]
    except ValidationError as exc:
        raise ProtocolError(f"Invalid tool descriptor: {exc}") from exc
