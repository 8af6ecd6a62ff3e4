"""Tests for the correlation router: routing policy, fallback and the tool cache."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from mcplink.builtin import TIME_SERVER_ID
from mcplink.config import RouterConfig
from mcplink.errors import ClientNotFoundError, ClientUnavailableError, HandlerError, HttpStatusError, ShellError, SpawnError
from mcplink.protocol.models import PARSE_ERROR, JsonRpcRequest, ServerConfig, ToolDescriptor
from mcplink.router import CorrelationRouter, HostCapabilities, ToolCache
from mcplink.transport.http import HttpTransport
from mcplink.transport.local import LocalTransport
from mcplink.transport.shell import CommandResult, ShellBridgeTransport, SubprocessCommandRunner
from mcplink.transport.stdio import StdioTransport

REMOTE_URL = "http://remote.test/mcp"

REMOTE_TOOLS = [
    {"name": "search", "description": "Search the web", "inputSchema": {"type": "object"}},
    {"name": "fetch", "description": "Fetch a page", "inputSchema": {"type": "object"}},
]


class Backend:
    """httpx mock handler emulating a remote MCP server."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.methods: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.methods.append(body["method"])
        if self.status != 200:
            return httpx.Response(self.status, text="backend down")
        if body["method"] == "tools/list":
            result: Any = {"tools": REMOTE_TOOLS}
        elif body["method"] == "initialize":
            result = {"protocolVersion": "2024-11-05", "serverInfo": {"name": "remote", "version": "9"}}
        else:
            result = {"content": [{"type": "text", "text": body["params"]["name"]}]}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class FakeRunner:
    def __init__(self, stdout: str = "", exit_code: int = 0) -> None:
        self.stdout = stdout
        self.exit_code = exit_code
        self.calls = 0

    async def run(self, argv: list[str], *, stdin: str | None = None, timeout: float = 10.0) -> CommandResult:
        self.calls += 1
        request = json.loads(stdin) if stdin else {}
        stdout = self.stdout or json.dumps({"jsonrpc": "2.0", "id": request.get("id"), "result": {"via": "shell"}})
        return CommandResult(exit_code=self.exit_code, stdout=stdout)


def make_router(
    backend: Backend | None = None,
    *,
    servers: dict[str, ServerConfig] | None = None,
    capabilities: HostCapabilities | None = None,
    **config: Any,
) -> CorrelationRouter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend or Backend()))
    router_config = RouterConfig(servers=servers or {}, remote_url=REMOTE_URL, **config)
    return CorrelationRouter(router_config, capabilities or HostCapabilities(), http_client=client)


class TestHostCapabilities:
    def test_defaults_from_empty_env(self) -> None:
        caps = HostCapabilities.from_env({})
        assert caps.subprocess and caps.direct_network
        assert isinstance(caps.command_runner, SubprocessCommandRunner)

    def test_disabled_by_env(self) -> None:
        caps = HostCapabilities.from_env(
            {"MCPLINK_HOST_SUBPROCESS": "0", "MCPLINK_DIRECT_NETWORK": "false", "MCPLINK_SHELL_BRIDGE": "off"}
        )
        assert not caps.subprocess
        assert not caps.direct_network
        assert caps.command_runner is None


class TestToolCache:
    def test_set_get_invalidate(self) -> None:
        cache = ToolCache()
        cache.set("a", [ToolDescriptor(name="x")])
        assert "a" in cache
        cache.invalidate("a")
        assert cache.get("a") is None

    def test_invalidate_all(self) -> None:
        cache = ToolCache()
        cache.set("a", [])
        cache.set("b", [])
        cache.invalidate()
        assert len(cache) == 0

    def test_ttl_expiry(self) -> None:
        now = [100.0]
        cache = ToolCache(ttl=10, clock=lambda: now[0])
        cache.set("a", [ToolDescriptor(name="x")])
        now[0] = 109.0
        assert cache.get("a") is not None
        now[0] = 110.0
        assert cache.get("a") is None


class TestResolution:
    def test_configured_stdio_client(self) -> None:
        router = make_router(servers={"fs": ServerConfig(command="npx")})
        chain = router.fallback_chain("fs")
        assert [type(t) for t in chain] == [StdioTransport]

    def test_remote_client_http_then_shell(self) -> None:
        router = make_router(capabilities=HostCapabilities(command_runner=FakeRunner()))
        chain = router.fallback_chain("remote-search")
        assert [type(t) for t in chain] == [HttpTransport, ShellBridgeTransport]

    def test_remote_client_without_direct_network_uses_shell(self) -> None:
        caps = HostCapabilities(direct_network=False, command_runner=FakeRunner())
        router = make_router(capabilities=caps)
        assert isinstance(router.resolve_transport("remote-search"), ShellBridgeTransport)

    def test_config_with_url_is_remote(self) -> None:
        router = make_router(servers={"search": ServerConfig(url=REMOTE_URL, tool_name="search")})
        assert router.is_remote("search")
        assert isinstance(router.resolve_transport("search"), HttpTransport)

    def test_builtin_is_last_resort(self) -> None:
        router = make_router(servers={TIME_SERVER_ID: ServerConfig(command="python")})
        assert [type(t) for t in router.fallback_chain(TIME_SERVER_ID)] == [StdioTransport, LocalTransport]

    def test_builtin_without_subprocess_capability(self) -> None:
        router = make_router(
            servers={TIME_SERVER_ID: ServerConfig(command="python")},
            capabilities=HostCapabilities(subprocess=False),
        )
        assert isinstance(router.resolve_transport(TIME_SERVER_ID), LocalTransport)

    def test_unknown_client(self) -> None:
        with pytest.raises(ClientNotFoundError, match="MCP client 'nope' is not available"):
            make_router().resolve_transport("nope")

    def test_stdio_client_without_subprocess_capability(self) -> None:
        router = make_router(servers={"fs": ServerConfig(command="npx")}, capabilities=HostCapabilities(subprocess=False))
        with pytest.raises(ClientNotFoundError):
            router.resolve_transport("fs")

    def test_paused_client(self) -> None:
        router = make_router(servers={"fs": ServerConfig(command="npx", status="paused")})
        with pytest.raises(ClientUnavailableError):
            router.resolve_transport("fs")

    def test_chain_is_reused(self) -> None:
        router = make_router()
        assert router.resolve_transport("remote-search") is router.resolve_transport("remote-fetch")


class TestInvoke:
    async def test_remote_call(self) -> None:
        backend = Backend()
        router = make_router(backend)
        request = JsonRpcRequest(id=11, method="tools/call", params={"name": "search", "arguments": {}})
        response = await router.invoke("remote-search", request)
        assert response.id == 11
        assert response.result["content"][0]["text"] == "search"
        await router.aclose()

    async def test_falls_back_to_shell_bridge(self) -> None:
        runner = FakeRunner()
        router = make_router(Backend(status=502), capabilities=HostCapabilities(command_runner=runner))
        response = await router.invoke("remote-search", JsonRpcRequest(id=3, method="tools/call", params={"name": "x"}))
        assert response.result == {"via": "shell"}
        assert runner.calls == 1

    async def test_every_candidate_failing_raises_last_error(self) -> None:
        router = make_router(Backend(status=500), capabilities=HostCapabilities(command_runner=None))
        with pytest.raises(HttpStatusError):
            await router.invoke("remote-search", JsonRpcRequest(id=3, method="tools/call", params={"name": "x"}))

    async def test_error_from_final_candidate_is_raised(self) -> None:
        runner = FakeRunner(exit_code=7)
        router = make_router(Backend(status=500), capabilities=HostCapabilities(command_runner=runner))
        with pytest.raises(ShellError):
            await router.invoke("remote-search", JsonRpcRequest(id=3, method="tools/call", params={"name": "x"}))
        assert runner.calls == 1

    async def test_empty_chain_is_not_found(self) -> None:
        router = CorrelationRouter(RouterConfig(servers={}))
        with pytest.raises(ClientNotFoundError):
            await router._call_chain("ghost", [], JsonRpcRequest(id=1, method="tools/list"))

    async def test_handshake_synthesized_when_unreachable(self) -> None:
        router = make_router(Backend(status=500), capabilities=HostCapabilities(command_runner=None))
        response = await router.invoke("remote-search", JsonRpcRequest(id=7, method="initialize", params={}))
        assert response.id == 7
        assert "serverInfo" in response.result
        assert not response.is_error

    async def test_handshake_forwarded_when_reachable(self) -> None:
        router = make_router()
        response = await router.invoke("remote-search", JsonRpcRequest(id=1, method="initialize", params={}))
        assert response.result["serverInfo"]["name"] == "remote"

    async def test_stdio_spawn_failure_falls_back_to_builtin(self) -> None:
        router = make_router(servers={TIME_SERVER_ID: ServerConfig(command="definitely-not-a-real-binary-xyz")})
        response = await router.invoke(TIME_SERVER_ID, JsonRpcRequest(id=1, method="tools/list"))
        assert response.result["tools"][0]["name"] == "get_current_time"

    async def test_spawn_failure_without_fallback_raises(self) -> None:
        router = make_router(servers={"fs": ServerConfig(command="definitely-not-a-real-binary-xyz")})
        with pytest.raises(SpawnError):
            await router.invoke("fs", JsonRpcRequest(id=1, method="tools/list"))

    async def test_malformed_backend_body_becomes_error_response(self) -> None:
        def garbage(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>", headers={"content-type": "text/html"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(garbage))
        router = CorrelationRouter(
            RouterConfig(servers={}, remote_url=REMOTE_URL),
            HostCapabilities(command_runner=None),
            http_client=client,
        )
        response = await router.invoke("remote-search", JsonRpcRequest(id=4, method="tools/call", params={"name": "x"}))
        assert response.error is not None
        assert response.error.code == PARSE_ERROR
        assert response.id == 4

    async def test_invoke_never_uses_cache(self) -> None:
        backend = Backend()
        router = make_router(backend)
        await router.list_tools("remote-search")
        await router.invoke("remote-search", JsonRpcRequest(id=1, method="tools/list"))
        await router.invoke("remote-search", JsonRpcRequest(id=2, method="tools/list"))
        assert backend.methods == ["tools/list", "tools/list", "tools/list"]

    async def test_call_tool_raises_handler_error(self) -> None:
        router = make_router(servers={}, capabilities=HostCapabilities(subprocess=False))
        with pytest.raises(HandlerError) as exc_info:
            await router.call_tool(TIME_SERVER_ID, "get_weather")
        assert exc_info.value.code == -32601


class TestListTools:
    async def test_remote_client_sees_only_its_tool(self) -> None:
        router = make_router()
        tools = await router.list_tools("remote-fetch")
        assert [t.name for t in tools] == ["fetch"]

    async def test_cache_hit_is_idempotent(self) -> None:
        backend = Backend()
        router = make_router(backend)
        first = await router.list_tools("remote-search")
        second = await router.list_tools("remote-search")
        assert first == second
        assert backend.methods == ["tools/list"]

    async def test_invalidate_forces_refresh(self) -> None:
        backend = Backend()
        router = make_router(backend)
        await router.list_tools("remote-search")
        router.cache.invalidate("remote-search")
        await router.list_tools("remote-search")
        assert backend.methods == ["tools/list", "tools/list"]

    async def test_failure_leaves_cache_empty(self) -> None:
        router = make_router(Backend(status=500), capabilities=HostCapabilities(command_runner=None))
        with pytest.raises(HttpStatusError):
            await router.list_tools("remote-search")
        assert "remote-search" not in router.cache

    async def test_builtin_tools(self) -> None:
        router = make_router(capabilities=HostCapabilities(subprocess=False))
        tools = await router.list_tools(TIME_SERVER_ID)
        assert [t.name for t in tools] == ["get_current_time"]


class TestInventory:
    async def test_discover_remote_clients(self) -> None:
        backend = Backend()
        router = make_router(backend)
        discovered = await router.discover_remote_clients()
        assert set(discovered) == {"remote-search", "remote-fetch"}
        assert discovered["remote-search"].tool_name == "search"
        assert [t.name for t in await router.list_tools("remote-fetch")] == ["fetch"]
        assert backend.methods == ["tools/list"]
        assert "remote-search" in router.statuses()

    async def test_discover_without_remote_url(self) -> None:
        router = CorrelationRouter(RouterConfig(servers={}), HostCapabilities())
        assert await router.discover_remote_clients() == {}

    def test_statuses(self) -> None:
        router = make_router(
            servers={
                "fs": ServerConfig(command="npx"),
                "weather": ServerConfig(command="python", status="paused"),
            },
        )
        statuses = router.statuses()
        assert statuses["fs"].status == "active"
        assert statuses["weather"].status == "paused"
        assert statuses[TIME_SERVER_ID].status == "active"

    def test_statuses_reports_unreachable_client(self) -> None:
        router = make_router(servers={"fs": ServerConfig(command="npx")}, capabilities=HostCapabilities(subprocess=False))
        status = router.statuses()["fs"]
        assert status.status == "error"
        assert status.error_msg is not None

    async def test_list_all_tools_skips_failing_clients(self) -> None:
        router = make_router(
            servers={"broken": ServerConfig(command="definitely-not-a-real-binary-xyz")},
            capabilities=HostCapabilities(command_runner=None),
        )
        listing = dict(await router.list_all_tools())
        assert "broken" not in listing
        assert [t.name for t in listing[TIME_SERVER_ID]] == ["get_current_time"]
        await router.aclose()
