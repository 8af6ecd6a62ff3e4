"""Tests for the stdio transport against a real child process."""

from __future__ import annotations

import asyncio
import sys

import pytest

from mcplink.errors import (
    CallCancelledError,
    CallTimeoutError,
    ProcessExitedError,
    ProtocolError,
    SessionClosedError,
    SpawnError,
)
from mcplink.protocol.models import JsonRpcRequest, ServerConfig
from mcplink.transport.base import CancelToken, Transport
from mcplink.transport.stdio import LineBuffer, StdioTransport, open_session

FAKE_SERVER = r"""
import json, sys

mode = sys.argv[1] if len(sys.argv) > 1 else "echo"
held = []
for line in sys.stdin:
    msg = json.loads(line)
    if "id" not in msg:
        continue
    method = msg["method"]
    if method == "sleep":
        continue
    if method == "exit":
        sys.stderr.write("bye\n")
        sys.stderr.flush()
        sys.exit(3)
    if method == "bare":
        print(json.dumps({"jsonrpc": "2.0", "id": msg["id"]}), flush=True)
        continue
    reply = {"jsonrpc": "2.0", "id": msg["id"], "result": {"method": method, "params": msg.get("params")}}
    if method == "noisy":
        print("starting up, not json")
        print(json.dumps({"jsonrpc": "2.0", "id": "ghost", "result": 1}))
        print(json.dumps({"jsonrpc": "2.0", "method": "notifications/progress", "params": {}}))
    if method == "dup":
        print(json.dumps(reply))
    if mode == "reverse":
        held.append(reply)
        if len(held) == 2:
            for r in reversed(held):
                print(json.dumps(r))
            sys.stdout.flush()
            held.clear()
        continue
    print(json.dumps(reply), flush=True)
"""


def server_config(mode: str = "echo") -> ServerConfig:
    return ServerConfig(command=sys.executable, args=["-c", FAKE_SERVER, mode])


class TestLineBuffer:
    def test_holds_partial_line(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b'{"a":') == []
        assert buf.feed(b"1}\n{") == ['{"a":1}']
        assert buf.pending == b"{"

    def test_multiple_lines_in_one_chunk(self) -> None:
        assert LineBuffer().feed(b"one\ntwo\r\nthree\n") == ["one", "two", "three"]

    def test_multibyte_character_split_across_chunks(self) -> None:
        encoded = '{"text":"héllo"}\n'.encode()
        split = encoded.index("é".encode()) + 1
        buf = LineBuffer()
        assert buf.feed(encoded[:split]) == []
        assert buf.feed(encoded[split:]) == ['{"text":"héllo"}']


class TestStdioSession:
    async def test_call_returns_correlated_response(self) -> None:
        session = await open_session(server_config(), name="echo")
        try:
            response = await session.call(JsonRpcRequest(id=1, method="tools/list", params={"x": 1}))
        finally:
            await session.close()
        assert response.id == 1
        assert response.result == {"method": "tools/list", "params": {"x": 1}}

    async def test_out_of_order_responses_reach_their_callers(self) -> None:
        session = await open_session(server_config("reverse"), name="reverse")
        try:
            first, second = await asyncio.gather(
                session.call(JsonRpcRequest(id=1, method="first")),
                session.call(JsonRpcRequest(id=2, method="second")),
            )
        finally:
            await session.close()
        assert first.result["method"] == "first"
        assert second.result["method"] == "second"

    async def test_noise_unknown_ids_and_server_messages_are_ignored(self) -> None:
        session = await open_session(server_config(), name="noisy")
        try:
            response = await session.call(JsonRpcRequest(id=5, method="noisy"))
            assert response.id == 5
            assert session.pending_count == 0
        finally:
            await session.close()

    async def test_duplicate_response_is_discarded(self) -> None:
        session = await open_session(server_config(), name="dup")
        try:
            first = await session.call(JsonRpcRequest(id=1, method="dup"))
            second = await session.call(JsonRpcRequest(id=2, method="after"))
        finally:
            await session.close()
        assert first.result["method"] == "dup"
        assert second.result["method"] == "after"

    async def test_malformed_response_fails_only_its_call(self) -> None:
        session = await open_session(server_config(), name="bare")
        try:
            with pytest.raises(ProtocolError, match="neither 'result' nor 'error'"):
                await session.call(JsonRpcRequest(id=1, method="bare"), timeout=5)
            assert session.is_alive
            assert session.pending_count == 0
            response = await session.call(JsonRpcRequest(id=2, method="tools/list"))
        finally:
            await session.close()
        assert response.result["method"] == "tools/list"

    async def test_timeout_terminates_process_and_fails_siblings(self) -> None:
        session = await open_session(server_config(), name="slow")
        results = await asyncio.gather(
            session.call(JsonRpcRequest(id=1, method="sleep"), timeout=0.3),
            session.call(JsonRpcRequest(id=2, method="sleep"), timeout=30),
            return_exceptions=True,
        )
        assert isinstance(results[0], CallTimeoutError)
        assert isinstance(results[1], ProcessExitedError)
        assert not session.is_alive
        assert session.pending_count == 0
        with pytest.raises(SessionClosedError):
            await session.call(JsonRpcRequest(id=3, method="tools/list"))
        await session.close()

    async def test_process_exit_fails_pending_call(self) -> None:
        session = await open_session(server_config(), name="exiting")
        with pytest.raises(ProcessExitedError) as exc_info:
            await session.call(JsonRpcRequest(id=1, method="exit"))
        assert exc_info.value.exit_code == 3
        assert "bye" in exc_info.value.stderr
        await session.close()

    async def test_duplicate_outstanding_id_rejected(self) -> None:
        session = await open_session(server_config(), name="ids")
        try:
            pending = asyncio.create_task(session.call(JsonRpcRequest(id=1, method="sleep"), timeout=30))
            await asyncio.sleep(0.05)
            with pytest.raises(ValueError, match="already outstanding"):
                await session.call(JsonRpcRequest(id=1, method="tools/list"))
        finally:
            await session.close()
        with pytest.raises(SessionClosedError):
            await pending

    async def test_request_without_id_rejected(self) -> None:
        session = await open_session(server_config(), name="ids")
        try:
            with pytest.raises(ValueError, match="no id"):
                await session.call(JsonRpcRequest(method="tools/list"))
        finally:
            await session.close()

    async def test_cancel_token_closes_session(self) -> None:
        session = await open_session(server_config(), name="cancel")
        token = CancelToken()
        task = asyncio.create_task(session.call(JsonRpcRequest(id=1, method="sleep"), timeout=30, cancel=token))
        await asyncio.sleep(0.05)
        token.cancel()
        with pytest.raises(CallCancelledError):
            await task
        assert not session.is_alive

    async def test_close_is_idempotent(self) -> None:
        session = await open_session(server_config(), name="close")
        await session.close()
        await session.close()
        assert not session.is_alive


class TestOpenSession:
    async def test_missing_command(self) -> None:
        with pytest.raises(SpawnError):
            await open_session(ServerConfig(command=""))

    async def test_unknown_executable(self) -> None:
        with pytest.raises(SpawnError, match="definitely-not-a-real-binary"):
            await open_session(ServerConfig(command="definitely-not-a-real-binary-xyz"))


class TestStdioTransport:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(StdioTransport(server_config()), Transport)

    async def test_persistent_mode_reuses_session(self) -> None:
        transport = StdioTransport(server_config(), persistent=True, label="echo")
        try:
            await transport.call(JsonRpcRequest(id=1, method="a"))
            session = transport.session
            await transport.call(JsonRpcRequest(id=2, method="b"))
            assert transport.session is session
            assert session is not None and session.is_alive
        finally:
            await transport.close()
        assert transport.session is None

    async def test_per_call_mode_spawns_each_time(self) -> None:
        transport = StdioTransport(server_config(), persistent=False)
        response = await transport.call(JsonRpcRequest(id=1, method="a"))
        assert response.result["method"] == "a"
        assert transport.session is None

    async def test_persistent_session_respawns_after_death(self) -> None:
        transport = StdioTransport(server_config(), persistent=True)
        try:
            with pytest.raises(ProcessExitedError):
                await transport.call(JsonRpcRequest(id=1, method="exit"))
            response = await transport.call(JsonRpcRequest(id=2, method="again"))
            assert response.result["method"] == "again"
        finally:
            await transport.close()
