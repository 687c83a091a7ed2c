from __future__ import annotations

import asyncio
import json
import logging

import pytest

from agentbridge.core.codec import (
    INTERNAL_ERROR,
    JsonRpcPeer,
    LineBuffer,
    RpcCancelledError,
    RpcError,
    RpcNotification,
    RpcRequest,
    RpcResponse,
    RpcTimeoutError,
    classify,
    decode_line,
    encode_line,
)


class _Wire:
    """Collects what a peer writes, decoded back into dicts."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def write(self, data: bytes) -> None:
        assert data.endswith(b"\n")
        self.sent.append(json.loads(data))


class TestLineBuffer:
    def test_partial_lines_are_carried(self):
        buf = LineBuffer()
        assert buf.feed('{"a":') == []
        assert buf.feed('1}\n{"b":2}\n{"c"') == ['{"a":1}', '{"b":2}']
        assert buf.feed(":3}\n") == ['{"c":3}']

    def test_blank_lines_skipped(self):
        assert LineBuffer().feed("\n\n  \n{}\n") == ["{}"]

    def test_bytes_input(self):
        assert LineBuffer().feed('{"t":"é"}\n'.encode()) == ['{"t":"é"}']

    def test_multibyte_character_split_across_chunks(self):
        data = '{"text":"héllo 日本"}\n'.encode()
        cut = data.index("日".encode()) + 1
        buf = LineBuffer()
        assert buf.feed(data[:cut]) == []
        (line,) = buf.feed(data[cut:])
        assert decode_line(line)["text"] == "héllo 日本"

    def test_flush_keeps_split_character(self):
        data = '{"t":"日"}'.encode()
        buf = LineBuffer()
        buf.feed(data[:-3])
        buf.feed(data[-3:])
        assert buf.flush() == ['{"t":"日"}']

    def test_flush_returns_remainder(self):
        buf = LineBuffer()
        buf.feed('{"x":1}')
        assert buf.flush() == ['{"x":1}']
        assert buf.flush() == []


class TestDecodeEncode:
    def test_malformed_json_dropped(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert decode_line("not json", source="codex") is None
        assert "Non-JSON output from codex" in caplog.text

    def test_non_object_dropped(self):
        assert decode_line("[1, 2]") is None

    def test_encode_is_one_line(self):
        data = encode_line({"text": "a\nb"})
        assert data.count(b"\n") == 1
        assert json.loads(data) == {"text": "a\nb"}


class TestClassify:
    def test_request_has_id_and_method(self):
        msg = classify({"jsonrpc": "2.0", "id": 7, "method": "fs/read_text_file", "params": {"path": "/x"}})
        assert msg == RpcRequest(id=7, method="fs/read_text_file", params={"path": "/x"})

    def test_response_with_result(self):
        assert classify({"id": 1, "result": None}) == RpcResponse(id=1, result=None)

    def test_response_with_error(self):
        msg = classify({"id": 1, "error": {"code": -1, "message": "no"}})
        assert isinstance(msg, RpcResponse)
        assert msg.error["message"] == "no"

    def test_notification(self):
        assert classify({"method": "turn/started", "params": {}}) == RpcNotification("turn/started", {})

    def test_id_and_method_with_result_is_response(self):
        assert isinstance(classify({"id": 3, "method": "x", "result": {}}), RpcResponse)

    def test_result_and_error_together_unclassifiable(self):
        assert classify({"id": 3, "result": 1, "error": {}}) is None

    def test_empty_unclassifiable(self):
        assert classify({}) is None


class TestJsonRpcPeer:
    async def test_request_resolves_with_matching_response(self):
        wire = _Wire()
        peer = JsonRpcPeer(wire.write)
        task = asyncio.create_task(peer.request("initialize", {"clientInfo": {}}))
        await asyncio.sleep(0)

        assert wire.sent == [{"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"clientInfo": {}}}]
        assert peer.pending_count == 1
        assert peer.handle_response(RpcResponse(id=1, result={"ok": True}))
        assert await task == {"ok": True}
        assert peer.pending_count == 0

    async def test_ids_increase(self):
        wire = _Wire()
        peer = JsonRpcPeer(wire.write)
        t1 = asyncio.create_task(peer.request("a"))
        t2 = asyncio.create_task(peer.request("b"))
        await asyncio.sleep(0)
        assert [m["id"] for m in wire.sent] == [1, 2]
        assert "params" not in wire.sent[0]
        peer.handle_response(RpcResponse(id=2, result=2))
        peer.handle_response(RpcResponse(id=1, result=1))
        assert await t1 == 1
        assert await t2 == 2

    async def test_error_response_raises_rpc_error(self):
        peer = JsonRpcPeer(_Wire().write)
        task = asyncio.create_task(peer.request("thread/start"))
        await asyncio.sleep(0)
        peer.handle_response(RpcResponse(id=1, error={"code": -32000, "message": "bad model"}))
        with pytest.raises(RpcError) as exc:
            await task
        assert exc.value.code == -32000
        assert exc.value.message == "bad model"

    async def test_timeout_rejects_and_removes_entry(self):
        peer = JsonRpcPeer(_Wire().write, timeout=0.01)
        with pytest.raises(RpcTimeoutError):
            await peer.request("slow")
        assert peer.pending_count == 0
        # A late answer for the expired call is ignored
        assert peer.handle_response(RpcResponse(id=1, result="late")) is False

    async def test_zero_timeout_waits_without_timer(self):
        peer = JsonRpcPeer(_Wire().write, timeout=0.01)
        task = asyncio.create_task(peer.request("session/prompt", timeout=0))
        await asyncio.sleep(0.05)
        assert not task.done()
        peer.handle_response(RpcResponse(id=1, result={"stopReason": "end_turn"}))
        assert (await task)["stopReason"] == "end_turn"

    async def test_reject_all_settles_each_call_once(self):
        peer = JsonRpcPeer(_Wire().write)
        t1 = asyncio.create_task(peer.request("a"))
        t2 = asyncio.create_task(peer.request("b"))
        await asyncio.sleep(0)

        assert peer.reject_all("Driver stopped") == 2
        assert peer.reject_all("again") == 0
        for task in (t1, t2):
            with pytest.raises(RpcCancelledError):
                await task
        assert peer.handle_response(RpcResponse(id=1, result=None)) is False
        assert peer.closed

    async def test_request_after_close_fails_fast(self):
        peer = JsonRpcPeer(_Wire().write)
        peer.reject_all()
        with pytest.raises(RpcCancelledError):
            await peer.request("a")

    async def test_write_failure_discards_pending(self):
        async def broken(_data: bytes) -> None:
            raise BrokenPipeError

        peer = JsonRpcPeer(broken)
        with pytest.raises(BrokenPipeError):
            await peer.request("a")
        assert peer.pending_count == 0

    async def test_respond_and_respond_error(self):
        wire = _Wire()
        peer = JsonRpcPeer(wire.write)
        await peer.respond(5, {"decision": "accept"})
        await peer.respond_error(6, -32601, "Method not found")
        await peer.notify("initialized")
        assert wire.sent[0] == {"jsonrpc": "2.0", "id": 5, "result": {"decision": "accept"}}
        assert wire.sent[1]["error"] == {"code": -32601, "message": "Method not found"}
        assert wire.sent[2] == {"jsonrpc": "2.0", "method": "initialized"}

    def test_cancelled_error_code(self):
        assert RpcCancelledError().code == INTERNAL_ERROR
