from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import TestClient, TestServer

from agentbridge.adapters.claude_code.driver import ClaudeDriver
from agentbridge.adapters.web.server import build_app, envelope
from agentbridge.core import git_worktree
from agentbridge.core.events import ClientBroadcast


@pytest.fixture
async def client(registry, commands, tmp_path: Path):
    log_file = tmp_path / "bridge.log"
    log_file.write_text("".join(f"line {i}\n" for i in range(10)))
    app = build_app(registry, commands, log_file=str(log_file))
    test_client = TestClient(TestServer(app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


async def _receive(ws, timeout: float = 2.0) -> dict:
    return await asyncio.wait_for(ws.receive_json(), timeout=timeout)


def test_envelope_adds_timestamp():
    msg = envelope("pong")
    assert msg["type"] == "pong"
    assert isinstance(msg["ts"], int)
    assert envelope("error", {"error": "x"})["error"] == "x"


class TestHttp:
    async def test_health(self, client, registry):
        await registry.create("codex")
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "agents": 1}

    async def test_logs_tail(self, client):
        resp = await client.get("/api/logs?lines=3")
        assert (await resp.json())["lines"] == ["line 7", "line 8", "line 9"]

    async def test_cli_socket_for_unknown_agent(self, client):
        resp = await client.get("/ws/cli/does-not-exist")
        assert resp.status == 404

    async def test_cli_socket_for_driver_without_socket(self, client, registry):
        session = await registry.create("codex")
        resp = await client.get(f"/ws/cli/{session.id}")
        assert resp.status == 404


class TestClientSocket:
    async def test_connected_then_commands(self, client, registry):
        session = await registry.create("claude")
        ws = await client.ws_connect("/ws/mobile")

        hello = await _receive(ws)
        assert hello["type"] == "connected"
        assert [a["id"] for a in hello["agents"]] == [session.id]

        await ws.send_json({"type": "ping"})
        pong = await _receive(ws)
        assert pong["type"] == "pong"
        assert "ts" in pong
        await ws.close()

    async def test_invalid_json(self, client):
        ws = await client.ws_connect("/ws/mobile")
        await _receive(ws)
        await ws.send_str("{nope")
        assert (await _receive(ws))["error"] == "Invalid JSON"
        await ws.send_str("[1]")
        assert (await _receive(ws))["error"] == "Message must be a JSON object"
        await ws.close()

    async def test_broadcasts_reach_every_client(self, client, registry):
        first = await client.ws_connect("/ws/mobile")
        second = await client.ws_connect("/ws/mobile")
        await _receive(first)
        await _receive(second)

        await first.send_json({"type": "createAgent", "agentType": "codex"})
        for ws in (first, second):
            created = await _receive(ws)
            assert created["type"] == "agentCreated"
            assert created["agent"]["type"] == "codex"
        await first.close()
        await second.close()

    async def test_disconnect_unsubscribes(self, client, registry):
        ws = await client.ws_connect("/ws/mobile")
        await _receive(ws)
        assert registry.event_bus.subscriber_count(ClientBroadcast) == 1
        await ws.close()
        for _ in range(50):
            if registry.event_bus.subscriber_count(ClientBroadcast) == 0:
                break
            await asyncio.sleep(0.01)
        assert registry.event_bus.subscriber_count(ClientBroadcast) == 0


class TestCliSocket:
    async def test_claude_cli_frames_reach_session(self, client, registry, monkeypatch):
        monkeypatch.setattr(git_worktree, "current_branch", AsyncMock(return_value=None))
        session = await registry.create("claude")
        driver = ClaudeDriver(session.handle_event)
        driver._agent_id = session.id
        session.driver = driver

        cli = await client.ws_connect(f"/ws/cli/{session.id}")
        await cli.send_str('{"type":"result","total_cost_usd":0.25,"session_id":"s-1"}\n')
        for _ in range(100):
            if session.total_cost:
                break
            await asyncio.sleep(0.01)
        assert session.total_cost == 0.25
        assert session.session_id == "s-1"
        assert session.status == "idle"
        await cli.close()
