"""Bridge server: WebSocket endpoints for clients and for the Claude CLI.

- ``/ws/mobile``: one connection per client. Receives every broadcast and
  sends commands (JSON objects with a ``type``).
- ``/ws/cli/{agent_id}``: the Claude CLI dials back here (``--sdk-url``).
- ``/health`` and ``/api/logs`` for operators.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from aiohttp import WSMsgType, web

from agentbridge.core.events import ClientBroadcast, EventBus

if TYPE_CHECKING:
    from agentbridge.core.commands import Commands
    from agentbridge.core.registry import SessionRegistry

logger = logging.getLogger(__name__)


def envelope(msg_type: str, data: dict | None = None) -> dict:
    """Wire shape of every server message: ``{type, ...data, ts}``."""
    return {"type": msg_type, **(data or {}), "ts": int(time.time() * 1000)}


class _ClientSocket:
    """Serializes writes to one client socket from the reader and the forwarder."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self._ws = ws
        self._lock = asyncio.Lock()

    async def send(self, msg_type: str, data: dict | None = None) -> None:
        if self._ws.closed:
            return
        payload = json.dumps(envelope(msg_type, data), ensure_ascii=False, default=str)
        async with self._lock:
            try:
                await self._ws.send_str(payload)
            except ConnectionResetError:
                logger.debug("Client went away while sending %s", msg_type)


# -- Health / logs -----------------------------------------------------------

async def _handle_health(request: web.Request) -> web.Response:
    registry: SessionRegistry = request.app["registry"]
    return web.json_response({"status": "ok", "agents": len(registry)})


async def _handle_logs(request: web.Request) -> web.Response:
    """GET /api/logs: tail of the server log file."""
    try:
        lines_count = int(request.query.get("lines", "200"))
    except (ValueError, TypeError):
        lines_count = 200
    lines_count = min(lines_count, 1000)
    try:
        path = Path(request.app["log_file"])
        if not path.exists():
            return web.json_response({"lines": []})
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        return web.json_response({"lines": lines[-lines_count:]})
    except OSError as e:
        logger.warning("Failed to read log file: %s", e)
        return web.json_response({"lines": ["Error reading log file"]})


# -- Claude CLI socket -------------------------------------------------------

async def _handle_cli_ws(request: web.Request) -> web.StreamResponse:
    registry: SessionRegistry = request.app["registry"]
    agent_id = request.match_info["agent_id"]
    session = registry.get(agent_id)
    attach = getattr(session.driver, "attach_socket", None) if session else None
    if attach is None:
        logger.warning("CLI connection for unknown agent %s", agent_id[:8])
        raise web.HTTPNotFound(text="Unknown agent")

    ws = web.WebSocketResponse(max_msg_size=0)
    await ws.prepare(request)
    logger.info("[%s] Claude CLI connected", agent_id[:8])
    await attach(ws)
    logger.info("[%s] Claude CLI socket closed", agent_id[:8])
    return ws


# -- Client socket -----------------------------------------------------------

async def _forward_broadcasts(client: _ClientSocket, queue: asyncio.Queue) -> None:
    while True:
        ev: ClientBroadcast = await queue.get()
        await client.send(ev.type, ev.data)


async def _handle_mobile_ws(request: web.Request) -> web.StreamResponse:
    registry: SessionRegistry = request.app["registry"]
    commands: Commands = request.app["cmd"]
    event_bus: EventBus = request.app["event_bus"]

    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    client = _ClientSocket(ws)
    queue = event_bus.subscribe(ClientBroadcast)
    logger.info("Client connected from %s", request.remote)

    await client.send("connected", {"agents": registry.snapshots()})
    forwarder = asyncio.create_task(_forward_broadcasts(client, queue))
    try:
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                if msg.type == WSMsgType.ERROR:
                    logger.warning("Client socket error: %s", ws.exception())
                continue
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                await client.send("error", {"error": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await client.send("error", {"error": "Message must be a JSON object"})
                continue
            for reply in await commands.handle(data):
                reply = dict(reply)
                await client.send(reply.pop("type"), reply)
    finally:
        forwarder.cancel()
        event_bus.unsubscribe(ClientBroadcast, queue)
        logger.info("Client disconnected")
    return ws


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def build_app(
    registry: SessionRegistry,
    commands: Commands,
    log_file: str = "",
) -> web.Application:
    app = web.Application()
    app["registry"] = registry
    app["cmd"] = commands
    app["event_bus"] = registry.event_bus
    app["log_file"] = log_file

    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/logs", _handle_logs)
    app.router.add_get("/ws/cli/{agent_id}", _handle_cli_ws)
    app.router.add_get("/ws/mobile", _handle_mobile_ws)
    return app


class BridgeServer:
    """aiohttp server hosting the client and CLI WebSocket endpoints."""

    def __init__(
        self,
        registry: SessionRegistry,
        commands: Commands,
        host: str = "127.0.0.1",
        port: int = 8765,
        log_file: str = "",
    ) -> None:
        self._app = build_app(registry, commands, log_file)
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    @property
    def app(self) -> web.Application:
        return self._app

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Bridge listening on ws://%s:%d/ws/mobile", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Bridge stopped")
