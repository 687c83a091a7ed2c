"""Terminal watcher: follow every agent on a running bridge.

    agentbridge-watch [--url ws://127.0.0.1:8765/ws/mobile] [--send AGENT_ID TEXT]

With ``--send`` the prompt is submitted once connected and the watcher exits
after that agent's turn ends.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import aiohttp

from agentbridge.client.store import ClientStore

logger = logging.getLogger(__name__)

DEFAULT_URL = "ws://127.0.0.1:8765/ws/mobile"


def _short(agent_id: str) -> str:
    return agent_id[:8] if agent_id else "-"


class Printer:
    """Store listener that renders changes as terminal lines."""

    def __init__(self, out=None) -> None:
        self.store: ClientStore | None = None
        self._out = out or sys.stdout
        self._streaming: str | None = None
        self.finished: set[str] = set()

    def _line(self, text: str) -> None:
        if self._streaming is not None:
            self._out.write("\n")
            self._streaming = None
        self._out.write(text + "\n")
        self._out.flush()

    def __call__(self, kind: str, agent_id: str, payload: Any) -> None:
        if kind == "stream":
            if self._streaming != agent_id:
                self._line(f"[{_short(agent_id)}] ")
                self._streaming = agent_id
            self._out.write(payload)
            self._out.flush()
        elif kind == "connected":
            self._line(f"Connected: {len(payload)} agent(s)")
            for view in self.store.agents.values() if self.store else ():
                self._line(f"  {_short(view.id)} {view.type:<8} {view.status:<20} {view.session_name}")
        elif kind == "message":
            for block in payload["content"] if isinstance(payload["content"], list) else []:
                if block.get("type") == "tool_use":
                    self._line(f"[{_short(agent_id)}] tool: {block.get('name')}")
        elif kind == "permission":
            self._line(
                f"[{_short(agent_id)}] permission {payload['requestId']}: "
                f"{payload['toolName']} {json.dumps(payload['toolInput'])[:200]}"
            )
        elif kind == "result":
            self._line(
                f"[{_short(agent_id)}] done: ${payload.get('totalCost') or 0:.4f}, "
                f"context {payload.get('contextUsedPercent') or 0}%"
            )
            self.finished.add(agent_id)
        elif kind == "updated" and payload.get("status"):
            self._line(f"[{_short(agent_id)}] status: {payload['status']}")
        elif kind == "created":
            self._line(f"[{_short(agent_id)}] created ({payload.get('type')})")
        elif kind == "destroyed":
            self._line(f"[{_short(agent_id)}] destroyed")
        elif kind == "error":
            self._line(f"error: {payload}")


async def watch(url: str, send: tuple[str, str] | None = None) -> int:
    printer = Printer()
    store = ClientStore(listener=printer)
    printer.store = store

    async with aiohttp.ClientSession() as http:
        try:
            ws = await http.ws_connect(url, heartbeat=30)
        except aiohttp.ClientError as e:
            print(f"Cannot connect to {url}: {e}", file=sys.stderr)
            return 1

        async with ws:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Non-JSON message from bridge")
                    continue
                store.handle(data)

                if data.get("type") == "connected":
                    for agent_id in list(store.agents):
                        await ws.send_json({"type": "getHistory", "agentId": agent_id})
                    if send is not None:
                        await ws.send_json({"type": "sendMessage", "agentId": send[0], "text": send[1]})

                if send is not None and send[0] in printer.finished:
                    return 0
    store.flush_streams()
    return 0


def run(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="agentbridge-watch")
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--send", nargs=2, metavar=("AGENT_ID", "TEXT"))
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING)
    try:
        code = asyncio.run(watch(args.url, tuple(args.send) if args.send else None))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
