from __future__ import annotations

import asyncio
import json
import logging
import signal
import uuid
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType

from agentbridge.adapters.base import (
    BaseDriver,
    DriverError,
    find_binary,
    normalize_content_blocks,
)
from agentbridge.core import git_worktree
from agentbridge.core.codec import LineBuffer, decode_line
from agentbridge.core.events import (
    ErrorEvent,
    InitEvent,
    MessageEvent,
    PermissionEvent,
    ResultEvent,
    StatusEvent,
    StreamEvent,
    ToolProgressEvent,
    ToolResultsEvent,
)
from agentbridge.ports.driver import BYPASS_MODE, normalize_permission_mode

logger = logging.getLogger(__name__)


class ClaudeDriver(BaseDriver):
    """Driver for the Claude Code CLI in ``--sdk-url`` mode.

    The CLI is a WebSocket *client*: we launch it pointing at our own
    ``/ws/cli/<agent_id>`` route, and the server hands the accepted socket
    to ``attach_socket()``. Frames carry newline-delimited stream-json.
    """

    agent_type = "claude"

    def __init__(
        self,
        on_event,
        *,
        server_host: str = "127.0.0.1",
        server_port: int = 8765,
        **kwargs: Any,
    ) -> None:
        super().__init__(on_event, **kwargs)
        self._server_host = server_host
        self._server_port = server_port
        self._socket: Any = None
        self._connected = asyncio.Event()
        self._turn_done = asyncio.Event()
        self._turn_done.set()
        self._init_sent = False
        self._tools: list = []
        self._pending_permissions: set[str] = set()

    @property
    def sdk_url(self) -> str:
        return f"ws://{self._server_host}:{self._server_port}/ws/cli/{self._agent_id}"

    def build_command(self, binary: str, resume_session_id: str | None) -> list[str]:
        cmd = [
            binary,
            "--sdk-url", self.sdk_url,
            "--print",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
        ]
        if self._model:
            cmd.extend(["--model", self._model])
        if resume_session_id:
            cmd.extend(["--resume", resume_session_id])
        cmd.extend(["-p", ""])
        return cmd

    # -- Lifecycle -------------------------------------------------------------

    async def start(
        self,
        agent_id: str,
        cwd: str | None = None,
        resume_session_id: str | None = None,
        model: str | None = None,
    ) -> None:
        self._agent_id = agent_id
        self._cwd = cwd
        self._model = model
        if resume_session_id:
            self._session_id = resume_session_id

        try:
            binary = find_binary("claude", self._binary)
            await self._spawn(self.build_command(binary, resume_session_id), cwd)
        except (DriverError, OSError) as e:
            logger.error("[%s] Failed to start Claude: %s", self._tag, e)
            await self._emit(ErrorEvent(message=str(e)))
            return

        self._spawn_task(self._drain_stdout())
        self._spawn_task(self._report_exit())
        self._spawn_task(self._await_connection())

    async def _drain_stdout(self) -> None:
        # In --sdk-url mode protocol traffic goes over the socket; stdout is diagnostics
        proc = self._process
        if proc is None or proc.stdout is None:
            return
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if text:
                    logger.debug("[%s] stdout: %s", self._tag, text[:200])
        except asyncio.CancelledError:
            pass

    async def _await_connection(self) -> None:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self._rpc_timeout)
        except asyncio.TimeoutError:
            if self._stopped or self._exit_reported:
                return
            logger.error("[%s] Claude CLI never connected back", self._tag)
            await self._emit(ErrorEvent(
                message=f"Claude CLI did not connect within {self._rpc_timeout:g}s",
            ))

    async def attach_socket(self, ws: Any) -> None:
        """Take over the CLI's WebSocket and pump frames until it closes."""
        if self._socket is not None:
            logger.warning("[%s] Replacing existing CLI socket", self._tag)
            try:
                await self._socket.close()
            except Exception:
                logger.debug("Closing previous CLI socket failed", exc_info=True)
        self._socket = ws
        self._ready = True
        self._connected.set()
        logger.info("[%s] CLI WebSocket attached", self._tag)

        if not self._init_sent:
            self._init_sent = True
            branch = await git_worktree.current_branch(self._cwd)
            await self._emit(InitEvent(
                session_id=self._session_id,
                model=self._model,
                cwd=self._cwd,
                git_branch=branch,
                project_name=Path(self._cwd).name if self._cwd else None,
            ))
        if self._permission_mode == BYPASS_MODE:
            await self.set_permission_mode(BYPASS_MODE)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.feed_frame(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self.feed_frame(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("[%s] CLI WebSocket error: %s", self._tag, ws.exception())
        finally:
            if self._socket is ws:
                self._socket = None
                self._ready = False
                logger.info("[%s] CLI WebSocket closed", self._tag)
                if not self._stopped and not self._exit_reported:
                    await self._emit(ErrorEvent(message="Claude CLI disconnected"))

    async def feed_frame(self, text: str) -> None:
        """Dispatch every JSON line carried by one WebSocket frame."""
        buf = LineBuffer()
        for line in buf.feed(text) + buf.flush():
            msg = decode_line(line, source="Claude")
            if msg is None:
                continue
            self._log_raw(line)
            await self._handle_message(msg)

    async def _on_process_exit(self) -> None:
        self._pending_permissions.clear()
        self._turn_done.set()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._pending_permissions.clear()
        self._turn_done.set()
        if self._socket is not None:
            socket, self._socket = self._socket, None
            try:
                await socket.close()
            except Exception:
                logger.debug("Closing CLI socket failed", exc_info=True)
        await self._shutdown_process()
        logger.info("[%s] Claude driver stopped", self._tag)

    # -- Inbound frames --------------------------------------------------------

    async def _handle_message(self, msg: dict) -> None:
        handler = self._HANDLERS.get(msg.get("type"))
        if handler is None:
            if msg.get("type") not in (None, "keep_alive"):
                logger.debug("[%s] Unhandled frame: %s", self._tag, msg.get("type"))
            return
        await handler(self, msg)

    async def _on_system(self, msg: dict) -> None:
        if msg.get("subtype") != "init":
            return
        if msg.get("session_id"):
            self._session_id = msg["session_id"]
        if msg.get("model"):
            self._model = msg["model"]
        self._tools = msg.get("tools") or []
        logger.info(
            "[%s] Claude session %s (model=%s, %d tools)",
            self._tag, self._session_id, self._model, len(self._tools),
        )

    async def _on_stream_event(self, msg: dict) -> None:
        event = msg.get("event") or {}
        delta = event.get("delta") or {}
        if event.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            text = delta.get("text") or ""
            if text:
                await self._emit(StreamEvent(text=text))

    async def _on_assistant(self, msg: dict) -> None:
        content = (msg.get("message") or {}).get("content") or []
        await self._emit(MessageEvent(content=normalize_content_blocks(content)))
        await self._emit(StatusEvent(status="running"))

    async def _on_user(self, msg: dict) -> None:
        content = (msg.get("message") or {}).get("content")
        if isinstance(content, list):
            await self._emit(ToolResultsEvent(content=content))

    async def _on_result(self, msg: dict) -> None:
        if msg.get("session_id"):
            self._session_id = msg["session_id"]
        self._turn_active = False
        self._turn_done.set()
        await self._emit(ResultEvent(
            cost=float(msg.get("total_cost_usd") or msg.get("cost_usd") or 0),
            usage=msg.get("usage") or {},
            duration=int(msg.get("duration_ms") or 0),
            is_error=bool(msg.get("is_error")),
            session_id=self._session_id,
        ))

    async def _on_control_request(self, msg: dict) -> None:
        request = msg.get("request") or {}
        subtype = request.get("subtype") or msg.get("subtype")
        if subtype != "can_use_tool":
            logger.debug("[%s] control_request subtype: %s", self._tag, subtype)
            return
        request_id = msg.get("request_id") or request.get("id") or str(uuid.uuid4())
        self._pending_permissions.add(request_id)
        await self._emit(PermissionEvent(
            request_id=request_id,
            tool_name=request.get("tool_name") or "unknown",
            tool_input=request.get("input") or request.get("tool_input") or {},
        ))

    async def _on_tool_progress(self, msg: dict) -> None:
        await self._emit(ToolProgressEvent(
            tool_name=msg.get("tool_name"),
            elapsed=msg.get("elapsed_time_seconds") or msg.get("elapsed_ms") or 0,
        ))

    _HANDLERS = {
        "system": _on_system,
        "stream_event": _on_stream_event,
        "assistant": _on_assistant,
        "user": _on_user,
        "result": _on_result,
        "control_request": _on_control_request,
        "tool_progress": _on_tool_progress,
    }

    # -- Commands --------------------------------------------------------------

    async def _send(self, msg: dict) -> None:
        if self._socket is None or self._socket.closed:
            raise DriverError("Claude CLI socket not connected")
        await self._socket.send_str(json.dumps(msg, ensure_ascii=False) + "\n")

    async def send_prompt(self, text: str, session_id: str | None = None) -> None:
        if not self.ready:
            await self._emit(ErrorEvent(message="Claude is not ready for a prompt"))
            return
        self._turn_active = True
        self._turn_done.clear()
        try:
            await self._send({
                "type": "user",
                "message": {"role": "user", "content": text},
                "parent_tool_use_id": None,
                "session_id": session_id or self._session_id or "",
            })
        except DriverError as e:
            self._turn_active = False
            self._turn_done.set()
            await self._emit(ErrorEvent(message=str(e)))
            return
        logger.debug("[%s] Sent prompt: %s", self._tag, text[:100])

    async def respond_permission(
        self, request_id: str, behavior: str, updated_input: dict | None = None,
    ) -> bool:
        if request_id not in self._pending_permissions:
            return False
        self._pending_permissions.discard(request_id)
        if behavior == "allow":
            inner = {"behavior": "allow", "updatedInput": updated_input or {}}
        else:
            inner = {"behavior": "deny", "message": "Denied by user"}
        try:
            await self._send({
                "type": "control_response",
                "response": {
                    "subtype": "success",
                    "request_id": request_id,
                    "response": inner,
                },
            })
        except DriverError as e:
            logger.warning("[%s] Permission reply dropped: %s", self._tag, e)
        return True

    async def set_permission_mode(self, mode: str) -> None:
        self._permission_mode = normalize_permission_mode(mode)
        cli_mode = "bypassPermissions" if self._permission_mode == BYPASS_MODE else "default"
        try:
            await self._send({
                "type": "control_request",
                "request_id": f"req_perm_{uuid.uuid4().hex[:8]}",
                "request": {"subtype": "set_permission_mode", "mode": cli_mode},
            })
        except DriverError:
            logger.info("[%s] Permission mode %s recorded before connect", self._tag, cli_mode)
            return
        logger.info("[%s] Permission mode -> %s", self._tag, cli_mode)

    async def interrupt(self) -> bool:
        """SIGINT the CLI, which aborts the turn and still reports a result."""
        if not self._turn_active:
            return True
        proc = self._process
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        logger.info("[%s] SIGINT sent", self._tag)
        try:
            await asyncio.wait_for(self._turn_done.wait(), timeout=self._interrupt_timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] No result after interrupt", self._tag)
            return False
        self._pending_permissions.clear()
        return True
