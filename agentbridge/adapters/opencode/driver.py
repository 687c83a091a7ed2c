from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any

from agentbridge.adapters.base import BaseDriver, DriverError, find_binary
from agentbridge.core import git_worktree
from agentbridge.core.codec import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    JsonRpcPeer,
    LineBuffer,
    RpcError,
    RpcNotification,
    RpcRequest,
    RpcResponse,
    classify,
    decode_line,
)
from agentbridge.core.events import (
    ErrorEvent,
    InitEvent,
    MessageEvent,
    PermissionEvent,
    ResultEvent,
    StatusEvent,
    StreamEvent,
)
from agentbridge.ports.driver import BYPASS_MODE

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
_ALLOW_KINDS = ("allow_once", "allow_always")
_REJECT_KINDS = ("reject_once", "reject_always")


def _content_text(content: Any) -> str:
    """Text carried by an ACP content value (string, block, or list of blocks)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(t for t in (_content_text(c) for c in content) if t)
    if isinstance(content, dict):
        if content.get("type") == "content":
            return _content_text(content.get("content"))
        if content.get("type") == "diff":
            return f"Edited {content.get('path', '')}"
        return str(content.get("text") or "")
    return str(content)


def pick_option(options: list[dict], behavior: str) -> str:
    """Choose the optionId that matches *behavior* among the offered options."""
    kinds = _ALLOW_KINDS if behavior == "allow" else _REJECT_KINDS
    for kind in kinds:
        for option in options:
            if option.get("kind") == kind and option.get("optionId"):
                return option["optionId"]
    return "allow-once" if behavior == "allow" else "reject-once"


class OpenCodeDriver(BaseDriver):
    """Driver for ``opencode acp`` (Agent Client Protocol, JSON-RPC over stdio).

    A turn is one ``session/prompt`` request whose response arrives only when
    the agent is done, so it runs in a background task. While it runs the
    agent streams ``session/update`` notifications and calls back into us
    for permissions and file reads.
    """

    agent_type = "opencode"

    def __init__(self, on_event, **kwargs: Any) -> None:
        super().__init__(on_event, **kwargs)
        self._peer = JsonRpcPeer(self._write_stdin, timeout=self._rpc_timeout)
        self._stream_text = ""
        self._thinking = ""
        self._seen_tools: set[str] = set()
        self._turn_task: asyncio.Task | None = None
        # request_id -> (server request id, offered options)
        self._approvals: dict[str, tuple[Any, list[dict]]] = {}

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

        try:
            binary = find_binary("opencode", self._binary)
            cmd = [binary, "acp"]
            if model:
                cmd.extend(["--model", model])
            await self._spawn(cmd, cwd)
        except (DriverError, OSError) as e:
            logger.error("[%s] Failed to start OpenCode: %s", self._tag, e)
            await self._emit(ErrorEvent(message=str(e)))
            return

        self._spawn_task(self._read_stdout())
        try:
            agent_name = await self._handshake(resume_session_id)
        except (RpcError, DriverError) as e:
            if self._stopped:
                return
            logger.error("[%s] OpenCode initialization failed: %s", self._tag, e)
            await self._emit(ErrorEvent(message=f"Initialization failed: {e}"))
            return

        await self._emit(InitEvent(
            session_id=self._session_id,
            model=self._model or agent_name,
            tools=[],
            cwd=cwd,
            git_branch=await git_worktree.current_branch(cwd),
            project_name=Path(cwd).name if cwd else None,
        ))

    async def _handshake(self, resume_session_id: str | None) -> str | None:
        init = await self._peer.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "clientCapabilities": {
                "fs": {"readTextFile": True, "writeTextFile": False},
                "terminal": False,
            },
            "clientInfo": {"name": "agentbridge", "version": "1.0.0"},
        }) or {}

        cwd = self._cwd or str(Path.home())
        result = None
        if resume_session_id:
            try:
                result = await self._peer.request("session/load", {
                    "sessionId": resume_session_id, "cwd": cwd, "mcpServers": [],
                })
                # session/load answers null; the id is the one we asked for
                self._session_id = (result or {}).get("sessionId") or resume_session_id
            except RpcError as e:
                logger.warning(
                    "[%s] session/load failed, creating new session: %s", self._tag, e,
                )
                result = None
        if self._session_id is None:
            result = await self._peer.request("session/new", {"cwd": cwd, "mcpServers": []})
            self._session_id = (result or {}).get("sessionId") or (result or {}).get("id")

        self._ready = True
        logger.info("[%s] OpenCode session ready: %s", self._tag, self._session_id)
        return (init.get("agentInfo") or {}).get("name")

    async def _read_stdout(self) -> None:
        proc = self._process
        if proc is None or proc.stdout is None:
            return
        buf = LineBuffer()
        try:
            while True:
                chunk = await proc.stdout.read(65536)
                if not chunk:
                    break
                for line in buf.feed(chunk):
                    await self._dispatch_line(line)
            for line in buf.flush():
                await self._dispatch_line(line)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("[%s] OpenCode read loop crashed", self._tag)
        await self._report_exit()

    async def _on_process_exit(self) -> None:
        self._peer.reject_all("Process exited")
        self._approvals.clear()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._peer.reject_all("Driver stopped")
        self._approvals.clear()
        await self._shutdown_process()
        self._session_id = None
        logger.info("[%s] OpenCode driver stopped", self._tag)

    # -- Inbound ---------------------------------------------------------------

    async def _dispatch_line(self, line: str) -> None:
        msg = decode_line(line, source="OpenCode")
        if msg is None:
            return
        self._log_raw(line)
        await self.handle_message(msg)

    async def handle_message(self, msg: dict) -> None:
        kind = classify(msg)
        if isinstance(kind, RpcResponse):
            self._peer.handle_response(kind)
        elif isinstance(kind, RpcRequest):
            await self._handle_server_request(kind)
        elif isinstance(kind, RpcNotification):
            if kind.method == "session/update":
                await self._on_session_update(kind.params)
            elif kind.method == "error":
                err = kind.params.get("error") or kind.params.get("message") or kind.params
                message = err if isinstance(err, str) else str((err or {}).get("message", err))
                await self._emit(ErrorEvent(message=message))
            else:
                logger.debug("[%s] Notification: %s", self._tag, kind.method)

    async def _on_session_update(self, params: dict) -> None:
        update = params.get("update") or params
        kind = update.get("sessionUpdate") or update.get("type")
        handler = self._UPDATES.get(kind)
        if handler is None:
            logger.debug("[%s] Session update: %s", self._tag, kind)
            return
        await handler(self, update)

    async def _on_message_chunk(self, update: dict) -> None:
        text = _content_text(update.get("content"))
        if text:
            self._stream_text += text
            await self._emit(StreamEvent(text=text))

    async def _on_thought_chunk(self, update: dict) -> None:
        self._thinking += _content_text(update.get("content")) or update.get("text") or ""

    def _take_thinking(self) -> list[dict]:
        text, self._thinking = self._thinking.strip(), ""
        return [{"type": "thinking", "text": text}] if text else []

    def _tool_use_block(self, update: dict, tool_id: str) -> dict:
        self._seen_tools.add(tool_id)
        return {
            "type": "tool_use",
            "id": tool_id,
            "name": update.get("title") or update.get("kind") or update.get("name") or "unknown",
            "input": update.get("rawInput") or update.get("input") or {},
        }

    def _tool_result_block(self, update: dict, tool_id: str) -> dict:
        if update.get("status") == "failed":
            err = update.get("error") or update.get("message") or _content_text(update.get("content"))
            text = err if isinstance(err, str) and err else "Tool call failed"
        else:
            text = (
                _content_text(update.get("content"))
                or _content_text(update.get("rawOutput"))
                or update.get("result")
                or update.get("output")
                or "Completed"
            )
        self._seen_tools.discard(tool_id)
        return {"type": "tool_result", "toolUseId": tool_id, "content": text}

    async def _on_tool_call(self, update: dict) -> None:
        tool_id = update.get("toolCallId") or update.get("id") or str(uuid.uuid4())
        status = update.get("status") or "pending"
        blocks = self._take_thinking() + [self._tool_use_block(update, tool_id)]
        if status in ("completed", "failed"):
            blocks.append(self._tool_result_block(update, tool_id))
        await self._emit(MessageEvent(content=blocks))
        # Late tool_call notifications can trail the prompt response
        if self._turn_active and status in ("pending", "in_progress"):
            await self._emit(StatusEvent(status="running"))

    async def _on_tool_call_update(self, update: dict) -> None:
        if update.get("status") not in ("completed", "failed"):
            return
        tool_id = update.get("toolCallId") or update.get("id") or str(uuid.uuid4())
        if tool_id not in self._seen_tools:
            await self._emit(MessageEvent(content=[self._tool_use_block(update, tool_id)]))
        await self._emit(MessageEvent(content=[self._tool_result_block(update, tool_id)]))

    async def _on_plan(self, update: dict) -> None:
        entries = update.get("entries") or []
        logger.info("[%s] Plan update (%d entries)", self._tag, len(entries))

    _UPDATES = {
        "agent_message_chunk": _on_message_chunk,
        "agent_thought_chunk": _on_thought_chunk,
        "tool_call": _on_tool_call,
        "tool_call_update": _on_tool_call_update,
        "plan": _on_plan,
    }

    # -- Reverse RPC -----------------------------------------------------------

    async def _handle_server_request(self, req: RpcRequest) -> None:
        if req.method == "session/request_permission":
            await self._on_request_permission(req)
        elif req.method == "fs/read_text_file":
            await self._on_read_text_file(req)
        elif req.method == "fs/write_text_file" or req.method.startswith("terminal/"):
            await self._peer.respond_error(
                req.id, METHOD_NOT_FOUND, f"{req.method} is not supported by this client",
            )
        else:
            logger.info("[%s] Unsupported server request: %s", self._tag, req.method)
            await self._peer.respond_error(
                req.id, METHOD_NOT_FOUND, f"Method not supported: {req.method}",
            )

    async def _on_request_permission(self, req: RpcRequest) -> None:
        params = req.params
        options = params.get("options") or []
        tool_call = params.get("toolCall") or {}

        if self._permission_mode == BYPASS_MODE:
            await self._answer_permission(req.id, options, "allow")
            return

        request_id = str(uuid.uuid4())
        self._approvals[request_id] = (req.id, options)
        tool_input = (
            params.get("input") or tool_call.get("rawInput") or params.get("description") or {}
        )
        if isinstance(tool_input, str):
            tool_input = {"description": tool_input}
        await self._emit(PermissionEvent(
            request_id=request_id,
            tool_name=params.get("title") or tool_call.get("title") or params.get("toolName") or "unknown",
            tool_input=tool_input,
        ))

    async def _answer_permission(self, rpc_id: Any, options: list[dict], behavior: str) -> None:
        await self._peer.respond(rpc_id, {
            "outcome": {"outcome": "selected", "optionId": pick_option(options, behavior)},
        })

    async def _on_read_text_file(self, req: RpcRequest) -> None:
        path = req.params.get("path") or req.params.get("filePath")
        if not path:
            await self._peer.respond_error(req.id, INVALID_PARAMS, "No file path provided")
            return
        try:
            text = Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            await self._peer.respond_error(req.id, INTERNAL_ERROR, str(e))
            return
        line = req.params.get("line")
        limit = req.params.get("limit")
        if line or limit:
            lines = text.splitlines(keepends=True)
            start = max(int(line or 1) - 1, 0)
            end = start + int(limit) if limit else None
            text = "".join(lines[start:end])
        await self._peer.respond(req.id, {"content": text})

    # -- Commands --------------------------------------------------------------

    async def send_prompt(self, text: str, session_id: str | None = None) -> None:
        if not self.ready or not self._session_id:
            await self._emit(ErrorEvent(message="OpenCode not ready"))
            return
        self._turn_active = True
        self._stream_text = ""
        self._thinking = ""
        await self._emit(StatusEvent(status="running"))
        self._turn_task = self._spawn_task(self._run_turn(text))

    async def _run_turn(self, text: str) -> None:
        try:
            result = await self._peer.request(
                "session/prompt",
                {"sessionId": self._session_id, "prompt": [{"type": "text", "text": text}]},
                timeout=0,
            )
        except (RpcError, DriverError) as e:
            self._turn_active = False
            if self._stopped:
                return
            logger.error("[%s] session/prompt failed: %s", self._tag, e)
            await self._flush_text()
            await self._emit(ErrorEvent(message=str(e)))
            return

        stop_reason = (result or {}).get("stopReason") or "end_turn"
        self._turn_active = False
        await self._flush_text()
        await self._emit(ResultEvent(
            cost=0.0,
            usage={},
            duration=0,
            is_error=stop_reason == "refusal",
            session_id=self._session_id,
        ))
        await self._emit(StatusEvent(status="idle"))

    async def _flush_text(self) -> None:
        blocks = self._take_thinking()
        if self._stream_text:
            blocks.append({"type": "text", "text": self._stream_text})
            self._stream_text = ""
        if blocks:
            await self._emit(MessageEvent(content=blocks))

    async def respond_permission(
        self, request_id: str, behavior: str, updated_input: dict | None = None,
    ) -> bool:
        entry = self._approvals.pop(request_id, None)
        if entry is None:
            logger.debug("[%s] No approval found for %s", self._tag, request_id)
            return False
        rpc_id, options = entry
        try:
            await self._answer_permission(rpc_id, options, behavior)
        except DriverError as e:
            logger.warning("[%s] Permission reply dropped: %s", self._tag, e)
        return True

    async def interrupt(self) -> bool:
        task = self._turn_task
        if not self._turn_active or task is None or task.done():
            return True
        try:
            await self._peer.notify("session/cancel", {"sessionId": self._session_id})
            # Outstanding permission prompts must be answered as cancelled
            approvals, self._approvals = self._approvals, {}
            for rpc_id, _ in approvals.values():
                await self._peer.respond(rpc_id, {"outcome": {"outcome": "cancelled"}})
        except DriverError as e:
            logger.error("[%s] Cancel failed: %s", self._tag, e)
            return False
        done, _ = await asyncio.wait({task}, timeout=self._interrupt_timeout)
        if not done:
            logger.warning("[%s] Turn did not settle after session/cancel", self._tag)
            return False
        return True
