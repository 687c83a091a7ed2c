from __future__ import annotations

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Any

from agentbridge.adapters.base import BaseDriver, DriverError, find_binary
from agentbridge.core import git_worktree
from agentbridge.core.codec import (
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
    ToolProgressEvent,
)
from agentbridge.ports.driver import BYPASS_MODE, normalize_permission_mode

logger = logging.getLogger(__name__)

_APPROVAL_POLICY = {"default": "untrusted", BYPASS_MODE: "on-failure"}
_SANDBOX_MODE = "workspace-write"
_UNSUPPORTED_MODEL_RE = re.compile(
    r"model.+not supported|not supported.+model|unsupported.+model", re.IGNORECASE,
)
_TOOL_ITEMS = {
    "commandExecution": "command_execution",
    "command_execution": "command_execution",
    "fileChange": "file_change",
    "file_change": "file_change",
    "webSearch": "web_search",
    "web_search": "web_search",
}


def _text_of(value: Any) -> str:
    """Flatten the string / list-of-parts shapes Codex uses for text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return str(value.get("text") or "")
    if isinstance(value, list):
        return "\n".join(t for t in (_text_of(v) for v in value) if t)
    return str(value)


def _map_usage(raw: Any) -> dict:
    if not isinstance(raw, dict):
        return {}
    # thread/tokenUsage/updated nests per-turn numbers under "last"
    if isinstance(raw.get("last"), dict):
        raw = raw["last"]
    usage = {
        "input_tokens": raw.get("input_tokens", raw.get("inputTokens")),
        "output_tokens": raw.get("output_tokens", raw.get("outputTokens")),
        "cache_read_input_tokens": raw.get(
            "cache_read_input_tokens", raw.get("cachedInputTokens"),
        ),
    }
    return {k: v for k, v in usage.items() if v is not None}


def _error_text(err: Any, default: str) -> str:
    if isinstance(err, str):
        return err
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return default if err is None else str(err)


class CodexDriver(BaseDriver):
    """Driver for ``codex app-server`` (JSON-RPC 2.0 over stdio).

    Approvals arrive as server requests and are answered in place. Older
    servers send them as notifications instead; those are answered with an
    ``item/approve`` request.
    """

    agent_type = "codex"

    def __init__(self, on_event, *, default_model: str | None = None, **kwargs: Any) -> None:
        super().__init__(on_event, **kwargs)
        self._default_model = default_model
        self._peer = JsonRpcPeer(self._write_stdin, timeout=self._rpc_timeout)
        self._thread_id: str | None = None
        self._turn_id: str | None = None
        self._turn_done = asyncio.Event()
        self._turn_done.set()
        self._approval_policy = _APPROVAL_POLICY["default"]
        self._sandbox_mode = _SANDBOX_MODE
        self._stream_text = ""
        self._last_usage: dict = {}
        self._started_items: set[str] = set()
        # request_id -> ("rpc", server request id) | ("item", item id)
        self._approvals: dict[str, tuple[str, Any]] = {}

    @property
    def approval_policy(self) -> str:
        return self._approval_policy

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

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
        self._model = (model or self._default_model or "").strip() or None

        try:
            binary = find_binary("codex", self._binary)
            await self._spawn([binary, "app-server"], cwd)
        except (DriverError, OSError) as e:
            logger.error("[%s] Failed to start Codex: %s", self._tag, e)
            await self._emit(ErrorEvent(message=str(e)))
            return

        self._spawn_task(self._read_stdout())
        try:
            await self._handshake(resume_session_id)
        except (RpcError, DriverError) as e:
            if self._stopped:
                return
            logger.error("[%s] Codex initialization failed: %s", self._tag, e)
            await self._emit(ErrorEvent(message=f"Initialization failed: {e}"))
            return

        await self._emit(InitEvent(
            session_id=self._thread_id,
            model=self._model,
            tools=[],
            cwd=cwd,
            git_branch=await git_worktree.current_branch(cwd),
            project_name=Path(cwd).name if cwd else None,
        ))

    async def _handshake(self, resume_session_id: str | None) -> None:
        await self._peer.request("initialize", {
            "clientInfo": {"name": "agentbridge", "version": "1.0.0"},
        })
        await self._peer.notify("initialized", {})

        if resume_session_id:
            result = await self._peer.request("thread/resume", {"threadId": resume_session_id})
        else:
            params = {
                "cwd": self._cwd or str(Path.home()),
                "approvalPolicy": self._approval_policy,
                "sandbox": self._sandbox_mode,
            }
            if self._model:
                try:
                    result = await self._peer.request("thread/start", {**params, "model": self._model})
                except RpcError as e:
                    if not _UNSUPPORTED_MODEL_RE.search(e.message):
                        raise
                    logger.warning(
                        "[%s] Model %r unsupported, retrying thread/start without it",
                        self._tag, self._model,
                    )
                    self._model = None
                    result = await self._peer.request("thread/start", params)
            else:
                result = await self._peer.request("thread/start", params)

        result = result or {}
        thread = result.get("thread") or {}
        self._thread_id = thread.get("id") or result.get("threadId") or resume_session_id
        self._session_id = self._thread_id
        self._model = thread.get("model") or result.get("model") or self._model
        self._ready = True
        logger.info("[%s] Codex thread ready: %s", self._tag, self._thread_id)

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
            logger.exception("[%s] Codex read loop crashed", self._tag)
        await self._report_exit()

    async def _on_process_exit(self) -> None:
        self._peer.reject_all("Process exited")
        self._approvals.clear()
        self._turn_done.set()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._peer.reject_all("Driver stopped")
        await self._shutdown_process()
        self._thread_id = None
        self._turn_id = None
        self._approvals.clear()
        self._turn_done.set()
        logger.info("[%s] Codex driver stopped", self._tag)

    # -- Inbound ---------------------------------------------------------------

    async def _dispatch_line(self, line: str) -> None:
        msg = decode_line(line, source="Codex")
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
            handler = self._NOTIFICATIONS.get(kind.method)
            if handler is None:
                logger.debug("[%s] Notification: %s", self._tag, kind.method)
                return
            await handler(self, kind.params)

    async def _on_turn_started(self, params: dict) -> None:
        turn = params.get("turn") or {}
        self._turn_id = params.get("turnId") or turn.get("id") or self._turn_id
        self._turn_active = True
        self._turn_done.clear()
        self._stream_text = ""
        await self._emit(StatusEvent(status="running"))

    async def _on_turn_completed(self, params: dict) -> None:
        turn = params.get("turn") or params
        state = turn.get("status") or "completed"
        usage = _map_usage(turn.get("usage") or params.get("usage")) or self._last_usage
        await self._finish_turn(is_error=state == "failed", usage=usage)
        if state == "failed":
            err = turn.get("error") or params.get("error")
            await self._emit(ErrorEvent(message=_error_text(err, "Turn failed")))

    async def _on_turn_failed(self, params: dict) -> None:
        await self._finish_turn(is_error=True, usage={})
        err = params.get("error") or params.get("message")
        await self._emit(ErrorEvent(message=_error_text(err, "Turn failed")))

    async def _finish_turn(self, is_error: bool, usage: dict) -> None:
        self._turn_active = False
        self._turn_id = None
        self._turn_done.set()
        self._stream_text = ""
        self._last_usage = {}
        self._started_items.clear()
        await self._emit(ResultEvent(
            cost=0.0,
            usage=usage,
            duration=0,
            is_error=is_error,
            session_id=self._thread_id,
        ))
        await self._emit(StatusEvent(status="idle"))

    async def _on_token_usage(self, params: dict) -> None:
        self._last_usage = _map_usage(params.get("tokenUsage") or params.get("usage"))

    async def _on_agent_delta(self, params: dict) -> None:
        delta = params.get("delta")
        text = delta if isinstance(delta, str) else _text_of(delta or params.get("text"))
        if text:
            self._stream_text += text
            await self._emit(StreamEvent(text=text))

    async def _on_output_delta(self, params: dict) -> None:
        output = params.get("output")
        text = output if isinstance(output, str) else _text_of(output or params.get("delta"))
        if text:
            await self._emit(ToolProgressEvent(tool_name="command_execution", elapsed=0))

    async def _on_item_started(self, params: dict) -> None:
        item = params.get("item") or params
        name = _TOOL_ITEMS.get(item.get("type"))
        if name is None:
            return
        item_id = item.get("id") or str(uuid.uuid4())
        self._started_items.add(item_id)
        await self._emit(MessageEvent(content=[self._tool_use_block(item_id, name, item)]))

    async def _on_item_completed(self, params: dict) -> None:
        item = params.get("item") or params
        kind = item.get("type")

        if kind in ("agentMessage", "agent_message"):
            text = _text_of(item.get("text") or item.get("content")) or self._stream_text
            self._stream_text = ""
            if text:
                await self._emit(MessageEvent(content=[{"type": "text", "text": text}]))
            return

        if kind == "reasoning":
            text = _text_of(item.get("summary")) or _text_of(item.get("content")) or _text_of(item.get("text"))
            text = text.replace("**", "").strip()
            if text:
                await self._emit(MessageEvent(content=[{"type": "thinking", "text": text}]))
            return

        name = _TOOL_ITEMS.get(kind)
        if name is None:
            logger.debug("[%s] Item completed: %s", self._tag, kind)
            return
        item_id = item.get("id") or str(uuid.uuid4())
        blocks = []
        if item_id not in self._started_items:
            blocks.append(self._tool_use_block(item_id, name, item))
        self._started_items.discard(item_id)
        blocks.append({
            "type": "tool_result",
            "toolUseId": item_id,
            "content": self._tool_result_text(name, item),
        })
        await self._emit(MessageEvent(content=blocks))

    @staticmethod
    def _tool_use_block(item_id: str, name: str, item: dict) -> dict:
        if name == "command_execution":
            command = item.get("command") or ""
            if isinstance(command, list):
                command = " ".join(command)
            tool_input: dict = {"command": command}
        elif name == "file_change":
            changes = item.get("changes") or []
            paths = [c.get("path") for c in changes if isinstance(c, dict) and c.get("path")]
            tool_input = {
                "file": item.get("filePath") or item.get("file") or ", ".join(paths),
                "action": item.get("action") or "modify",
            }
        else:
            tool_input = {"query": item.get("query") or ""}
        return {"type": "tool_use", "id": item_id, "name": name, "input": tool_input}

    @staticmethod
    def _tool_result_text(name: str, item: dict) -> str:
        if name == "command_execution":
            output = item.get("aggregatedOutput") or item.get("output") or item.get("result") or ""
            return _text_of(output)
        if name == "file_change":
            if item.get("diff"):
                return str(item["diff"])
            changes = item.get("changes") or []
            lines = [
                f"{c.get('kind', 'update')}: {c.get('path')}"
                for c in changes if isinstance(c, dict) and c.get("path")
            ]
            if lines:
                return "\n".join(lines)
            action = item.get("action") or "modified"
            return f"File {action}: {item.get('filePath') or item.get('file') or ''}"
        action = item.get("action") or {}
        queries = action.get("queries") or []
        query = action.get("query") or item.get("query") or ""
        lines = [f"Query: {query}"] if query else []
        lines.extend(f"- {q}" for q in queries if q != query)
        return "\n".join(lines) or "Web search completed"

    async def _on_approval_notification(self, params: dict, tool_name: str) -> None:
        item_id = params.get("itemId") or (params.get("item") or {}).get("id")
        request_id = str(uuid.uuid4())
        self._approvals[request_id] = ("item", item_id)
        await self._emit_permission(request_id, tool_name, params)

    async def _on_command_approval(self, params: dict) -> None:
        await self._on_approval_notification(params, "command_execution")

    async def _on_file_approval(self, params: dict) -> None:
        await self._on_approval_notification(params, "file_change")

    async def _emit_permission(self, request_id: str, tool_name: str, params: dict) -> None:
        if tool_name == "command_execution":
            parsed = params.get("parsedCmd") or {}
            tool_input = {
                "command": parsed.get("cmd") or params.get("command") or "",
                "args": parsed.get("args") or [],
                "reason": params.get("reason") or "",
            }
        else:
            tool_input = {
                "file": params.get("filePath") or params.get("file") or "",
                "reason": params.get("reason") or "",
            }
        await self._emit(PermissionEvent(
            request_id=request_id, tool_name=tool_name, tool_input=tool_input,
        ))

    async def _on_error(self, params: dict) -> None:
        err = params.get("error") or (params.get("event") or {}).get("error") or params.get("message")
        await self._emit(ErrorEvent(message=_error_text(err, str(params))))

    _NOTIFICATIONS = {
        "turn/started": _on_turn_started,
        "turn/completed": _on_turn_completed,
        "turn/failed": _on_turn_failed,
        "thread/tokenUsage/updated": _on_token_usage,
        "item/started": _on_item_started,
        "item/completed": _on_item_completed,
        "item/agentMessage/delta": _on_agent_delta,
        "item/commandExecution/outputDelta": _on_output_delta,
        "item/commandExecution/requestApproval": _on_command_approval,
        "item/fileChange/requestApproval": _on_file_approval,
        "error": _on_error,
        "codex/event/error": _on_error,
    }

    # -- Reverse RPC -----------------------------------------------------------

    async def _handle_server_request(self, req: RpcRequest) -> None:
        if req.method in (
            "item/commandExecution/requestApproval",
            "item/fileChange/requestApproval",
        ):
            tool_name = "command_execution" if "commandExecution" in req.method else "file_change"
            request_id = str(uuid.uuid4())
            self._approvals[request_id] = ("rpc", req.id)
            await self._emit_permission(request_id, tool_name, req.params)
        elif req.method == "item/tool/call":
            tool = req.params.get("tool") or "unknown"
            await self._peer.respond(req.id, {
                "success": False,
                "contentItems": [{
                    "type": "inputText",
                    "text": f"Dynamic tool '{tool}' is not supported by this client.",
                }],
            })
        elif req.method == "item/tool/requestUserInput":
            await self._peer.respond(req.id, {"answers": {}})
        else:
            logger.info("[%s] Unsupported server request: %s", self._tag, req.method)
            await self._peer.respond_error(
                req.id, METHOD_NOT_FOUND, f"Method not supported: {req.method}",
            )

    # -- Commands --------------------------------------------------------------

    async def send_prompt(self, text: str, session_id: str | None = None) -> None:
        if not self.ready or not self._thread_id:
            await self._emit(ErrorEvent(message="Codex not ready"))
            return
        self._turn_active = True
        self._turn_done.clear()
        await self._emit(StatusEvent(status="running"))
        try:
            result = await self._peer.request("turn/start", {
                "threadId": self._thread_id,
                "input": [{"type": "text", "text": text}],
                "approvalPolicy": self._approval_policy,
            })
        except (RpcError, DriverError) as e:
            logger.error("[%s] turn/start failed: %s", self._tag, e)
            self._turn_active = False
            self._turn_done.set()
            await self._emit(ErrorEvent(message=str(e)))
            return
        turn = (result or {}).get("turn") or {}
        if turn.get("id") and not self._turn_id:
            self._turn_id = turn["id"]

    async def respond_permission(
        self, request_id: str, behavior: str, updated_input: dict | None = None,
    ) -> bool:
        entry = self._approvals.pop(request_id, None)
        if entry is None:
            logger.debug("[%s] No approval found for %s", self._tag, request_id)
            return False
        decision = "accept" if behavior == "allow" else "decline"
        kind, ref = entry
        try:
            if kind == "rpc":
                await self._peer.respond(ref, {"decision": decision})
            else:
                # Awaiting the reply here would block the reader that delivers it
                self._spawn_task(self._legacy_approve(ref, decision))
        except DriverError as e:
            logger.warning("[%s] Approval reply dropped: %s", self._tag, e)
        return True

    async def _legacy_approve(self, item_id: Any, decision: str) -> None:
        try:
            await self._peer.request("item/approve", {"itemId": item_id, "decision": decision})
        except (RpcError, DriverError) as e:
            logger.error("[%s] item/approve failed: %s", self._tag, e)

    async def interrupt(self) -> bool:
        if not self._turn_active or not self._thread_id:
            return True
        if not self._turn_id:
            logger.warning("[%s] Interrupt requested before turn id is known", self._tag)
            return False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._interrupt_timeout
        try:
            await self._peer.request(
                "turn/interrupt",
                {"threadId": self._thread_id, "turnId": self._turn_id},
                timeout=self._interrupt_timeout,
            )
        except (RpcError, DriverError) as e:
            logger.error("[%s] Interrupt failed: %s", self._tag, e)
            return False
        # turn/interrupt is acknowledged before turn/completed arrives
        try:
            await asyncio.wait_for(
                self._turn_done.wait(), timeout=max(deadline - loop.time(), 0.01),
            )
        except asyncio.TimeoutError:
            logger.warning("[%s] Turn still active after interrupt", self._tag)
            return False
        self._approvals.clear()
        return True

    async def set_permission_mode(self, mode: str) -> None:
        self._permission_mode = normalize_permission_mode(mode)
        self._approval_policy = _APPROVAL_POLICY[self._permission_mode]
        logger.info("[%s] Approval policy -> %s", self._tag, self._approval_policy)
