"""Agent session: one logical agent, its history, permissions and cost counters.

The session owns all per-agent state. Its driver reports normalized events
through ``handle_event``; every state change is announced through the
broadcast callback as ``(agent_id, type, data)``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agentbridge.adapters.base import COST_CUMULATIVE, COST_PER_TURN
from agentbridge.core import git_worktree
from agentbridge.core.events import (
    DriverEvent,
    ErrorEvent,
    EventHandler,
    ExitEvent,
    InitEvent,
    MessageEvent,
    PermissionEvent,
    ResultEvent,
    StatusEvent,
    StreamEvent,
    ToolProgressEvent,
    ToolResultsEvent,
)
from agentbridge.ports.driver import BYPASS_MODE, DEFAULT_MODE

if TYPE_CHECKING:
    from agentbridge.core.agent_log import AgentLog
    from agentbridge.ports.driver import AgentDriver
    from agentbridge.storage.transcripts import Transcript

logger = logging.getLogger(__name__)

BroadcastFn = Callable[[str, str, dict], None]
DriverFactory = Callable[[EventHandler], "AgentDriver"]
BranchLookup = Callable[[str | None], Awaitable[str | None]]

# A prompt is refused in these states: at most one turn in flight
_BUSY_STATES = ("starting", "running", "awaiting_permission", "exited")


@dataclass
class HistoryMessage:
    id: str
    type: str  # user | assistant
    content: Any  # str for user, list[dict] blocks for assistant
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass
class PendingPermission:
    request_id: str
    tool_name: str
    tool_input: dict
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_dict(self) -> dict:
        return {
            "requestId": self.request_id,
            "toolName": self.tool_name,
            "toolInput": self.tool_input,
            "timestamp": self.timestamp,
        }


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            c["text"] for c in content
            if isinstance(c, dict) and c.get("type") == "text" and c.get("text")
        )
    return ""


class AgentSession:
    MAX_HISTORY = 200
    MAX_LAST_OUTPUT = 2000

    def __init__(
        self,
        agent_id: str,
        agent_type: str,
        driver_factory: DriverFactory,
        model: str | None = None,
        broadcast: BroadcastFn | None = None,
        agent_log: AgentLog | None = None,
        branch_lookup: BranchLookup = git_worktree.current_branch,
    ) -> None:
        self.id = agent_id
        self.type = agent_type
        self.status = "starting"
        self.session_id: str | None = None
        self.session_name: str | None = None
        self.model = model
        self.tools: list = []
        self.cwd: str | None = None
        self.project_name: str | None = None
        self.git_branch: str | None = None
        self.total_cost = 0.0
        self.output_tokens = 0
        self.context_used_percent = 0
        self.last_output = ""
        self.created_at = time.time() * 1000
        self.auto_approve = False
        self.history_messages: deque[HistoryMessage] = deque(maxlen=self.MAX_HISTORY)
        self.pending_permissions: dict[str, PendingPermission] = {}

        self._broadcast_fn = broadcast
        self._agent_log = agent_log
        self._branch_lookup = branch_lookup
        self._initialized = False
        self._current_stream = ""
        self._history_seq = 0
        self._tasks: set[asyncio.Task] = set()
        self.driver: AgentDriver = driver_factory(self.handle_event)

    # -- Plumbing --------------------------------------------------------------

    def set_broadcast(self, fn: BroadcastFn | None) -> None:
        self._broadcast_fn = fn

    def _broadcast(self, msg_type: str, **data: Any) -> None:
        if self._broadcast_fn is None:
            return
        try:
            self._broadcast_fn(self.id, msg_type, {"agentId": self.id, **data})
        except Exception:
            logger.exception("[%s] Broadcast of %s failed", self.id[:8], msg_type)

    def _lifecycle(self, msg: str, *args: Any) -> None:
        logger.info("[%s] " + msg, self.id[:8], *args)
        if self._agent_log is not None:
            self._agent_log.event(msg, *args)

    def _set_status(self, status: str, **extra: Any) -> None:
        if status == "connected" and self._initialized:
            status = "idle"
        self.status = status
        self._broadcast("agentUpdated", status=status, **extra)

    def _next_history_id(self, suffix: str) -> str:
        self._history_seq += 1
        return f"h-{self._history_seq}-{suffix}"

    def _append_history(self, msg_type: str, content: Any) -> HistoryMessage:
        entry = HistoryMessage(id=self._next_history_id(msg_type), type=msg_type, content=content)
        self.history_messages.append(entry)
        return entry

    def _update_last_output(self, text: str) -> None:
        self.last_output = (self.last_output + text)[-self.MAX_LAST_OUTPUT:]

    def _spawn_task(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def _cost_policy(self) -> str:
        return getattr(self.driver, "COST_POLICY", COST_CUMULATIVE)

    @property
    def _context_window(self) -> int:
        return getattr(self.driver, "CONTEXT_WINDOW", 200_000)

    # -- Driver events ---------------------------------------------------------

    async def handle_event(self, event: DriverEvent) -> None:
        """Single entry point for everything the driver reports."""
        handler = self._EVENT_HANDLERS.get(type(event))
        if handler is None:
            logger.warning("[%s] Unknown driver event: %r", self.id[:8], event)
            return
        await handler(self, event)

    async def _on_init(self, event: InitEvent) -> None:
        if event.session_id:
            self.session_id = event.session_id
        if event.model:
            self.model = event.model
        if event.tools:
            self.tools = list(event.tools)
        if event.cwd:
            self.cwd = event.cwd
            self.project_name = event.project_name or Path(event.cwd).name
        if event.git_branch is not None:
            self.git_branch = event.git_branch
        if event.project_name:
            self.project_name = event.project_name
        self._initialized = True
        # A late init must not demote a turn that has already started
        if self.status in ("starting", "connected"):
            self.status = "idle"

        self._lifecycle(
            "Init: type=%s model=%s project=%s branch=%s",
            self.type, self.model, self.project_name or "?", self.git_branch or "?",
        )
        self._broadcast(
            "agentUpdated",
            sessionId=self.session_id,
            model=self.model,
            tools=self.tools,
            cwd=self.cwd,
            gitBranch=self.git_branch,
            projectName=self.project_name,
            status=self.status,
        )

    async def _on_stream(self, event: StreamEvent) -> None:
        if not event.text:
            return
        self._current_stream += event.text
        self._update_last_output(event.text)
        self._broadcast("streamChunk", text=event.text)

    async def _on_message(self, event: MessageEvent) -> None:
        streamed, self._current_stream = self._current_stream, ""
        content = list(event.content or [])
        # Streamed text already reached last_output chunk by chunk
        for block in content if not streamed else ():
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                self._update_last_output(block["text"])
        self._append_history("assistant", content)
        self._broadcast("assistantMessage", content=content)

    async def _on_result(self, event: ResultEvent) -> None:
        if self._current_stream:
            # Streamed text that no final message covered becomes one message
            await self._on_message(MessageEvent(
                content=[{"type": "text", "text": self._current_stream}],
            ))

        cost = event.cost or 0.0
        if cost > 0:
            if self._cost_policy == COST_PER_TURN:
                self.total_cost += cost
            else:
                self.total_cost = max(self.total_cost, cost)
        usage = event.usage or {}
        self.output_tokens += int(usage.get("output_tokens") or 0)
        if usage.get("input_tokens") is not None:
            total_input = int(usage.get("input_tokens") or 0) + int(
                usage.get("cache_read_input_tokens") or 0
            )
            self.context_used_percent = max(
                0, min(100, round(total_input / self._context_window * 100)),
            )

        if event.session_id and event.session_id != self.session_id:
            self.session_id = event.session_id
            self._broadcast("agentUpdated", sessionId=self.session_id)

        if self.status != "exited":
            self._set_status("idle")
        self._lifecycle(
            "Turn finished: cost=%.4f total=%.4f error=%s", cost, self.total_cost, event.is_error,
        )
        self._broadcast(
            "agentResult",
            cost=cost,
            totalCost=self.total_cost,
            usage=usage,
            duration=event.duration,
            isError=event.is_error,
            outputTokens=self.output_tokens,
            contextUsedPercent=self.context_used_percent,
        )
        self._spawn_task(self.refresh_branch())

    async def _on_permission(self, event: PermissionEvent) -> None:
        tool_input = event.tool_input or {}
        if self.auto_approve:
            # Not every backend can change approval policy mid-turn
            await self.driver.respond_permission(event.request_id, "allow", tool_input)
            self._set_status("running")
            return

        self.pending_permissions[event.request_id] = PendingPermission(
            request_id=event.request_id,
            tool_name=event.tool_name,
            tool_input=tool_input,
        )
        self._set_status("awaiting_permission")
        self._broadcast(
            "permissionRequest",
            requestId=event.request_id,
            toolName=event.tool_name,
            toolInput=tool_input,
        )

    async def _on_tool_progress(self, event: ToolProgressEvent) -> None:
        self._broadcast("toolProgress", toolName=event.tool_name, elapsed=event.elapsed)

    async def _on_tool_results(self, event: ToolResultsEvent) -> None:
        if not isinstance(event.content, list):
            return
        last_assistant = next(
            (m for m in reversed(self.history_messages) if m.type == "assistant"), None,
        )
        if last_assistant is None or not isinstance(last_assistant.content, list):
            return
        merged = []
        for block in event.content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            if not block.get("tool_use_id"):
                continue
            entry = {
                "type": "tool_result",
                "toolUseId": block["tool_use_id"],
                "content": _tool_result_text(block.get("content")),
            }
            last_assistant.content.append(entry)
            merged.append(entry)
        if merged:
            self._broadcast("toolResults", results=merged)

    async def _on_status(self, event: StatusEvent) -> None:
        if self.status == "exited":
            return
        status = event.status
        if status == "running" and self.pending_permissions:
            status = "awaiting_permission"
        if status != self.status:
            self._set_status(status)

    async def _on_error(self, event: ErrorEvent) -> None:
        logger.error("[%s] Driver error: %s", self.id[:8], event.message)
        if self._agent_log is not None:
            self._agent_log.event("Driver error: %s", event.message, level=logging.ERROR)
        if self.status != "exited":
            self._set_status("error", error=event.message)

    async def _on_exit(self, event: ExitEvent) -> None:
        self._lifecycle("Driver exited: code=%s signal=%s", event.code, event.signal)
        self.pending_permissions.clear()
        self._current_stream = ""
        self._set_status("exited", exitCode=event.code, exitSignal=event.signal)

    _EVENT_HANDLERS: dict[type, Callable[[AgentSession, Any], Awaitable[None]]] = {
        InitEvent: _on_init,
        StreamEvent: _on_stream,
        MessageEvent: _on_message,
        ResultEvent: _on_result,
        PermissionEvent: _on_permission,
        ToolProgressEvent: _on_tool_progress,
        ToolResultsEvent: _on_tool_results,
        StatusEvent: _on_status,
        ErrorEvent: _on_error,
        ExitEvent: _on_exit,
    }

    # -- Commands (transport-agnostic) -----------------------------------------

    async def spawn(self, resume_session_id: str | None = None, cwd: str | None = None) -> None:
        await self.prepare(cwd)
        await self.start(resume_session_id)

    async def prepare(self, cwd: str | None) -> None:
        """Record cwd, project and branch so the first snapshot shows them."""
        if not cwd:
            return
        self.cwd = cwd
        self.project_name = Path(cwd).name
        self.git_branch = await self._branch_lookup(cwd)

    async def start(self, resume_session_id: str | None = None) -> None:
        try:
            await self.driver.start(
                self.id, cwd=self.cwd, resume_session_id=resume_session_id, model=self.model,
            )
        except Exception as e:
            logger.exception("[%s] Driver start failed", self.id[:8])
            self._set_status("error", error=str(e))

    @property
    def accepts_prompts(self) -> bool:
        return self.status not in _BUSY_STATES

    async def send_prompt(self, text: str) -> bool:
        if not self.accepts_prompts:
            logger.info("[%s] Prompt refused while %s", self.id[:8], self.status)
            return False

        if not self.session_name:
            self.session_name = text[:60] + ("..." if len(text) > 60 else "")
            self._broadcast("agentUpdated", sessionName=self.session_name)

        self._append_history("user", text)
        self._set_status("running")
        self._spawn_task(self.refresh_branch())
        await self.driver.send_prompt(text, self.session_id)
        return True

    async def respond_to_permission(
        self, request_id: str, behavior: str, updated_input: dict | None = None,
    ) -> bool:
        pending = self.pending_permissions.pop(request_id, None)
        if pending is None:
            return False
        if updated_input is None and behavior == "allow":
            updated_input = pending.tool_input
        accepted = await self.driver.respond_permission(request_id, behavior, updated_input)
        if not accepted:
            logger.warning("[%s] Driver no longer tracks permission %s", self.id[:8], request_id)
        if not self.pending_permissions and self.status == "awaiting_permission":
            self._set_status("running")
        return True

    async def interrupt(self) -> bool:
        if self.status not in ("running", "awaiting_permission"):
            return False
        try:
            acknowledged = await self.driver.interrupt()
        except Exception as e:
            logger.exception("[%s] Interrupt failed", self.id[:8])
            self._set_status("error", error=str(e))
            return False
        if not acknowledged:
            self._set_status("error", error="Interrupt was not acknowledged")
            return False
        self.pending_permissions.clear()
        self._current_stream = ""
        if self.status != "exited":
            self._set_status("idle")
        self._lifecycle("Interrupted")
        return True

    async def set_permission_mode(self, mode: str) -> None:
        await self.driver.set_permission_mode(mode)

    async def set_auto_approve(self, enabled: bool) -> None:
        self.auto_approve = enabled
        await self.set_permission_mode(BYPASS_MODE if enabled else DEFAULT_MODE)
        if enabled:
            for request_id in list(self.pending_permissions):
                await self.respond_to_permission(request_id, "allow")
        self._broadcast("agentUpdated", autoApprove=enabled)

    async def refresh_branch(self) -> None:
        """Re-read the checked-out branch and announce it if it moved."""
        if not self.cwd:
            return
        try:
            branch = await self._branch_lookup(self.cwd)
        except Exception:
            logger.debug("[%s] Branch lookup failed", self.id[:8], exc_info=True)
            return
        if branch and branch != self.git_branch:
            self.git_branch = branch
            self._lifecycle("Branch changed to: %s", branch)
            self._broadcast("agentUpdated", gitBranch=branch)

    def load_transcript(self, transcript: Transcript) -> None:
        if transcript.model:
            self.model = transcript.model
        if transcript.last_output:
            self.last_output = transcript.last_output
        if transcript.messages:
            self.history_messages.clear()
            for msg in transcript.messages[-self.MAX_HISTORY:]:
                self.history_messages.append(HistoryMessage(
                    id=self._next_history_id(msg["type"]),
                    type=msg["type"],
                    content=msg["content"],
                    timestamp=msg.get("timestamp") or self.created_at,
                ))
        self._initialized = True

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "sessionId": self.session_id,
            "sessionName": self.session_name or "New Agent",
            "model": self.model,
            "cwd": self.cwd,
            "gitBranch": self.git_branch,
            "projectName": self.project_name,
            "totalCost": self.total_cost,
            "contextUsedPercent": self.context_used_percent,
            "outputTokens": self.output_tokens,
            "lastOutput": self.last_output,
            "pendingPermissions": [p.to_dict() for p in self.pending_permissions.values()],
            "createdAt": self.created_at,
            "autoApprove": self.auto_approve,
        }

    def history(self) -> dict:
        return {
            "messages": [m.to_dict() for m in self.history_messages],
            "pendingPermissions": [p.to_dict() for p in self.pending_permissions.values()],
        }

    async def destroy(self) -> None:
        self._lifecycle("Destroying")
        self.pending_permissions.clear()
        await self.driver.stop()
        for task in list(self._tasks):
            task.cancel()
