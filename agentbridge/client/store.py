"""Client-side agent state fed by server broadcasts.

``ClientStore.handle(msg)`` is a reducer over the server messages. Two
batching rules keep redraws cheap:

- Stream chunks are accumulated per agent and flushed together by one shared
  timer (50 ms). A final assistant message first flushes that agent's pending
  text so streamed deltas always precede it.
- After ``connected``, the history replies of all listed agents are held back
  and applied together, either when all of them arrived or after a 3 s safety
  timeout. A late second history for an agent only refreshes permissions.

Must be driven from a running event loop (the timers use ``call_later``).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

STREAM_FLUSH_INTERVAL = 0.05
HISTORY_BATCH_TIMEOUT = 3.0
LAST_OUTPUT_CHARS = 500

Listener = Callable[[str, str, Any], None]  # (kind, agent_id, payload)


@dataclass
class AgentView:
    id: str
    type: str = "claude"
    status: str = "starting"
    session_id: str | None = None
    session_name: str = "New Agent"
    model: str | None = None
    tools: list = field(default_factory=list)
    cwd: str | None = None
    git_branch: str | None = None
    project_name: str | None = None
    total_cost: float = 0.0
    context_used_percent: int = 0
    output_tokens: int = 0
    last_output: str = ""
    created_at: float = 0
    auto_approve: bool = False
    messages: list[dict] = field(default_factory=list)
    pending_permissions: dict[str, dict] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snap: dict) -> AgentView:
        return cls(
            id=snap["id"],
            type=snap.get("type") or "claude",
            status=snap.get("status") or "starting",
            session_id=snap.get("sessionId"),
            session_name=snap.get("sessionName") or "New Agent",
            model=snap.get("model"),
            cwd=snap.get("cwd"),
            git_branch=snap.get("gitBranch"),
            project_name=snap.get("projectName"),
            total_cost=snap.get("totalCost") or 0.0,
            context_used_percent=snap.get("contextUsedPercent") or 0,
            output_tokens=snap.get("outputTokens") or 0,
            last_output=snap.get("lastOutput") or "",
            created_at=snap.get("createdAt") or 0,
            auto_approve=bool(snap.get("autoApprove")),
            pending_permissions=_permission_map(snap.get("pendingPermissions")),
        )

    def merge_snapshot(self, snap: dict) -> None:
        """Reconnect: server counters win, locally known details are kept."""
        self.status = snap.get("status") or self.status
        self.model = snap.get("model") or self.model
        self.cwd = snap.get("cwd") or self.cwd
        self.git_branch = snap.get("gitBranch") or self.git_branch
        self.project_name = snap.get("projectName") or self.project_name
        self.total_cost = snap.get("totalCost") or 0.0
        self.context_used_percent = snap.get("contextUsedPercent") or 0
        self.output_tokens = snap.get("outputTokens") or 0
        self.last_output = snap.get("lastOutput") or self.last_output
        self.auto_approve = bool(snap.get("autoApprove"))
        server_perms = _permission_map(snap.get("pendingPermissions"))
        if server_perms:
            self.pending_permissions = server_perms


def _permission_map(perms: Any) -> dict[str, dict]:
    if not isinstance(perms, list):
        return {}
    return {p["requestId"]: p for p in perms if isinstance(p, dict) and p.get("requestId")}


_SESSION_FIELDS = {
    "sessionId": "session_id",
    "model": "model",
    "tools": "tools",
    "sessionName": "session_name",
    "cwd": "cwd",
    "gitBranch": "git_branch",
    "projectName": "project_name",
    "autoApprove": "auto_approve",
}


class ClientStore:
    def __init__(
        self,
        listener: Listener | None = None,
        stream_interval: float = STREAM_FLUSH_INTERVAL,
        history_timeout: float = HISTORY_BATCH_TIMEOUT,
    ) -> None:
        self.agents: dict[str, AgentView] = {}
        self._listener = listener
        self._stream_interval = stream_interval
        self._history_timeout = history_timeout
        self._msg_seq = 0

        self._pending_streams: dict[str, str] = {}
        self._flush_handle: asyncio.TimerHandle | None = None

        self._expected_histories: int | None = None
        self._history_batch: dict[str, dict] = {}
        self._history_handle: asyncio.TimerHandle | None = None
        self._loaded_history: set[str] = set()

    # -- Plumbing --------------------------------------------------------------

    def _notify(self, kind: str, agent_id: str, payload: Any = None) -> None:
        if self._listener is None:
            return
        try:
            self._listener(kind, agent_id, payload)
        except Exception:
            logger.exception("Store listener failed on %s", kind)

    def _next_id(self, prefix: str) -> str:
        self._msg_seq += 1
        return f"c-{self._msg_seq}-{prefix}"

    @property
    def pending_stream_agents(self) -> set[str]:
        return set(self._pending_streams)

    @property
    def history_batch_pending(self) -> bool:
        return self._expected_histories is not None

    def handle(self, msg: dict) -> None:
        handler = self._HANDLERS.get(msg.get("type"))
        if handler is not None:
            handler(self, msg)

    # -- Stream batching -------------------------------------------------------

    def _on_stream_chunk(self, msg: dict) -> None:
        agent_id, text = msg.get("agentId"), msg.get("text")
        if not agent_id or not text:
            return
        self._pending_streams[agent_id] = self._pending_streams.get(agent_id, "") + text
        if self._flush_handle is None:
            loop = asyncio.get_running_loop()
            self._flush_handle = loop.call_later(self._stream_interval, self.flush_streams)

    def flush_streams(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        pending, self._pending_streams = self._pending_streams, {}
        for agent_id, text in pending.items():
            self._append_stream(agent_id, text)

    def _append_stream(self, agent_id: str, text: str) -> None:
        view = self.agents.get(agent_id)
        if view is None:
            return
        last = view.messages[-1] if view.messages else None
        if last and last["type"] == "assistant" and isinstance(last["content"], str):
            last["content"] += text
        else:
            view.messages.append({
                "id": self._next_id("stream"),
                "type": "assistant",
                "content": text,
            })
        view.last_output = (view.last_output + text)[-LAST_OUTPUT_CHARS:]
        self._notify("stream", agent_id, text)

    def _on_assistant_message(self, msg: dict) -> None:
        agent_id, content = msg.get("agentId"), msg.get("content")
        if not agent_id or not content:
            return
        pending = self._pending_streams.pop(agent_id, None)
        if pending:
            self._append_stream(agent_id, pending)
        view = self.agents.get(agent_id)
        if view is None:
            return
        message = {
            "id": self._next_id("assistant"),
            "type": "assistant",
            "content": content,
            "timestamp": msg.get("ts"),
        }
        view.messages.append(message)
        self._notify("message", agent_id, message)

    # -- History batching ------------------------------------------------------

    def _on_agent_history(self, msg: dict) -> None:
        agent_id = msg.get("agentId")
        if not agent_id or not isinstance(msg.get("messages"), list):
            return
        if agent_id in self._loaded_history:
            self._set_permissions(agent_id, msg.get("pendingPermissions"))
            return
        if self._expected_histories is None:
            self._apply_history(agent_id, msg)
            return

        self._history_batch[agent_id] = msg
        if len(self._history_batch) >= self._expected_histories:
            self.flush_history_batch()
        elif self._history_handle is None:
            loop = asyncio.get_running_loop()
            self._history_handle = loop.call_later(self._history_timeout, self.flush_history_batch)

    def flush_history_batch(self) -> None:
        if self._history_handle is not None:
            self._history_handle.cancel()
            self._history_handle = None
        batch, self._history_batch = self._history_batch, {}
        self._expected_histories = None
        for agent_id, msg in batch.items():
            self._apply_history(agent_id, msg)
        if batch:
            self._notify("historyLoaded", "", sorted(batch))

    def _apply_history(self, agent_id: str, msg: dict) -> None:
        view = self.agents.get(agent_id)
        if view is None:
            return
        history = [
            {**m, "id": m.get("id") or self._next_id("history")}
            for m in msg["messages"]
            if isinstance(m, dict) and not (m.get("type") == "user" and not isinstance(m.get("content"), str))
        ]
        # Messages that arrived live while the history was in flight are newer
        view.messages = history + view.messages
        self._loaded_history.add(agent_id)
        self._set_permissions(agent_id, msg.get("pendingPermissions"))
        self._notify("history", agent_id, len(history))

    def _set_permissions(self, agent_id: str, perms: Any) -> None:
        view = self.agents.get(agent_id)
        if view is None or not isinstance(perms, list):
            return
        view.pending_permissions = _permission_map(perms)
        if view.pending_permissions:
            view.status = "awaiting_permission"

    # -- Agent list ------------------------------------------------------------

    def _set_agents(self, snapshots: list) -> None:
        agents: dict[str, AgentView] = {}
        for snap in snapshots:
            if not isinstance(snap, dict) or not snap.get("id"):
                continue
            existing = self.agents.get(snap["id"])
            if existing is not None:
                existing.merge_snapshot(snap)
                agents[snap["id"]] = existing
            else:
                agents[snap["id"]] = AgentView.from_snapshot(snap)
        self.agents = agents

    def _on_connected(self, msg: dict) -> None:
        snapshots = msg.get("agents") or []
        self._set_agents(snapshots)
        if self._history_handle is not None:
            self._history_handle.cancel()
            self._history_handle = None
        self._history_batch = {}
        self._expected_histories = len(self.agents) or None
        self._notify("connected", "", list(self.agents))

    def _on_agent_list(self, msg: dict) -> None:
        self._set_agents(msg.get("agents") or [])

    def _on_agent_created(self, msg: dict) -> None:
        snap = msg.get("agent")
        if isinstance(snap, dict) and snap.get("id"):
            self.agents[snap["id"]] = AgentView.from_snapshot(snap)
            self._notify("created", snap["id"], snap)

    def _on_agent_destroyed(self, msg: dict) -> None:
        agent_id = msg.get("agentId")
        if agent_id and self.agents.pop(agent_id, None) is not None:
            self._pending_streams.pop(agent_id, None)
            self._loaded_history.discard(agent_id)
            self._notify("destroyed", agent_id)

    def _on_agent_updated(self, msg: dict) -> None:
        view = self.agents.get(msg.get("agentId") or "")
        if view is None:
            return
        if msg.get("status"):
            view.status = msg["status"]
        for wire_name, attr in _SESSION_FIELDS.items():
            if wire_name in msg:
                setattr(view, attr, msg[wire_name])
        self._notify("updated", view.id, msg)

    # -- Turn events -----------------------------------------------------------

    def _on_user_message(self, msg: dict) -> None:
        view = self.agents.get(msg.get("agentId") or "")
        if view is None or not msg.get("content"):
            return
        view.messages.append({
            "id": self._next_id("user"),
            "type": "user",
            "content": msg["content"],
            "timestamp": msg.get("ts"),
        })

    def _on_permission_request(self, msg: dict) -> None:
        view = self.agents.get(msg.get("agentId") or "")
        if view is None or not msg.get("requestId"):
            return
        perm = {
            "requestId": msg["requestId"],
            "toolName": msg.get("toolName") or "unknown",
            "toolInput": msg.get("toolInput") or {},
            "timestamp": msg.get("ts"),
        }
        view.pending_permissions[perm["requestId"]] = perm
        view.status = "awaiting_permission"
        self._notify("permission", view.id, perm)

    def _on_agent_result(self, msg: dict) -> None:
        view = self.agents.get(msg.get("agentId") or "")
        if view is None:
            return
        self.flush_streams()
        view.total_cost = msg.get("totalCost") or msg.get("cost") or 0.0
        view.output_tokens = msg.get("outputTokens") or 0
        view.context_used_percent = msg.get("contextUsedPercent") or 0
        view.status = "idle"
        self._notify("result", view.id, msg)

    def _on_tool_results(self, msg: dict) -> None:
        view = self.agents.get(msg.get("agentId") or "")
        if view is None or not isinstance(msg.get("results"), list):
            return
        for message in reversed(view.messages):
            if message["type"] == "assistant" and isinstance(message["content"], list):
                message["content"].extend(msg["results"])
                break

    def _on_tool_progress(self, msg: dict) -> None:
        if msg.get("agentId"):
            self._notify("toolProgress", msg["agentId"], msg)

    def _on_error(self, msg: dict) -> None:
        self._notify("error", msg.get("agentId") or "", msg.get("error"))

    _HANDLERS: dict[str, Callable[[ClientStore, dict], None]] = {
        "connected": _on_connected,
        "agentList": _on_agent_list,
        "agentCreated": _on_agent_created,
        "agentDestroyed": _on_agent_destroyed,
        "agentUpdated": _on_agent_updated,
        "userMessage": _on_user_message,
        "streamChunk": _on_stream_chunk,
        "assistantMessage": _on_assistant_message,
        "permissionRequest": _on_permission_request,
        "agentResult": _on_agent_result,
        "toolResults": _on_tool_results,
        "toolProgress": _on_tool_progress,
        "agentHistory": _on_agent_history,
        "error": _on_error,
    }
