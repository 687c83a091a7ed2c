from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from agentbridge.adapters.base import COST_CUMULATIVE, COST_PER_TURN
from agentbridge.core.events import (
    ErrorEvent,
    ExitEvent,
    InitEvent,
    MessageEvent,
    PermissionEvent,
    ResultEvent,
    StatusEvent,
    StreamEvent,
    ToolResultsEvent,
)
from agentbridge.core.session import AgentSession
from agentbridge.storage.transcripts import Transcript


class FakeDriver:
    agent_type = "fake"
    CONTEXT_WINDOW = 1000
    COST_POLICY = COST_CUMULATIVE

    def __init__(self, on_event):
        self.emit = on_event
        self.session_id = None
        self.ready = True
        self.start = AsyncMock()
        self.send_prompt = AsyncMock()
        self.respond_permission = AsyncMock(return_value=True)
        self.interrupt = AsyncMock(return_value=True)
        self.set_permission_mode = AsyncMock()
        self.stop = AsyncMock()


def _make_session(cost_policy: str = COST_CUMULATIVE, status: str = "idle"):
    sent: list[tuple[str, dict]] = []

    def broadcast(agent_id, msg_type, data):
        sent.append((msg_type, data))

    def factory(on_event):
        driver = FakeDriver(on_event)
        driver.COST_POLICY = cost_policy
        return driver

    session = AgentSession(
        "agent-1234abcd", "fake", factory,
        broadcast=broadcast,
        branch_lookup=AsyncMock(return_value="main"),
    )
    session.status = status
    return session, sent


def _types(sent) -> list[str]:
    return [t for t, _ in sent]


class TestTurn:
    async def test_prompt_stream_result(self):
        session, sent = _make_session()
        assert await session.send_prompt("hi") is True
        session.driver.send_prompt.assert_awaited_once_with("hi", None)

        await session.handle_event(StreamEvent(text="He"))
        await session.handle_event(StreamEvent(text="llo"))
        await session.handle_event(ResultEvent(cost=0.01, usage={"output_tokens": 3}))

        assert [m.type for m in session.history_messages] == ["user", "assistant"]
        assert session.history_messages[-1].content == [{"type": "text", "text": "Hello"}]
        assert _types(sent).count("assistantMessage") == 1
        assert [d["text"] for t, d in sent if t == "streamChunk"] == ["He", "llo"]
        result = next(d for t, d in sent if t == "agentResult")
        assert result["totalCost"] == 0.01
        assert result["outputTokens"] == 3
        assert session.status == "idle"
        assert session.last_output == "Hello"

    async def test_first_prompt_names_session(self):
        session, sent = _make_session()
        await session.send_prompt("x" * 80)
        assert session.session_name == "x" * 60 + "..."
        assert ("agentUpdated", {"agentId": session.id, "sessionName": session.session_name}) in sent
        session.status = "idle"
        await session.send_prompt("second")
        assert session.session_name.startswith("xxx")

    async def test_final_message_replaces_stream(self):
        session, sent = _make_session()
        await session.handle_event(StreamEvent(text="draft"))
        await session.handle_event(MessageEvent(content=[{"type": "text", "text": "final"}]))
        await session.handle_event(ResultEvent())
        assert _types(sent).count("assistantMessage") == 1
        assert session.history_messages[-1].content[0]["text"] == "final"

    @pytest.mark.parametrize("status", ["starting", "running", "awaiting_permission", "exited"])
    async def test_busy_session_refuses_prompt(self, status):
        session, sent = _make_session(status=status)
        assert await session.send_prompt("hi") is False
        session.driver.send_prompt.assert_not_awaited()
        assert len(session.history_messages) == 0


class TestCost:
    async def test_cumulative_cost_is_monotonic(self):
        session, _ = _make_session(COST_CUMULATIVE)
        await session.handle_event(ResultEvent(cost=0.05))
        await session.handle_event(ResultEvent(cost=0.08))
        # A resumed CLI may restart its running total
        await session.handle_event(ResultEvent(cost=0.01))
        await session.handle_event(ResultEvent(cost=0))
        assert session.total_cost == 0.08

    async def test_per_turn_cost_accumulates(self):
        session, _ = _make_session(COST_PER_TURN)
        await session.handle_event(ResultEvent(cost=0.05))
        await session.handle_event(ResultEvent(cost=0.03))
        assert session.total_cost == pytest.approx(0.08)

    async def test_context_percent(self):
        session, _ = _make_session()
        await session.handle_event(ResultEvent(usage={"input_tokens": 400, "cache_read_input_tokens": 100}))
        assert session.context_used_percent == 50
        await session.handle_event(ResultEvent(usage={"input_tokens": 5000}))
        assert session.context_used_percent == 100

    async def test_result_carries_new_session_id(self):
        session, sent = _make_session()
        await session.handle_event(ResultEvent(session_id="s-9"))
        assert session.session_id == "s-9"
        assert ("agentUpdated", {"agentId": session.id, "sessionId": "s-9"}) in sent


class TestPermissions:
    async def test_request_and_answer(self):
        session, sent = _make_session(status="running")
        await session.handle_event(PermissionEvent("r1", "Bash", {"command": "ls"}))

        assert session.status == "awaiting_permission"
        request = next(d for t, d in sent if t == "permissionRequest")
        assert request == {"agentId": session.id, "requestId": "r1", "toolName": "Bash", "toolInput": {"command": "ls"}}
        assert session.snapshot()["pendingPermissions"][0]["requestId"] == "r1"

        assert await session.respond_to_permission("r1", "allow") is True
        session.driver.respond_permission.assert_awaited_once_with("r1", "allow", {"command": "ls"})
        assert session.status == "running"
        # Already answered
        assert await session.respond_to_permission("r1", "allow") is False
        assert session.driver.respond_permission.await_count == 1

    async def test_auto_approve_skips_client(self):
        session, sent = _make_session(status="running")
        await session.set_auto_approve(True)
        session.driver.set_permission_mode.assert_awaited_once_with("bypass")

        await session.handle_event(PermissionEvent("r2", "Write", {"file": "a"}))
        session.driver.respond_permission.assert_awaited_once_with("r2", "allow", {"file": "a"})
        assert "permissionRequest" not in _types(sent)
        assert session.pending_permissions == {}
        assert session.status == "running"

    async def test_enabling_auto_approve_answers_pending(self):
        session, _ = _make_session(status="running")
        await session.handle_event(PermissionEvent("r3", "Bash", {}))
        await session.set_auto_approve(True)
        session.driver.respond_permission.assert_awaited_once_with("r3", "allow", {})
        assert session.status == "running"

    async def test_running_status_held_while_permission_pending(self):
        session, _ = _make_session(status="running")
        await session.handle_event(PermissionEvent("r4", "Bash", {}))
        await session.handle_event(StatusEvent(status="running"))
        assert session.status == "awaiting_permission"


class TestInterrupt:
    async def test_interrupt_clears_pending(self):
        session, _ = _make_session(status="running")
        await session.handle_event(PermissionEvent("r1", "Bash", {}))
        await session.handle_event(StreamEvent(text="partial"))

        assert await session.interrupt() is True
        assert session.pending_permissions == {}
        assert session.status == "idle"
        # The aborted turn's partial stream does not leak into the next message
        await session.handle_event(ResultEvent())
        assert len(session.history_messages) == 0

    async def test_interrupt_when_idle_refused(self):
        session, _ = _make_session()
        assert await session.interrupt() is False
        session.driver.interrupt.assert_not_awaited()

    async def test_unacknowledged_interrupt_is_error(self):
        session, sent = _make_session(status="running")
        session.driver.interrupt.return_value = False
        assert await session.interrupt() is False
        assert session.status == "error"


class TestLifecycle:
    async def test_init_promotes_from_starting(self):
        session, sent = _make_session(status="starting")
        await session.handle_event(InitEvent(session_id="s1", model="m", cwd="/w/proj", git_branch="dev"))
        assert session.status == "idle"
        assert session.project_name == "proj"
        update = next(d for t, d in sent if t == "agentUpdated")
        assert update["sessionId"] == "s1"
        assert update["gitBranch"] == "dev"

    async def test_late_init_does_not_demote(self):
        session, _ = _make_session(status="running")
        await session.handle_event(InitEvent(session_id="s1"))
        assert session.status == "running"

    async def test_error_then_exit(self):
        session, sent = _make_session(status="running")
        await session.handle_event(PermissionEvent("r1", "Bash", {}))
        await session.handle_event(ErrorEvent(message="boom"))
        assert session.status == "error"
        await session.handle_event(ExitEvent(code=1))
        assert session.status == "exited"
        assert session.pending_permissions == {}
        assert sent[-1][1]["exitCode"] == 1
        # Nothing revives an exited session
        await session.handle_event(StatusEvent(status="idle"))
        await session.handle_event(ResultEvent())
        assert session.status == "exited"

    async def test_start_failure_sets_error(self):
        session, _ = _make_session(status="starting")
        session.driver.start.side_effect = RuntimeError("no binary")
        await session.start()
        assert session.status == "error"

    async def test_prepare_reads_branch(self):
        session, _ = _make_session(status="starting")
        await session.prepare("/repos/app")
        assert session.cwd == "/repos/app"
        assert session.project_name == "app"
        assert session.git_branch == "main"

    async def test_branch_change_announced(self):
        session, sent = _make_session()
        session.cwd = "/repos/app"
        session.git_branch = "old"
        await session.refresh_branch()
        assert session.git_branch == "main"
        assert ("agentUpdated", {"agentId": session.id, "gitBranch": "main"}) in sent

    async def test_destroy_stops_driver(self):
        session, _ = _make_session()
        await session.destroy()
        session.driver.stop.assert_awaited_once()


class TestHistory:
    async def test_tool_results_merge_into_last_assistant(self):
        session, sent = _make_session()
        await session.handle_event(MessageEvent(content=[{"type": "tool_use", "id": "t1", "name": "Read", "input": {}}]))
        await session.handle_event(ToolResultsEvent(content=[
            {"type": "tool_result", "tool_use_id": "t1", "content": [{"type": "text", "text": "body"}]},
            {"type": "text", "text": "ignored"},
        ]))
        assert session.history_messages[-1].content[-1] == {"type": "tool_result", "toolUseId": "t1", "content": "body"}
        assert next(d for t, d in sent if t == "toolResults")["results"][0]["toolUseId"] == "t1"

    async def test_history_is_capped(self):
        session, _ = _make_session()
        for i in range(AgentSession.MAX_HISTORY + 10):
            await session.handle_event(MessageEvent(content=[{"type": "text", "text": str(i)}]))
        assert len(session.history_messages) == AgentSession.MAX_HISTORY
        assert session.history_messages[0].content[0]["text"] == "10"

    def test_load_transcript(self):
        session, _ = _make_session(status="starting")
        session.load_transcript(Transcript(
            model="sonnet",
            messages=[
                {"type": "user", "content": "hello"},
                {"type": "assistant", "content": [{"type": "text", "text": "hi"}]},
            ],
            last_output="hi",
        ))
        history = session.history()
        assert [m["type"] for m in history["messages"]] == ["user", "assistant"]
        assert session.model == "sonnet"
        assert session.last_output == "hi"

    def test_snapshot_defaults(self):
        session, _ = _make_session()
        snap = session.snapshot()
        assert snap["sessionName"] == "New Agent"
        assert snap["pendingPermissions"] == []
        assert snap["autoApprove"] is False
