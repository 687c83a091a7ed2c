from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from agentbridge.core import git_worktree
from agentbridge.core.events import PermissionEvent


async def _idle_agent(registry, agent_type: str = "claude"):
    session = await registry.create(agent_type)
    session.status = "idle"
    return session


def _error(replies: list[dict]) -> str:
    (reply,) = replies
    assert reply["type"] == "error"
    return reply["error"]


class TestDispatch:
    async def test_ping(self, commands):
        assert await commands.handle({"type": "ping"}) == [{"type": "pong"}]

    async def test_unknown_type(self, commands):
        assert _error(await commands.handle({"type": "launchRocket"})) == "Unknown message type: launchRocket"

    async def test_non_object_message(self, commands):
        assert _error(await commands.handle(["ping"])) == "Unknown message type: None"

    async def test_unexpected_failure_is_reported(self, commands, registry, drivers):
        session = await _idle_agent(registry)
        drivers[0].send_prompt.side_effect = RuntimeError("kaput")
        replies = await commands.handle({"type": "sendMessage", "agentId": session.id, "text": "hi"})
        assert _error(replies) == "sendMessage failed."


class TestAgentCommands:
    async def test_create_agent_broadcasts_only(self, commands, registry, broadcasts, drain_queue):
        assert await commands.handle({"type": "createAgent", "agentType": "opencode"}) == []
        (created,) = drain_queue(broadcasts)
        assert created.type == "agentCreated"
        assert created.data["agent"]["type"] == "opencode"
        assert len(registry) == 1

    async def test_create_agent_errors(self, commands):
        assert "Unknown agent type" in _error(await commands.handle({"type": "createAgent", "agentType": "nope"}))
        assert _error(await commands.handle({
            "type": "createAgent", "projectId": "missing",
        })) == "Project not found"

    async def test_destroy_agent(self, commands, registry):
        session = await registry.create("claude")
        assert await commands.handle({"type": "destroyAgent", "agentId": session.id}) == []
        assert _error(await commands.handle({"type": "destroyAgent", "agentId": session.id})) == "Agent not found."
        assert _error(await commands.handle({"type": "destroyAgent"})) == "agentId required."

    async def test_list_agents(self, commands, registry):
        session = await registry.create("codex")
        (reply,) = await commands.handle({"type": "listAgents"})
        assert reply["type"] == "agentList"
        assert [a["id"] for a in reply["agents"]] == [session.id]

    async def test_send_message(self, commands, registry, drivers, broadcasts, drain_queue):
        session = await _idle_agent(registry)
        drain_queue(broadcasts)

        assert await commands.handle({"type": "sendMessage", "agentId": session.id, "text": "hi"}) == []
        drivers[0].send_prompt.assert_awaited_once_with("hi", None)
        sent = drain_queue(broadcasts)
        assert sent[0].type == "userMessage"
        assert sent[0].data == {"agentId": session.id, "content": "hi"}
        assert session.status == "running"

    async def test_send_message_while_busy(self, commands, registry, drivers, broadcasts, drain_queue):
        session = await registry.create("claude")
        drain_queue(broadcasts)
        replies = await commands.handle({"type": "sendMessage", "agentId": session.id, "text": "hi"})
        assert _error(replies) == "Agent is starting; wait for the current turn to finish."
        drivers[0].send_prompt.assert_not_awaited()
        assert drain_queue(broadcasts) == []

    async def test_send_message_validation(self, commands, registry):
        session = await _idle_agent(registry)
        assert _error(await commands.handle({"type": "sendMessage", "agentId": session.id, "text": "  "})) == "text required."
        assert _error(await commands.handle({"type": "sendMessage", "agentId": "nope", "text": "x"})) == "Agent not found."

    async def test_interrupt(self, commands, registry, drivers):
        session = await _idle_agent(registry)
        replies = await commands.handle({"type": "interruptAgent", "agentId": session.id})
        assert _error(replies) == "Agent is not currently running."

        session.status = "running"
        assert await commands.handle({"type": "interruptAgent", "agentId": session.id}) == []
        drivers[0].interrupt.assert_awaited_once()
        assert session.status == "idle"

    async def test_respond_permission(self, commands, registry, drivers):
        session = await _idle_agent(registry)
        session.status = "running"
        await drivers[0].emit(PermissionEvent("r1", "Bash", {"command": "ls"}))

        msg = {"type": "respondPermission", "agentId": session.id, "requestId": "r1", "behavior": "deny"}
        assert await commands.handle(msg) == []
        drivers[0].respond_permission.assert_awaited_once_with("r1", "deny", None)
        assert _error(await commands.handle(msg)) == "Permission request not found or already handled."

    async def test_respond_permission_validation(self, commands, registry):
        session = await _idle_agent(registry)
        base = {"type": "respondPermission", "agentId": session.id}
        assert _error(await commands.handle({**base, "behavior": "allow"})) == "requestId required."
        assert _error(await commands.handle({**base, "requestId": "r", "behavior": "maybe"})) == 'behavior must be "allow" or "deny".'

    async def test_set_auto_approve(self, commands, registry, drivers):
        session = await _idle_agent(registry)
        assert await commands.handle({"type": "setAutoApprove", "agentId": session.id, "enabled": True}) == []
        assert session.auto_approve is True
        drivers[0].set_permission_mode.assert_awaited_once_with("bypass")

    async def test_get_history(self, commands, registry):
        session = await _idle_agent(registry)
        await session.send_prompt("hello")
        (reply,) = await commands.handle({"type": "getHistory", "agentId": session.id})
        assert reply["type"] == "agentHistory"
        assert reply["agentId"] == session.id
        assert [m["content"] for m in reply["messages"]] == ["hello"]
        assert reply["pendingPermissions"] == []


class TestProjectCommands:
    async def test_list_projects_empty(self, commands):
        assert await commands.handle({"type": "listProjects"}) == [{"type": "projectList", "projects": []}]

    async def test_list_projects(self, commands, registry, tmp_path: Path, monkeypatch):
        async def toplevel(path):
            return path

        monkeypatch.setattr(git_worktree, "toplevel", toplevel)
        monkeypatch.setattr(git_worktree, "list_worktrees", AsyncMock(return_value=[
            git_worktree.Worktree(path="/p", branch="main", is_main=True, status="main"),
        ]))
        project = await registry.project_store.register(str(tmp_path))

        (reply,) = await commands.handle({"type": "listProjects"})
        (entry,) = reply["projects"]
        assert entry["id"] == project["id"]
        assert entry["icon"] is None
        assert entry["worktrees"] == [{"path": "/p", "branch": "main", "isMain": True, "status": "main"}]

    async def test_worktree_validation(self, commands):
        assert _error(await commands.handle({"type": "createWorktree", "projectId": "p"})) == "projectId and branchName required."
        assert _error(await commands.handle({"type": "removeWorktree", "projectId": "p"})) == "projectId and worktreePath required."
        assert _error(await commands.handle({
            "type": "createWorktree", "projectId": "missing", "branchName": "feat",
        })) == "Project not found"

    async def test_git_errors_become_replies(self, commands, registry, tmp_path: Path, monkeypatch):
        async def toplevel(path):
            return path

        monkeypatch.setattr(git_worktree, "toplevel", toplevel)
        project = await registry.project_store.register(str(tmp_path))
        replies = await commands.handle({
            "type": "createWorktree", "projectId": project["id"], "branchName": "bad name",
        })
        assert _error(replies).startswith("Invalid branch name")

    async def test_unregister_project(self, commands):
        assert _error(await commands.handle({"type": "unregisterProject", "projectId": "x"})) == "Project not found."


class TestGitCommands:
    async def test_git_status_needs_cwd(self, commands, registry):
        session = await _idle_agent(registry)
        replies = await commands.handle({"type": "getGitStatus", "agentId": session.id})
        assert _error(replies) == "Agent not found or no working directory."

    async def test_git_status(self, commands, registry, monkeypatch):
        session = await _idle_agent(registry)
        session.cwd = "/repo"
        monkeypatch.setattr(git_worktree, "branch_info", AsyncMock(
            return_value=git_worktree.BranchInfo(branch="main", ahead=2, behind=0),
        ))
        monkeypatch.setattr(git_worktree, "status", AsyncMock(
            return_value=[git_worktree.FileStatus(status="M", file="a.py")],
        ))
        (reply,) = await commands.handle({"type": "getGitStatus", "agentId": session.id})
        assert reply == {
            "type": "gitStatus", "agentId": session.id, "branch": "main",
            "ahead": 2, "behind": 0, "files": [{"status": "M", "file": "a.py"}],
        }

    async def test_git_diff(self, commands, registry, monkeypatch):
        session = await _idle_agent(registry)
        session.cwd = "/repo"
        diff = AsyncMock(return_value="+x")
        monkeypatch.setattr(git_worktree, "diff", diff)
        (reply,) = await commands.handle({"type": "getGitDiff", "agentId": session.id, "filePath": "a.py"})
        assert reply["diff"] == "+x"
        diff.assert_awaited_once_with("/repo", "a.py")

    async def test_worktree_status_requires_known_path(self, commands):
        replies = await commands.handle({"type": "getWorktreeStatus", "worktreePath": "/etc"})
        assert _error(replies) == "Path is not a registered project worktree."

    async def test_git_log_requires_registered_project(self, commands):
        replies = await commands.handle({"type": "getGitLog", "projectPath": "/etc"})
        assert _error(replies) == "Path is not a registered project."

    @pytest.mark.parametrize("msg_type", ["getGitStatus", "getGitDiff", "getHistory"])
    async def test_agent_required(self, commands, msg_type):
        assert _error(await commands.handle({"type": msg_type})) == "agentId required."
