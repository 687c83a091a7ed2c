"""Command API: the single entry point for client messages.

A client message is a dict with a ``type``. Each handler returns the list of
replies for the sender only; anything every client must see is broadcast by
the sessions or the registry through the event bus.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from agentbridge.core import git_worktree
from agentbridge.core.git_worktree import GitError
from agentbridge.core.registry import RegistryError
from agentbridge.storage.project_store import ProjectError, project_icon

if TYPE_CHECKING:
    from agentbridge.core.registry import SessionRegistry
    from agentbridge.core.session import AgentSession
    from agentbridge.storage.project_store import ProjectStore

logger = logging.getLogger(__name__)

Reply = dict
Handler = Callable[["Commands", dict], Awaitable[list[Reply]]]


class CommandError(Exception):
    """Bad client input. The message is sent back verbatim."""


def reply(msg_type: str, **data) -> Reply:
    return {"type": msg_type, **data}


def error_reply(message: str) -> Reply:
    return reply("error", error=message)


class Commands:
    """Facade mapping client message types onto registry and session calls."""

    def __init__(self, registry: SessionRegistry, project_store: ProjectStore) -> None:
        self._registry = registry
        self._ps = project_store

    async def handle(self, msg: dict) -> list[Reply]:
        msg_type = msg.get("type") if isinstance(msg, dict) else None
        handler = self._HANDLERS.get(msg_type)
        if handler is None:
            return [error_reply(f"Unknown message type: {msg_type}")]
        try:
            return await handler(self, msg)
        except (CommandError, RegistryError, ProjectError, GitError, ValueError) as e:
            return [error_reply(str(e))]
        except Exception:
            logger.exception("Command %s failed", msg_type)
            return [error_reply(f"{msg_type} failed.")]

    def _session(self, msg: dict) -> AgentSession:
        agent_id = msg.get("agentId")
        if not agent_id:
            raise CommandError("agentId required.")
        session = self._registry.get(agent_id)
        if session is None:
            raise CommandError("Agent not found.")
        return session

    # -- Agents ----------------------------------------------------------------

    async def cmd_create_agent(self, msg: dict) -> list[Reply]:
        session = await self._registry.create(
            agent_type=msg.get("agentType") or "claude",
            model=msg.get("model"),
            project_id=msg.get("projectId"),
            worktree_path=msg.get("worktreePath"),
        )
        # agentCreated itself is broadcast to every client
        logger.info("Client created agent %s", session.id[:8])
        return []

    async def cmd_destroy_agent(self, msg: dict) -> list[Reply]:
        agent_id = msg.get("agentId")
        if not agent_id:
            raise CommandError("agentId required.")
        if not await self._registry.destroy(agent_id):
            raise CommandError("Agent not found.")
        return []

    async def cmd_list_agents(self, msg: dict) -> list[Reply]:
        return [reply("agentList", agents=self._registry.snapshots())]

    async def cmd_send_message(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        text = msg.get("text")
        if not isinstance(text, str) or not text.strip():
            raise CommandError("text required.")
        if not session.accepts_prompts:
            raise CommandError(f"Agent is {session.status}; wait for the current turn to finish.")
        self._registry.publish("userMessage", {"agentId": session.id, "content": text})
        await session.send_prompt(text)
        return []

    async def cmd_interrupt_agent(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        if not await session.interrupt():
            raise CommandError("Agent is not currently running.")
        return []

    async def cmd_respond_permission(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        request_id = msg.get("requestId")
        behavior = msg.get("behavior")
        if not request_id:
            raise CommandError("requestId required.")
        if behavior not in ("allow", "deny"):
            raise CommandError('behavior must be "allow" or "deny".')
        handled = await session.respond_to_permission(
            request_id, behavior, msg.get("updatedInput"),
        )
        if not handled:
            raise CommandError("Permission request not found or already handled.")
        return []

    async def cmd_set_auto_approve(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        await session.set_auto_approve(bool(msg.get("enabled")))
        return []

    async def cmd_get_history(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        return [reply("agentHistory", agentId=session.id, **session.history())]

    # -- Projects and worktrees ------------------------------------------------

    async def _project_entry(self, project: dict) -> dict:
        worktrees = await git_worktree.list_worktrees(project["path"])
        icon = await asyncio.to_thread(project_icon, project["path"])
        return {
            "id": project["id"],
            "name": project["name"],
            "path": project["path"],
            "icon": icon,
            "worktrees": [wt.to_dict() for wt in worktrees],
        }

    async def _project_list(self) -> Reply:
        projects = [await self._project_entry(p) for p in self._ps.list_all()]
        return reply("projectList", projects=projects)

    async def cmd_list_projects(self, msg: dict) -> list[Reply]:
        return [await self._project_list()]

    async def cmd_create_worktree(self, msg: dict) -> list[Reply]:
        project_id = msg.get("projectId")
        branch_name = msg.get("branchName")
        if not project_id or not branch_name:
            raise CommandError("projectId and branchName required.")
        project = self._ps.require(project_id)
        worktree = await git_worktree.create_worktree(
            project["path"], project["name"], branch_name,
        )
        worktrees = await git_worktree.list_worktrees(project["path"])
        return [reply(
            "worktreeCreated",
            projectId=project_id,
            worktree=worktree,
            worktrees=[wt.to_dict() for wt in worktrees],
        )]

    async def cmd_remove_worktree(self, msg: dict) -> list[Reply]:
        project_id = msg.get("projectId")
        worktree_path = msg.get("worktreePath")
        if not project_id or not worktree_path:
            raise CommandError("projectId and worktreePath required.")
        project = self._ps.require(project_id)
        await git_worktree.remove_worktree(project["path"], worktree_path)
        worktrees = await git_worktree.list_worktrees(project["path"])
        return [reply(
            "worktreeRemoved",
            projectId=project_id,
            worktrees=[wt.to_dict() for wt in worktrees],
        )]

    async def cmd_unregister_project(self, msg: dict) -> list[Reply]:
        project_id = msg.get("projectId")
        if not project_id:
            raise CommandError("projectId required.")
        if not self._ps.unregister(project_id):
            raise CommandError("Project not found.")
        return [await self._project_list()]

    # -- Git queries -----------------------------------------------------------

    async def cmd_get_git_status(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        if not session.cwd:
            raise CommandError("Agent not found or no working directory.")
        info = await git_worktree.branch_info(session.cwd)
        files = await git_worktree.status(session.cwd)
        return [reply(
            "gitStatus",
            agentId=session.id,
            branch=info.branch,
            ahead=info.ahead,
            behind=info.behind,
            files=git_worktree.file_status_dicts(files),
        )]

    async def cmd_get_worktree_status(self, msg: dict) -> list[Reply]:
        worktree_path = msg.get("worktreePath")
        if not worktree_path:
            raise CommandError("worktreePath required.")
        if not await self._ps.is_known_worktree(worktree_path):
            raise CommandError("Path is not a registered project worktree.")
        info = await git_worktree.branch_info(worktree_path)
        files = await git_worktree.status(worktree_path)
        return [reply(
            "worktreeStatus",
            worktreePath=worktree_path,
            branch=info.branch,
            ahead=info.ahead,
            behind=info.behind,
            files=git_worktree.file_status_dicts(files),
        )]

    async def cmd_get_git_diff(self, msg: dict) -> list[Reply]:
        session = self._session(msg)
        if not session.cwd:
            raise CommandError("Agent not found or no working directory.")
        file_path = msg.get("filePath") or None
        return [reply(
            "gitDiff",
            agentId=session.id,
            filePath=file_path,
            diff=await git_worktree.diff(session.cwd, file_path),
        )]

    async def cmd_get_git_log(self, msg: dict) -> list[Reply]:
        project_path = msg.get("projectPath")
        if not project_path:
            raise CommandError("projectPath required.")
        if self._ps.find_by_path(project_path) is None:
            raise CommandError("Path is not a registered project.")
        max_count = int(msg.get("maxCount") or 100)
        commits = await git_worktree.log(project_path, max_count)
        return [reply("gitLog", projectPath=project_path, commits=[c.to_dict() for c in commits])]

    async def cmd_ping(self, msg: dict) -> list[Reply]:
        return [reply("pong")]

    _HANDLERS: dict[str, Handler] = {
        "createAgent": cmd_create_agent,
        "destroyAgent": cmd_destroy_agent,
        "listAgents": cmd_list_agents,
        "sendMessage": cmd_send_message,
        "interruptAgent": cmd_interrupt_agent,
        "respondPermission": cmd_respond_permission,
        "setAutoApprove": cmd_set_auto_approve,
        "getHistory": cmd_get_history,
        "listProjects": cmd_list_projects,
        "createWorktree": cmd_create_worktree,
        "removeWorktree": cmd_remove_worktree,
        "unregisterProject": cmd_unregister_project,
        "getGitStatus": cmd_get_git_status,
        "getWorktreeStatus": cmd_get_worktree_status,
        "getGitDiff": cmd_get_git_diff,
        "getGitLog": cmd_get_git_log,
        "ping": cmd_ping,
    }
