from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from agentbridge.adapters.factory import create_driver, supported_types
from agentbridge.core.events import ClientBroadcast, EventBus
from agentbridge.core.session import AgentSession
from agentbridge.core.agent_log import AgentLog
from agentbridge.storage.transcripts import Transcript, read_transcript

if TYPE_CHECKING:
    from agentbridge.config import Config
    from agentbridge.storage.project_store import ProjectStore
    from agentbridge.storage.session_store import SessionStore

logger = logging.getLogger(__name__)

TranscriptReader = Callable[[str, "str | None", "str | None"], "Transcript | None"]


class RegistryError(Exception):
    """Agent limit reached, unknown agent type or unknown agent id."""


class SessionRegistry:
    """Pool of live agent sessions. Create/destroy/restore/query.

    Every session broadcast is published on the event bus as a
    ``ClientBroadcast``; ``agentUpdated`` deltas that carry a backend session
    id or a session name are also written to the session store so the agent
    can be resumed after a restart.
    """

    def __init__(
        self,
        config: Config,
        session_store: SessionStore,
        project_store: ProjectStore | None = None,
        event_bus: EventBus | None = None,
        driver_factory: Callable[..., Any] = create_driver,
        transcript_reader: TranscriptReader = read_transcript,
    ) -> None:
        self._config = config
        self._session_store = session_store
        self._project_store = project_store
        self._event_bus = event_bus or EventBus()
        self._driver_factory = driver_factory
        self._transcript_reader = transcript_reader
        self._agents: dict[str, AgentSession] = {}
        self._logs: dict[str, AgentLog] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def project_store(self) -> ProjectStore | None:
        return self._project_store

    def __len__(self) -> int:
        return len(self._agents)

    def get(self, agent_id: str) -> AgentSession | None:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> AgentSession:
        session = self._agents.get(agent_id)
        if session is None:
            raise RegistryError("Agent not found.")
        return session

    def list_sessions(self) -> list[AgentSession]:
        return list(self._agents.values())

    def snapshots(self) -> list[dict]:
        return [s.snapshot() for s in self._agents.values()]

    # -- Broadcast + persistence -----------------------------------------------

    def publish(self, msg_type: str, data: dict | None = None) -> None:
        self._event_bus.publish(ClientBroadcast(type=msg_type, data=data or {}))

    def _on_broadcast(self, agent_id: str, msg_type: str, data: dict) -> None:
        self.publish(msg_type, data)
        if msg_type == "agentUpdated":
            self._persist(agent_id, data)

    def _persist(self, agent_id: str, data: dict) -> None:
        session = self._agents.get(agent_id)
        if session is None:
            return
        try:
            if data.get("sessionId"):
                self._session_store.save(
                    agent_id,
                    session_id=data["sessionId"],
                    agent_type=session.type,
                    session_name=session.session_name,
                    created_at=session.created_at,
                    cwd=session.cwd,
                    model=session.model,
                )
            elif "sessionName" in data:
                self._session_store.update(agent_id, sessionName=data["sessionName"])
        except OSError:
            logger.warning("Failed to persist session %s", agent_id, exc_info=True)

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- Lifecycle -------------------------------------------------------------

    def _build_session(self, agent_id: str, agent_type: str, model: str | None) -> AgentSession:
        agent_log = AgentLog(self._config.data_dir, agent_id)

        def driver_factory(on_event):
            return self._driver_factory(
                agent_type,
                on_event,
                self._config,
                stderr_log_path=agent_log.stderr_path,
                raw_log=agent_log.frame,
            )

        session = AgentSession(
            agent_id,
            agent_type,
            driver_factory,
            model=model,
            broadcast=self._on_broadcast,
            agent_log=agent_log,
        )
        self._logs[agent_id] = agent_log
        self._agents[agent_id] = session
        return session

    def _check_capacity(self, agent_type: str) -> None:
        if len(self._agents) >= self._config.max_agents:
            raise RegistryError(
                f"Maximum {self._config.max_agents} concurrent agents reached."
            )
        if agent_type not in supported_types():
            raise RegistryError(
                f'Unknown agent type: "{agent_type}". Available: {", ".join(supported_types())}'
            )

    async def create(
        self,
        agent_type: str = "claude",
        model: str | None = None,
        project_id: str | None = None,
        worktree_path: str | None = None,
        cwd: str | None = None,
    ) -> AgentSession:
        """Create and start an agent. Raises RegistryError or ProjectError.

        Returns once the session is registered and announced; the backend
        handshake continues in the background.
        """
        self._check_capacity(agent_type)
        if project_id:
            if self._project_store is None:
                raise RegistryError("Projects are not available.")
            cwd = await self._project_store.resolve_cwd(project_id, worktree_path)

        agent_id = str(uuid.uuid4())
        session = self._build_session(agent_id, agent_type, model)
        await session.prepare(cwd)
        self._logs[agent_id].event(
            "Agent created: type=%s cwd=%s model=%s", agent_type, cwd, model,
        )
        logger.info("Created agent %s (%s) in %s", agent_id[:8], agent_type, cwd or "~")
        self.publish("agentCreated", {"agent": session.snapshot()})
        self._spawn_task(session.start())
        return session

    async def destroy(self, agent_id: str) -> bool:
        session = self._agents.pop(agent_id, None)
        if session is None:
            return False
        try:
            await session.destroy()
        finally:
            agent_log = self._logs.pop(agent_id, None)
            if agent_log is not None:
                agent_log.event("Agent destroyed")
                agent_log.close()
            self._session_store.remove(agent_id)
        logger.info("Destroyed agent %s", agent_id[:8])
        self.publish("agentDestroyed", {"agentId": agent_id})
        return True

    async def restore_saved(self) -> list[AgentSession]:
        """Resume every persisted agent that has a backend session id."""
        restored: list[AgentSession] = []
        for agent_id, info in self._session_store.list_all().items():
            session_id = info.get("sessionId")
            agent_type = info.get("type") or "claude"
            if not session_id:
                logger.warning("Skip restore for %s: no session id", agent_id[:8])
                continue
            if agent_id in self._agents:
                continue
            try:
                self._check_capacity(agent_type)
            except RegistryError as e:
                logger.warning("Skip restore for %s: %s", agent_id[:8], e)
                continue

            cwd = info.get("cwd")
            if cwd and not Path(cwd).is_dir():
                logger.warning("Restoring %s without cwd, %s is gone", agent_id[:8], cwd)
                cwd = None

            session = self._build_session(agent_id, agent_type, info.get("model"))
            session.session_id = session_id
            session.session_name = info.get("sessionName") or "Restored Agent"
            if info.get("createdAt"):
                session.created_at = info["createdAt"]

            try:
                transcript = self._transcript_reader(agent_type, session_id, cwd)
            except Exception:
                logger.warning("Transcript read failed for %s", agent_id[:8], exc_info=True)
                transcript = None
            if transcript is not None:
                session.load_transcript(transcript)

            await session.prepare(cwd)
            self._logs[agent_id].event("Agent restored: session_id=%s", session_id)
            logger.info("Restoring agent %s (%s, session %s)", agent_id[:8], agent_type, session_id[:8])
            self.publish("agentCreated", {"agent": session.snapshot()})
            self._spawn_task(session.start(resume_session_id=session_id))
            restored.append(session)
        return restored

    async def shutdown(self) -> None:
        """Stop every driver. Persisted entries stay for the next start."""
        for task in list(self._tasks):
            task.cancel()
        sessions = list(self._agents.values())
        results = await asyncio.gather(
            *(s.destroy() for s in sessions), return_exceptions=True,
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning("Stopping %s failed: %s", session.id[:8], result)
        for agent_log in self._logs.values():
            agent_log.close()
        self._logs.clear()
        self._agents.clear()
        logger.info("Stopped %d agents", len(sessions))
