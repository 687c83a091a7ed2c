from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class SessionStore:
    """Lightweight references to live agents, kept in ``sessions.json``.

    Only what a restart needs to resume an agent is stored here (backend
    session id, type, name, cwd). Conversation history stays with the agent
    CLI and is read back through ``storage.transcripts``.
    """

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / "sessions.json"
        self._sessions: dict[str, dict] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to read sessions.json: %s", e)
            return
        self._sessions = data.get("sessions", {}) if isinstance(data, dict) else {}
        logger.info("Loaded %d saved sessions", len(self._sessions))

    def _save(self) -> None:
        """Atomic write (tmp + rename)."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(
            {
                "sessions": self._sessions,
                "updatedAt": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
            ensure_ascii=False,
        ))
        tmp_path.chmod(0o600)
        tmp_path.rename(self._path)

    def save(
        self,
        agent_id: str,
        session_id: str,
        agent_type: str = "claude",
        session_name: str | None = None,
        created_at: float | None = None,
        cwd: str | None = None,
        model: str | None = None,
    ) -> None:
        self._sessions[agent_id] = {
            "sessionId": session_id,
            "type": agent_type,
            "sessionName": session_name,
            "createdAt": created_at or time.time() * 1000,
            "cwd": cwd,
            "model": model,
        }
        self._save()

    def update(self, agent_id: str, **fields) -> bool:
        """Patch an existing entry. Returns False when nothing is saved for it."""
        entry = self._sessions.get(agent_id)
        if entry is None:
            return False
        entry.update(fields)
        self._save()
        return True

    def remove(self, agent_id: str) -> bool:
        if self._sessions.pop(agent_id, None) is None:
            return False
        self._save()
        return True

    def get(self, agent_id: str) -> dict | None:
        return self._sessions.get(agent_id)

    def list_all(self) -> dict[str, dict]:
        return dict(self._sessions)
