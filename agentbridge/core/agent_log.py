"""Log files kept per agent under ``<data_dir>/logs/<agent_id>/``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, Any

SESSION_LOG = "session.log"
RAW_LOG = "agent.raw.log"
STDERR_LOG = "agent.stderr.log"

_FORMAT = "%(asctime)s %(levelname)s: %(message)s"


class AgentLog:
    """Lifecycle lines, captured backend frames and the stderr path of one agent.

    Files are opened on construction and appended to, so a restored agent
    keeps writing where its previous run stopped. After ``close()`` every
    write is dropped.
    """

    def __init__(self, data_dir: Path, agent_id: str) -> None:
        self.agent_id = agent_id
        self.directory = data_dir / "logs" / agent_id
        self.directory.mkdir(parents=True, exist_ok=True)
        self.stderr_path = self.directory / STDERR_LOG
        self.frames = 0

        self._lifecycle = logging.getLogger(f"agentbridge.agent.{agent_id}")
        self._lifecycle.setLevel(logging.DEBUG)
        self._lifecycle.propagate = False
        self._handler: logging.Handler | None = logging.FileHandler(
            self.directory / SESSION_LOG, encoding="utf-8",
        )
        self._handler.setFormatter(logging.Formatter(_FORMAT))
        self._lifecycle.addHandler(self._handler)
        self._raw: IO[str] | None = open(self.directory / RAW_LOG, "a", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self._raw is None

    def event(self, msg: str, *args: Any, level: int = logging.INFO) -> None:
        """Write one lifecycle line to session.log."""
        if self._handler is not None:
            self._lifecycle.log(level, msg, *args)

    def frame(self, line: str) -> None:
        """Capture one decoded backend frame in agent.raw.log."""
        if self._raw is None:
            return
        self._raw.write(line if line.endswith("\n") else line + "\n")
        self._raw.flush()
        self.frames += 1

    def close(self) -> None:
        if self._raw is not None:
            self._raw.close()
            self._raw = None
        if self._handler is not None:
            self._lifecycle.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
