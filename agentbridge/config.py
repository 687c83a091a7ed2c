from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class Config:
    host: str = "127.0.0.1"
    port: int = 8765
    data_dir: Path = field(default_factory=lambda: Path.home() / ".agentbridge")
    max_agents: int = 10
    rpc_timeout: float = 30.0
    interrupt_timeout: float = 10.0
    kill_timeout: float = 5.0
    log_file: str = "/tmp/agentbridge.log"
    claude_path: str | None = None
    codex_path: str | None = None
    opencode_path: str | None = None
    codex_model: str | None = None

    @classmethod
    def from_env(cls) -> Config:
        load_dotenv()
        data_dir = os.environ.get("AGENTBRIDGE_DATA_DIR", "")
        return cls(
            host=os.environ.get("AGENTBRIDGE_HOST", "127.0.0.1"),
            port=_int_env("AGENTBRIDGE_PORT", 8765),
            data_dir=(
                Path(data_dir).expanduser() if data_dir
                else Path.home() / ".agentbridge"
            ),
            max_agents=_int_env("AGENTBRIDGE_MAX_AGENTS", 10),
            rpc_timeout=_float_env("AGENTBRIDGE_RPC_TIMEOUT", 30.0),
            interrupt_timeout=_float_env("AGENTBRIDGE_INTERRUPT_TIMEOUT", 10.0),
            log_file=os.environ.get("AGENTBRIDGE_LOG_FILE", "/tmp/agentbridge.log"),
            claude_path=os.environ.get("CLAUDE_PATH") or None,
            codex_path=os.environ.get("CODEX_PATH") or None,
            opencode_path=os.environ.get("OPENCODE_PATH") or None,
            codex_model=os.environ.get("CODEX_MODEL") or None,
        )

    def binary_override(self, agent_type: str) -> str | None:
        """Explicit binary path configured for *agent_type*, if any."""
        return {
            "claude": self.claude_path,
            "codex": self.codex_path,
            "opencode": self.opencode_path,
        }.get(agent_type)
