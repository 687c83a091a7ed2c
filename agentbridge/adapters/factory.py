from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Callable

from agentbridge.adapters.base import BaseDriver
from agentbridge.adapters.claude_code.driver import ClaudeDriver
from agentbridge.adapters.codex.driver import CodexDriver
from agentbridge.adapters.opencode.driver import OpenCodeDriver
from agentbridge.core.events import EventHandler

if TYPE_CHECKING:
    from agentbridge.config import Config

DRIVERS: dict[str, type[BaseDriver]] = {
    "claude": ClaudeDriver,
    "codex": CodexDriver,
    "opencode": OpenCodeDriver,
}


def supported_types() -> list[str]:
    return list(DRIVERS)


def create_driver(
    agent_type: str,
    on_event: EventHandler,
    config: Config,
    stderr_log_path: Path | None = None,
    raw_log: Callable[[str], None] | None = None,
) -> BaseDriver:
    """Build the driver for *agent_type*. Raises ValueError for unknown types."""
    driver_cls = DRIVERS.get(agent_type)
    if driver_cls is None:
        raise ValueError(
            f'Unknown agent type: "{agent_type}". Available: {", ".join(DRIVERS)}'
        )

    kwargs: dict = {
        "binary": config.binary_override(agent_type),
        "rpc_timeout": config.rpc_timeout,
        "interrupt_timeout": config.interrupt_timeout,
        "kill_timeout": config.kill_timeout,
        "stderr_log_path": stderr_log_path,
        "raw_log": raw_log,
    }
    if driver_cls is ClaudeDriver:
        # The CLI dials back into us; a wildcard bind address is not dialable
        host = "127.0.0.1" if config.host in ("", "0.0.0.0", "::") else config.host
        kwargs.update(server_host=host, server_port=config.port)
    elif driver_cls is CodexDriver:
        kwargs["default_model"] = config.codex_model
    return driver_cls(on_event, **kwargs)
