from __future__ import annotations

import pytest
from pathlib import Path
from unittest.mock import AsyncMock

from agentbridge.config import Config
from agentbridge.core.commands import Commands
from agentbridge.core.events import ClientBroadcast
from agentbridge.core.registry import SessionRegistry
from agentbridge.storage.project_store import ProjectStore
from agentbridge.storage.session_store import SessionStore


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Provide an isolated data directory for stores."""
    d = tmp_path / "data"
    d.mkdir()
    return d


class FakeDriver:
    """Stands in for a backend driver; tests push events through ``emit``."""

    CONTEXT_WINDOW = 200_000
    COST_POLICY = "cumulative"

    def __init__(self, agent_type: str, on_event) -> None:
        self.agent_type = agent_type
        self.emit = on_event
        self.session_id = None
        self.ready = True
        self.start = AsyncMock()
        self.send_prompt = AsyncMock()
        self.respond_permission = AsyncMock(return_value=True)
        self.interrupt = AsyncMock(return_value=True)
        self.set_permission_mode = AsyncMock()
        self.stop = AsyncMock()


@pytest.fixture
def config(data_dir: Path) -> Config:
    return Config(data_dir=data_dir, max_agents=3, log_file="")


@pytest.fixture
def drivers() -> list[FakeDriver]:
    """Every driver the registry fixture has built, in creation order."""
    return []


@pytest.fixture
async def make_registry(config: Config, data_dir: Path, drivers: list[FakeDriver]):
    """Build registries over the shared data dir; all are shut down afterwards."""
    built: list[SessionRegistry] = []

    def driver_factory(agent_type, on_event, cfg, stderr_log_path=None, raw_log=None):
        driver = FakeDriver(agent_type, on_event)
        drivers.append(driver)
        return driver

    def make(transcript=None) -> SessionRegistry:
        reg = SessionRegistry(
            config,
            SessionStore(data_dir),
            project_store=ProjectStore(data_dir),
            driver_factory=driver_factory,
            transcript_reader=lambda agent_type, session_id, cwd: transcript,
        )
        built.append(reg)
        return reg

    yield make
    for reg in built:
        await reg.shutdown()


@pytest.fixture
def registry(make_registry) -> SessionRegistry:
    return make_registry()


@pytest.fixture
def commands(registry: SessionRegistry) -> Commands:
    return Commands(registry, registry.project_store)


@pytest.fixture
def broadcasts(registry: SessionRegistry):
    """Queue receiving every client broadcast published by the registry."""
    return registry.event_bus.subscribe(ClientBroadcast)


def drain(queue) -> list[ClientBroadcast]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def drain_queue():
    return drain
