"""Plumbing shared by every agent driver: process launch, teardown, exit reporting."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal as signal_mod
from pathlib import Path
from typing import Any, Callable, Coroutine

from agentbridge.core.events import DriverEvent, EventHandler, ExitEvent
from agentbridge.ports.driver import DEFAULT_MODE, normalize_permission_mode

logger = logging.getLogger(__name__)

# How a backend reports cost in its turn results.
COST_CUMULATIVE = "cumulative"  # running total for the session, overwrite when > 0
COST_PER_TURN = "per_turn"      # cost of this turn only, add when > 0

KILL_REAP_TIMEOUT = 2.0


class DriverError(Exception):
    """Backend could not be launched or talked to."""


def find_binary(name: str, override: str | None = None) -> str:
    """Resolve an agent CLI from an explicit path or $PATH."""
    if override:
        path = Path(override).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        raise DriverError(f"{name} binary not executable: {override}")
    found = shutil.which(name)
    if not found:
        raise DriverError(f"{name} CLI not found in PATH")
    return found


def child_env() -> dict[str, str]:
    # Agent CLIs refuse to start when they think they are nested inside themselves
    return {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}


def normalize_content_blocks(blocks: Any) -> list[dict]:
    """Map backend content blocks onto text / tool_use / tool_result / thinking."""
    if not isinstance(blocks, list):
        return []
    normalized: list[dict] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text":
            normalized.append({"type": "text", "text": block.get("text") or ""})
        elif kind == "tool_use":
            normalized.append({
                "type": "tool_use",
                "id": block.get("id"),
                "name": block.get("name"),
                "input": block.get("input") or {},
            })
        elif kind == "tool_result":
            normalized.append({
                "type": "tool_result",
                "toolUseId": block.get("tool_use_id") or block.get("toolUseId"),
                "content": block.get("content"),
            })
        elif kind == "thinking":
            normalized.append({
                "type": "thinking",
                "text": block.get("thinking") or block.get("text") or "",
            })
        else:
            normalized.append(dict(block))
    return normalized


def exit_details(returncode: int | None) -> tuple[int | None, int | None]:
    """Split an asyncio return code into (code, signal)."""
    if returncode is not None and returncode < 0:
        return None, -returncode
    return returncode, None


async def terminate_process(
    proc: asyncio.subprocess.Process | None, timeout: float = 5.0,
) -> None:
    """SIGTERM, wait, then SIGKILL and reap. Safe on processes that already exited."""
    if proc is None or proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=timeout)
        return
    except (asyncio.TimeoutError, ProcessLookupError):
        pass
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=KILL_REAP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit after SIGKILL", proc.pid)


class BaseDriver:
    """State and helpers common to the concrete drivers.

    Subclasses implement the protocol-specific parts of ``AgentDriver``.
    Events go through ``_emit`` which awaits the injected handler, so
    events from one driver are delivered in the order they were produced.
    """

    agent_type = "base"
    CONTEXT_WINDOW = 200_000
    COST_POLICY = COST_CUMULATIVE

    def __init__(
        self,
        on_event: EventHandler,
        *,
        binary: str | None = None,
        rpc_timeout: float = 30.0,
        interrupt_timeout: float = 10.0,
        kill_timeout: float = 5.0,
        stderr_log_path: Path | None = None,
        raw_log: Callable[[str], None] | None = None,
    ) -> None:
        self._on_event = on_event
        self._raw_log = raw_log
        self._binary = binary
        self._rpc_timeout = rpc_timeout
        self._interrupt_timeout = interrupt_timeout
        self._kill_timeout = kill_timeout
        self._stderr_log_path = stderr_log_path

        self._agent_id: str | None = None
        self._cwd: str | None = None
        self._model: str | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._session_id: str | None = None
        self._ready = False
        self._turn_active = False
        self._stopped = False
        self._exit_reported = False
        self._permission_mode = DEFAULT_MODE
        self._tasks: set[asyncio.Task] = set()

    # -- Properties ------------------------------------------------------------

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def ready(self) -> bool:
        return self._ready and not self._turn_active and not self._stopped

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def permission_mode(self) -> str:
        return self._permission_mode

    @property
    def _tag(self) -> str:
        return (self._agent_id or "?")[:8]

    # -- Events ----------------------------------------------------------------

    async def _emit(self, event: DriverEvent) -> None:
        try:
            await self._on_event(event)
        except Exception:
            logger.exception(
                "[%s] Event handler failed for %s", self._tag, type(event).__name__,
            )

    def _log_raw(self, line: str) -> None:
        if self._raw_log is not None:
            self._raw_log(line)

    # -- Process management ----------------------------------------------------

    async def _spawn(self, cmd: list[str], cwd: str | None) -> asyncio.subprocess.Process:
        logger.info("[%s] Starting %s (cwd=%s)", self._tag, " ".join(cmd), cwd or "~")
        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or str(Path.home()),
            env=child_env(),
        )
        if self._process.stderr:
            self._spawn_task(self._drain_stderr(self._process.stderr))
        return self._process

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        """Read stderr line-by-line and append to the per-agent log file."""
        try:
            if self._stderr_log_path is None:
                while await stream.readline():
                    pass
                return
            with open(self._stderr_log_path, "a", encoding="utf-8") as f:
                while True:
                    line = await stream.readline()
                    if not line:
                        break
                    f.write(line.decode("utf-8", errors="replace"))
                    f.flush()
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("stderr drain ended", exc_info=True)

    async def _write_stdin(self, data: bytes) -> None:
        proc = self._process
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise DriverError(f"{self.agent_type} process not running")
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise DriverError(f"{self.agent_type} stdin closed: {e}") from e

    async def _report_exit(self) -> None:
        """Wait for the child and surface its death as one exit event."""
        proc = self._process
        if proc is None:
            return
        returncode = await proc.wait()
        self._ready = False
        self._turn_active = False
        await self._on_process_exit()
        if self._stopped or self._exit_reported:
            return
        self._exit_reported = True
        code, sig = exit_details(returncode)
        logger.info(
            "[%s] %s exited: code=%s signal=%s",
            self._tag, self.agent_type, code,
            signal_mod.Signals(sig).name if sig else None,
        )
        await self._emit(ExitEvent(code=code, signal=sig))

    async def _on_process_exit(self) -> None:
        """Hook for subclasses to release transport state when the child dies."""

    def _spawn_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("[%s] Task ended with error during stop", self._tag, exc_info=True)

    async def _shutdown_process(self) -> None:
        self._stopped = True
        self._ready = False
        self._turn_active = False
        await terminate_process(self._process, timeout=self._kill_timeout)
        await self._cancel_tasks()

    # -- Shared commands -------------------------------------------------------

    async def set_permission_mode(self, mode: str) -> None:
        self._permission_mode = normalize_permission_mode(mode)
        logger.info("[%s] Permission mode: %s", self._tag, self._permission_mode)
