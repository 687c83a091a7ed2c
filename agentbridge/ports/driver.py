from __future__ import annotations

from typing import Protocol, runtime_checkable

DEFAULT_MODE = "default"
BYPASS_MODE = "bypass"

_MODE_ALIASES = {
    "default": DEFAULT_MODE,
    "bypass": BYPASS_MODE,
    "bypassPermissions": BYPASS_MODE,
}


def normalize_permission_mode(mode: str) -> str:
    """Map client spellings onto ``default``/``bypass``. Raises ValueError."""
    try:
        return _MODE_ALIASES[mode]
    except KeyError:
        raise ValueError(f"Unknown permission mode: {mode!r}") from None


@runtime_checkable
class AgentDriver(Protocol):
    """Abstract interface for agent backends.

    A driver owns exactly one subprocess or socket peer between start()
    and stop() and reports everything through the ``on_event`` coroutine it
    was constructed with. Sessions depend only on this interface.
    """

    agent_type: str

    @property
    def session_id(self) -> str | None:
        """Backend-native resumable handle, once known."""
        ...

    @property
    def ready(self) -> bool:
        """Handshake complete and no turn in flight."""
        ...

    async def start(
        self,
        agent_id: str,
        cwd: str | None = None,
        resume_session_id: str | None = None,
        model: str | None = None,
    ) -> None:
        """Launch the backend. Ends in exactly one init, or an error/exit."""
        ...

    async def send_prompt(self, text: str, session_id: str | None = None) -> None:
        """Start one user turn. Completion is signalled by a result event."""
        ...

    async def respond_permission(
        self, request_id: str, behavior: str, updated_input: dict | None = None,
    ) -> bool:
        """Answer a pending permission request. False for unknown ids."""
        ...

    async def interrupt(self) -> bool:
        """Cancel the in-flight turn, if any."""
        ...

    async def set_permission_mode(self, mode: str) -> None:
        """Applies to permission requests raised after the call."""
        ...

    async def stop(self) -> None:
        """Terminate the backend. Idempotent."""
        ...
