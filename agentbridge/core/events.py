"""Normalized driver events and the in-process event bus.

Drivers translate whatever their backend speaks into the closed set of
event types below. Agent sessions consume them and publish
``ClientBroadcast`` events that the web server fans out to clients.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Simple in-process asyncio pub/sub event bus.

    Publishers call publish(event). Subscribers receive events on the
    asyncio.Queue returned by subscribe() and release it with unsubscribe().
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}
        self._maxsize = maxsize

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        """Subscribe to events of a specific type. Returns a Queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type[T], queue: asyncio.Queue) -> None:
        """Remove a subscription."""
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers.get(event_type, []))

    def publish(self, event: object) -> None:
        """Publish an event to all subscribers of its type."""
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)


# ---------------------------------------------------------------------------
# Driver events (normalized across backends)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InitEvent:
    """Backend handshake finished; the driver accepts prompts."""
    session_id: str | None = None
    model: str | None = None
    tools: list | None = None
    cwd: str | None = None
    git_branch: str | None = None
    project_name: str | None = None


@dataclass(frozen=True)
class StreamEvent:
    """Incremental assistant text."""
    text: str


@dataclass(frozen=True)
class MessageEvent:
    """A complete assistant message (text, thinking, tool_use, tool_result blocks)."""
    content: list


@dataclass(frozen=True)
class ResultEvent:
    """Turn finished."""
    cost: float = 0.0
    usage: dict = field(default_factory=dict)
    duration: int = 0
    is_error: bool = False
    session_id: str | None = None


@dataclass(frozen=True)
class PermissionEvent:
    request_id: str
    tool_name: str
    tool_input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolProgressEvent:
    tool_name: str | None = None
    elapsed: float = 0


@dataclass(frozen=True)
class ToolResultsEvent:
    """Raw ``tool_result`` blocks (``tool_use_id`` keyed) from the backend."""
    content: list


@dataclass(frozen=True)
class StatusEvent:
    status: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class ExitEvent:
    code: int | None = None
    signal: int | None = None


DriverEvent = Union[
    InitEvent,
    StreamEvent,
    MessageEvent,
    ResultEvent,
    PermissionEvent,
    ToolProgressEvent,
    ToolResultsEvent,
    StatusEvent,
    ErrorEvent,
    ExitEvent,
]

EventHandler = Callable[[DriverEvent], Awaitable[None]]


# ---------------------------------------------------------------------------
# Client-facing broadcast
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClientBroadcast:
    """One message for every connected client: ``{type, **data}``."""
    type: str
    data: dict[str, Any] = field(default_factory=dict)
