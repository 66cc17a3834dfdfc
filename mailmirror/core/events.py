"""Event Bus and typed event definitions for preview sessions.

Session components publish lifecycle events here. Renderers (the CLI
console) subscribe and present them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Simple in-process asyncio pub/sub event bus.

    Publishers call publish(event). Subscribers receive events via
    subscribe() which returns an asyncio.Queue, subscribe_many() for a
    single queue fed by several event types, or iter_events() for
    convenient async iteration.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        """Subscribe to events of a specific type. Returns a Queue."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def subscribe_many(self, event_types: list[type]) -> asyncio.Queue:
        """Subscribe one queue to several event types."""
        queue: asyncio.Queue = asyncio.Queue()
        for event_type in event_types:
            self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type, queue: asyncio.Queue) -> None:
        """Remove a subscription."""
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        """Remove a queue from every event type it is subscribed to."""
        for queues in self._subscribers.values():
            if queue in queues:
                queues.remove(queue)

    def publish(self, event: object) -> None:
        """Publish an event to all subscribers of its type."""
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)

    async def iter_events(self, event_type: type[T]) -> AsyncIterator[T]:
        """Async iterator for events of a specific type."""
        queue = self.subscribe(event_type)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(event_type, queue)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactCompiledEvent:
    """A recompile replaced the served artifact."""
    source_path: str
    diagnostics: tuple[str, ...]
    compiled_at: datetime


@dataclass(frozen=True)
class CompileFailedEvent:
    """A recompile failed; the previous artifact is still served."""
    source_path: str
    diagnostics: tuple[str, ...]


@dataclass(frozen=True)
class ViewerConnectedEvent:
    viewer_id: str
    viewer_count: int


@dataclass(frozen=True)
class ViewerDisconnectedEvent:
    viewer_id: str
    viewer_count: int


@dataclass(frozen=True)
class TunnelReadyEvent:
    """The tunnel published its public URL."""
    public_url: str


@dataclass(frozen=True)
class TunnelStoppedEvent:
    """The tunnel process exited on its own after becoming ready."""
    returncode: int | None
