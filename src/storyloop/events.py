"""
Progress events emitted by loop runners.

Subscribers receive typed ``LoopEvent`` values through an ``asyncio.Queue``.
Publishing never blocks a runner: a subscriber that stops draining its queue
loses events once the queue is full.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Optional

from storyloop.models import QualityCheckResult

logger = logging.getLogger(__name__)


class LoopEventKind(str, Enum):
    """Types of progress events a loop can emit."""

    STARTED = "started"
    ITERATION_START = "iteration_start"
    ITERATION_END = "iteration_end"
    STORY_STARTED = "story_started"
    STORY_COMPLETED = "story_completed"
    STORY_FAILED = "story_failed"
    QUALITY_CHECK = "quality_check"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    LEARNING = "learning"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            LoopEventKind.COMPLETED,
            LoopEventKind.CANCELLED,
            LoopEventKind.FAILED,
        )


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class LoopEvent:
    kind: LoopEventKind
    loop_id: str
    iteration: Optional[int] = None
    item_id: Optional[str] = None
    item_title: Optional[str] = None
    message: Optional[str] = None
    quality_result: Optional[QualityCheckResult] = None
    learning: Optional[str] = None
    will_retry: Optional[bool] = None
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "loop_id": self.loop_id,
            "iteration": self.iteration,
            "item_id": self.item_id,
            "item_title": self.item_title,
            "message": self.message,
            "quality_result": self.quality_result.to_dict() if self.quality_result else None,
            "learning": self.learning,
            "will_retry": self.will_retry,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class EventSubscription:
    """One subscriber's queue. Iterate it with ``async for``."""

    def __init__(self, bus: "LoopEventBus", loop_id: Optional[str], maxsize: int) -> None:
        self._bus = bus
        self.loop_id = loop_id
        self.queue: asyncio.Queue[LoopEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: LoopEvent) -> bool:
        return self.loop_id is None or event.loop_id == self.loop_id

    async def get(self, timeout: Optional[float] = None) -> Optional[LoopEvent]:
        if timeout is None:
            return await self.queue.get()
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> list[LoopEvent]:
        events: list[LoopEvent] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[LoopEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LoopEvent]:
        while not self.closed:
            yield await self.queue.get()

    def __enter__(self) -> "EventSubscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class LoopEventBus:
    def __init__(self, default_maxsize: int = 1000) -> None:
        self._default_maxsize = default_maxsize
        self._subscriptions: list[EventSubscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self, loop_id: Optional[str] = None, maxsize: Optional[int] = None
    ) -> EventSubscription:
        subscription = EventSubscription(self, loop_id, maxsize or self._default_maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: LoopEvent) -> None:
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(event)]
        for subscription in targets:
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "Dropping %s event for loop %s: subscriber queue full",
                    event.kind.value,
                    event.loop_id,
                )
