"""
Result/event sink.

Aggregates operation outcomes, session transitions, topic state changes and
received messages into one observable stream for presentation layers.

Usage:
    sink = EventSink()

    async for event in sink.subscribe():
        print(event.kind, event.name, event.status)

    # Or look back
    failures = sink.history(status=OutcomeStatus.FAILURE)
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator
from uuid import uuid4


logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    OPERATION = "operation"
    SESSION = "session"
    TOPIC = "topic"
    MESSAGE = "message"


class OutcomeStatus(str, Enum):
    """How an operation resolved."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FAILURE = "failure"
    # warning level: data returned but known to be outdated
    STALE = "stale"
    # completion that arrived after the operation already resolved
    DISCARDED = "discarded"


@dataclass
class SinkEvent:
    """
    One entry of the outcome stream.

    Attributes:
        kind: What produced the event
        name: Operation kind, session state, topic state or "received"
        target: Broker identity, session name or topic the event is about
        status: Outcome status (operations only)
        payload: Result value, received message, snapshot...
        error: Failure cause, if any
        elapsed_ms: Time from submission to resolution (operations only)
    """

    kind: EventKind
    name: str
    target: str = ""
    status: OutcomeStatus | None = None
    payload: Any = None
    error: BaseException | None = None
    elapsed_ms: float | None = None
    operation_id: str | None = None
    description: str = ""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "target": self.target,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.status is not None:
            result["status"] = self.status.value
        if self.description:
            result["description"] = self.description
        if self.elapsed_ms is not None:
            result["elapsed_ms"] = round(self.elapsed_ms, 1)
        if self.error is not None:
            result["error"] = str(self.error)
        return result


class EventSink:
    """
    In-process fan-out of ``SinkEvent`` with a bounded history.

    Publishing never blocks: each subscriber owns an ``asyncio.Queue`` and a
    subscriber that falls behind loses its oldest events.

    Args:
        history_size: Events kept for ``history()``
        maxlen: Maximum queue depth per subscriber
    """

    def __init__(self, history_size: int = 1000, maxlen: int = 1000) -> None:
        self._maxlen = maxlen
        self._history: deque[SinkEvent] = deque(maxlen=history_size)
        self._subscribers: set[asyncio.Queue[SinkEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SinkEvent) -> int:
        """Record *event* and broadcast it to every subscriber.  Returns delivery count."""
        self._history.append(event)
        self._log(event)

        delivered = 0
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                q.get_nowait()
                q.put_nowait(event)
            delivered += 1
        return delivered

    async def subscribe(self) -> AsyncIterator[SinkEvent]:
        """Async iterator over events published after the call."""
        queue = self.subscribe_queue()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe_queue(queue)

    def subscribe_queue(self) -> asyncio.Queue[SinkEvent]:
        """Return a raw ``asyncio.Queue`` for manual consumption."""
        queue: asyncio.Queue[SinkEvent] = asyncio.Queue(maxsize=self._maxlen)
        self._subscribers.add(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue[SinkEvent]) -> None:
        self._subscribers.discard(queue)

    def history(
        self,
        kind: EventKind | None = None,
        status: OutcomeStatus | None = None,
        operation_id: str | None = None,
    ) -> list[SinkEvent]:
        """Retained events, oldest first, optionally filtered."""
        return [
            e for e in self._history
            if (kind is None or e.kind is kind)
            and (status is None or e.status is status)
            and (operation_id is None or e.operation_id == operation_id)
        ]

    def clear(self) -> None:
        self._history.clear()

    @staticmethod
    def _log(event: SinkEvent) -> None:
        if event.kind is not EventKind.OPERATION:
            logger.debug(f"{event.kind.value} {event.target}: {event.name}")
            return

        text = f"{event.name} [{event.target or '-'}] {event.description} -> {event.status.value}"
        if event.elapsed_ms is not None:
            text += f" ({event.elapsed_ms:.0f} ms)"

        if event.status is OutcomeStatus.FAILURE:
            logger.error(f"{text}: {event.error}")
        elif event.status in (OutcomeStatus.TIMEOUT, OutcomeStatus.STALE, OutcomeStatus.DISCARDED):
            logger.warning(text)
        else:
            logger.debug(text)
