"""
Append-only event store.

The store is the single source of historical truth for the orchestration core.
Events are stamped with a monotonic sequence number and a non-decreasing
timestamp on append and are never mutated or removed afterwards.

Consumers that want a live feed call ``subscribe`` and receive their own
channel (an anyio memory object stream) filtered by event type and entity.
"""

import bisect
import itertools
import logging
import math
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .models import EventSeverity, SystemEvent, utcnow

logger = logging.getLogger(__name__)


def event_type_matches(event_type: str, pattern: Optional[str]) -> bool:
    """Match an event type exactly or by dotted prefix."""
    if not pattern:
        return True
    return event_type == pattern or event_type.startswith(pattern + ".")


class EventSubscription:
    """A typed, per-consumer channel of events."""

    def __init__(
        self,
        store: "EventStore",
        event_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        self._store = store
        self.event_type = event_type
        self.entity_id = entity_id
        send, receive = anyio.create_memory_object_stream(max_buffer_size=math.inf)
        self._send: MemoryObjectSendStream = send
        self._receive: MemoryObjectReceiveStream = receive
        self.closed = False

    def matches(self, event: SystemEvent) -> bool:
        if self.entity_id is not None and event.entity_id != self.entity_id:
            return False
        return event_type_matches(event.type, self.event_type)

    def _deliver(self, event: SystemEvent) -> bool:
        """Push an event to the consumer. Returns False once the channel is gone."""
        try:
            self._send.send_nowait(event)
            return True
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            self.closed = True
            return False

    def receive_nowait(self) -> Optional[SystemEvent]:
        """Return the next buffered event, or None when nothing is pending."""
        try:
            return self._receive.receive_nowait()
        except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
            return None

    def drain(self) -> List[SystemEvent]:
        """Return every buffered event."""
        events: List[SystemEvent] = []
        while True:
            event = self.receive_nowait()
            if event is None:
                return events
            events.append(event)

    async def receive(self) -> SystemEvent:
        return await self._receive.receive()

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> SystemEvent:
        try:
            return await self._receive.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError):
            raise StopAsyncIteration

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._send.close()
        self._receive.close()
        self._store._detach(self)


class EventStore:
    """
    Append-only, timestamp-ordered log of system events.

    Features:
    - Monotonic sequence numbers and non-decreasing timestamps
    - Filtered retrieval by time, type prefix and entity
    - Live per-consumer subscriptions
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._events: List[SystemEvent] = []
        self._timestamps: List[datetime] = []
        self._sequence = itertools.count(1)
        self._subscriptions: List[EventSubscription] = []

    def __len__(self) -> int:
        return len(self._events)

    def append(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: str = "orchestrator",
        entity_id: Optional[str] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> SystemEvent:
        """Append a new event and fan it out to matching subscribers."""
        event = SystemEvent(
            sequence=next(self._sequence),
            type=event_type,
            timestamp=self._next_timestamp(),
            source=source,
            entity_id=entity_id,
            severity=severity,
            payload=payload or {},
        )
        self._store(event)
        return event

    def record(self, event: SystemEvent) -> SystemEvent:
        """
        Append an event reported by a collaborator.

        The event is re-stamped so the log stays ordered; the reported time is
        kept in the payload under ``reported_at``.
        """
        payload = dict(event.payload)
        payload.setdefault("reported_at", event.timestamp.isoformat())
        stamped = event.model_copy(
            update={
                "sequence": next(self._sequence),
                "timestamp": self._next_timestamp(),
                "payload": payload,
            }
        )
        self._store(stamped)
        return stamped

    def history(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SystemEvent]:
        """
        Return events in log order.

        Args:
            since: Only events stamped at or after this time
            event_type: Exact type or dotted prefix
            entity_id: Only events about this entity
            limit: Keep only the most recent ``limit`` matches

        Returns:
            Matching events, oldest first
        """
        start = bisect.bisect_left(self._timestamps, since) if since else 0
        events = [
            e
            for e in self._events[start:]
            if event_type_matches(e.type, event_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def latest(self, event_type: Optional[str] = None) -> Optional[SystemEvent]:
        for event in reversed(self._events):
            if event_type_matches(event.type, event_type):
                return event
        return None

    def counts_by_type(self) -> Dict[str, int]:
        return dict(Counter(e.type for e in self._events))

    def subscribe(
        self, event_type: Optional[str] = None, entity_id: Optional[str] = None
    ) -> EventSubscription:
        """Open a live channel of future events matching the filters."""
        subscription = EventSubscription(self, event_type=event_type, entity_id=entity_id)
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        """Close every open subscription."""
        for subscription in list(self._subscriptions):
            subscription.close()

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._timestamps and now < self._timestamps[-1]:
            return self._timestamps[-1]
        return now

    def _store(self, event: SystemEvent) -> None:
        self._events.append(event)
        self._timestamps.append(event.timestamp)
        logger.debug(f"Event #{event.sequence} {event.type} entity={event.entity_id}")

        for subscription in list(self._subscriptions):
            if subscription.matches(event) and not subscription._deliver(event):
                self._detach(subscription)

    def _detach(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
