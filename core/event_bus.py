"""EventBus — asyncio.Queue fan-out carrying MPC responses and flow state changes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

import structlog

logger = structlog.get_logger("core.event_bus")

# Topics
TOPIC_MPC_RESPONSE = "mpc.response"
TOPIC_FLOW_STATE = "flow.state"


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable event flowing through the EventBus."""

    topic: str
    payload: dict[str, Any]
    trace_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription:
    """One subscriber queue, registered as soon as it is created.

    Iterate it to consume events; ``close()`` (or leaving the ``async
    with`` block) detaches it from the bus.
    """

    def __init__(self, bus: EventBus, topic: str, queue: asyncio.Queue[Event]) -> None:
        self._bus = bus
        self.topic = topic
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        try:
            while not self._closed:
                yield await self._queue.get()
        finally:
            self.close()

    async def get(self) -> Event:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._detach(self.topic, self._queue)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()


class EventBus:
    """Fan-out pub/sub event bus backed by asyncio.Queue.

    Each ``subscribe(topic)`` call creates an independent queue so that
    the signature inbox, the status stream and tests can consume the
    same events at their own pace.

    Usage::

        bus = EventBus()
        async with bus.subscribe(TOPIC_FLOW_STATE) as sub:
            await bus.publish(TOPIC_FLOW_STATE, {"state": "COMPLETED"})
            event = await sub.get()
    """

    def __init__(self, maxsize: int = 4096) -> None:
        self._maxsize = maxsize
        # topic -> list of subscriber queues
        self._subscribers: dict[str, list[asyncio.Queue[Event]]] = {}
        self._stats_published: int = 0
        self._stats_dropped: int = 0

    # ── Publish ──────────────────────────────────────────────────

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        """Publish an event to all subscribers of *topic*.

        Parameters
        ----------
        topic:
            Event topic string (``TOPIC_MPC_RESPONSE``, ``TOPIC_FLOW_STATE``).
        payload:
            Arbitrary dict payload.
        trace_id:
            Optional correlation id (the flow key); UUID4 if omitted.
        """
        self.publish_nowait(topic, payload, trace_id)

    def publish_nowait(
        self,
        topic: str,
        payload: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        """Synchronous variant; never blocks, drops on full queues."""
        if trace_id is None:
            trace_id = str(uuid4())

        event = Event(topic=topic, payload=payload, trace_id=trace_id)

        for q in list(self._subscribers.get(topic, [])):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self._stats_dropped += 1
                logger.warning(
                    "event_bus.queue_full",
                    topic=topic,
                    trace_id=trace_id,
                    queue_size=q.qsize(),
                )

        self._stats_published += 1

    # ── Subscribe ────────────────────────────────────────────────

    def subscribe(self, topic: str) -> Subscription:
        """Register a new queue for *topic* and return its subscription."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.setdefault(topic, []).append(queue)
        return Subscription(self, topic, queue)

    def _detach(self, topic: str, queue: asyncio.Queue[Event]) -> None:
        subs = self._subscribers.get(topic, [])
        if queue in subs:
            subs.remove(queue)
        if not subs:
            self._subscribers.pop(topic, None)

    # ── Introspection ────────────────────────────────────────────

    @property
    def topics(self) -> list[str]:
        """Return list of topics with active subscribers."""
        return list(self._subscribers.keys())

    def subscriber_count(self, topic: str) -> int:
        """Return number of active subscribers for *topic*."""
        return len(self._subscribers.get(topic, []))

    @property
    def stats(self) -> dict[str, int]:
        """Return basic stats: published and dropped counts."""
        return {
            "published": self._stats_published,
            "dropped": self._stats_dropped,
        }
