"""SignatureInbox — holds MPC responses until the owning flow consumes them."""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

from core.errors import SignatureTimeoutError
from core.event_bus import TOPIC_MPC_RESPONSE, EventBus
from models.chain import EventKind, SignatureEvent

logger = structlog.get_logger("execution.signature_inbox")


class SignatureInbox:
    """Response events keyed by ``(request_id, kind)``.

    Each event is handed out once: :meth:`take` removes it. Events
    nobody claims expire after ``ttl_s`` so late or foreign responses
    do not accumulate.

    Parameters
    ----------
    ttl_s:
        Lifetime of an unclaimed event.
    clock:
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        ttl_s: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        self._events: dict[tuple[bytes, EventKind], tuple[SignatureEvent, float]] = {}

    def put(self, event: SignatureEvent) -> bool:
        """Store *event*; returns ``False`` if one is already waiting."""
        self._expire()
        key = (event.request_id, event.kind)
        if key in self._events:
            return False
        self._events[key] = (event, self._clock())
        logger.debug(
            "signature_inbox.stored",
            request_id=event.request_id_hex,
            kind=event.kind.value,
        )
        return True

    def take(self, request_id: bytes, kind: EventKind) -> SignatureEvent | None:
        """Remove and return the event for ``(request_id, kind)`` if present."""
        self._expire()
        entry = self._events.pop((request_id, kind), None)
        return entry[0] if entry is not None else None

    def __len__(self) -> int:
        return len(self._events)

    async def wait_for(
        self,
        request_id: bytes,
        kind: EventKind,
        timeout_s: float,
        poll_interval_s: float = 2.0,
        on_tick: Callable[[], None] | None = None,
    ) -> SignatureEvent:
        """Poll until the event arrives; the task sleeps between ticks.

        Raises
        ------
        SignatureTimeoutError
            If nothing arrived within *timeout_s*.
        """
        deadline = self._clock() + timeout_s
        while True:
            event = self.take(request_id, kind)
            if event is not None:
                return event
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise SignatureTimeoutError(
                    f"No {kind.value} event for 0x{request_id.hex()} within {timeout_s}s",
                    request_id="0x" + request_id.hex(),
                )
            if on_tick is not None:
                on_tick()
            await asyncio.sleep(min(poll_interval_s, remaining))

    async def consume(self, bus: EventBus, ready: asyncio.Event | None = None) -> None:
        """Feed the inbox from ``TOPIC_MPC_RESPONSE`` until cancelled."""
        async with bus.subscribe(TOPIC_MPC_RESPONSE) as sub:
            if ready is not None:
                ready.set()
            async for bus_event in sub:
                event = bus_event.payload.get("event")
                if isinstance(event, SignatureEvent):
                    self.put(event)

    def _expire(self) -> None:
        now = self._clock()
        stale = [k for k, (_, at) in self._events.items() if now - at >= self._ttl_s]
        for key in stale:
            del self._events[key]
        if stale:
            logger.info("signature_inbox.expired", count=len(stale))
