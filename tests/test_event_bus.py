"""Tests for core.event_bus — publish, subscribe, fanout, edge cases."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from core.event_bus import TOPIC_FLOW_STATE, TOPIC_MPC_RESPONSE, Event, EventBus


# ──────────────────────────────────────────────
# Basic publish / subscribe
# ──────────────────────────────────────────────


class TestEventBusBasic:
    """Basic publish/subscribe behaviour."""

    @pytest.mark.asyncio
    async def test_single_subscriber_receives_event(self):
        bus = EventBus()
        received: list[Event] = []

        async def consumer():
            async for event in bus.subscribe(TOPIC_FLOW_STATE):
                received.append(event)
                break  # stop after one

        task = asyncio.create_task(consumer())
        await asyncio.sleep(0.01)  # let subscriber register

        await bus.publish(TOPIC_FLOW_STATE, {"state": "COMPLETED"})
        await asyncio.sleep(0.01)

        assert len(received) == 1
        assert received[0].topic == TOPIC_FLOW_STATE
        assert received[0].payload["state"] == "COMPLETED"
        assert received[0].trace_id  # auto-generated

        await task

    @pytest.mark.asyncio
    async def test_subscription_registered_before_first_await(self):
        bus = EventBus()
        sub = bus.subscribe(TOPIC_MPC_RESPONSE)
        bus.publish_nowait(TOPIC_MPC_RESPONSE, {"n": 1})
        event = await asyncio.wait_for(sub.get(), timeout=1)
        assert event.payload == {"n": 1}
        sub.close()

    @pytest.mark.asyncio
    async def test_explicit_trace_id(self):
        bus = EventBus()
        tid = str(uuid4())
        async with bus.subscribe(TOPIC_FLOW_STATE) as sub:
            await bus.publish(TOPIC_FLOW_STATE, {"state": "SETTLING"}, trace_id=tid)
            event = await sub.get()
        assert event.trace_id == tid

    @pytest.mark.asyncio
    async def test_event_has_timestamp(self):
        bus = EventBus()
        async with bus.subscribe("t") as sub:
            await bus.publish("t", {})
            event = await sub.get()
        assert event.timestamp.tzinfo is not None


# ──────────────────────────────────────────────
# Fanout and isolation
# ──────────────────────────────────────────────


class TestEventBusFanout:
    """Every subscriber gets its own copy."""

    @pytest.mark.asyncio
    async def test_fanout_to_three_subscribers(self):
        bus = EventBus()
        subs = [bus.subscribe(TOPIC_MPC_RESPONSE) for _ in range(3)]

        await bus.publish(TOPIC_MPC_RESPONSE, {"request_id": "0x01"})

        for sub in subs:
            assert sub.pending() == 1
            assert (await sub.get()).payload["request_id"] == "0x01"
            sub.close()

    @pytest.mark.asyncio
    async def test_different_topics_isolated(self):
        bus = EventBus()
        responses = bus.subscribe(TOPIC_MPC_RESPONSE)
        states = bus.subscribe(TOPIC_FLOW_STATE)

        await bus.publish(TOPIC_FLOW_STATE, {"state": "FAILED"})

        assert responses.pending() == 0
        assert states.pending() == 1

    @pytest.mark.asyncio
    async def test_publish_to_empty_topic_no_error(self):
        bus = EventBus()
        await bus.publish("nobody", {"x": 1})
        assert bus.stats["published"] == 1


# ──────────────────────────────────────────────
# Lifecycle
# ──────────────────────────────────────────────


class TestEventBusLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_detaches(self):
        bus = EventBus()
        async with bus.subscribe(TOPIC_FLOW_STATE):
            assert bus.subscriber_count(TOPIC_FLOW_STATE) == 1
        assert bus.subscriber_count(TOPIC_FLOW_STATE) == 0
        assert TOPIC_FLOW_STATE not in bus.topics

    @pytest.mark.asyncio
    async def test_subscriber_removed_on_cancel(self):
        bus = EventBus()

        async def consumer():
            async for _ in bus.subscribe(TOPIC_MPC_RESPONSE):
                pass

        task = asyncio.create_task(consumer())
        await asyncio.sleep(0.01)
        assert bus.subscriber_count(TOPIC_MPC_RESPONSE) == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert bus.subscriber_count(TOPIC_MPC_RESPONSE) == 0

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        bus = EventBus()
        sub = bus.subscribe("t")
        sub.close()
        sub.close()
        assert bus.subscriber_count("t") == 0


# ──────────────────────────────────────────────
# Backpressure
# ──────────────────────────────────────────────


class TestEventBusBackpressure:
    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        bus = EventBus(maxsize=2)
        sub = bus.subscribe("t")
        for i in range(3):
            await bus.publish("t", {"i": i})

        assert sub.pending() == 2
        assert bus.stats == {"published": 3, "dropped": 1}
        assert (await sub.get()).payload["i"] == 0
        assert (await sub.get()).payload["i"] == 1
        assert sub.pending() == 0

    @pytest.mark.asyncio
    async def test_topics_list(self):
        bus = EventBus()
        bus.subscribe(TOPIC_MPC_RESPONSE)
        bus.subscribe(TOPIC_FLOW_STATE)
        assert sorted(bus.topics) == sorted([TOPIC_MPC_RESPONSE, TOPIC_FLOW_STATE])
