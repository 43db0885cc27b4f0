"""FlowRegistry — status read path for supervised flows."""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any

import structlog

from core.event_bus import TOPIC_FLOW_STATE, EventBus
from models.bridge import Direction
from models.flow import FlowRecord, FlowState

logger = structlog.get_logger("execution.flow_registry")


class FlowRegistry:
    """Latest :class:`FlowRecord` per flow key, queryable by key or request id.

    A resubmitted key replaces the previous record. Terminal records are
    kept up to ``max_records``; the oldest terminal ones go first.
    """

    def __init__(self, bus: EventBus | None = None, max_records: int = 10_000) -> None:
        self._bus = bus
        self._max_records = max_records
        self._records: OrderedDict[str, FlowRecord] = OrderedDict()
        self._aliases: dict[str, str] = {}

    def open(self, key: str, direction: Direction, request_id: str | None = None) -> FlowRecord:
        record = FlowRecord(key=key, direction=direction, request_id=request_id)
        self._records.pop(key, None)
        self._records[key] = record
        if request_id is not None:
            self._aliases[request_id.lower()] = key
        self._evict()
        self._publish(record)
        return record

    def transition(self, key: str, state: FlowState, **changes: Any) -> FlowRecord:
        """Move *key* to *state* and apply field *changes*.

        Terminal records are final; later transitions are ignored.
        """
        current = self._records.get(key)
        if current is None:
            raise KeyError(key)
        if current.state.is_terminal:
            logger.warning(
                "flow_registry.transition_after_terminal",
                key=key,
                state=current.state.value,
                attempted=state.value,
            )
            return current

        updated = current.model_copy(
            update={**changes, "state": state, "updated_at": datetime.now(timezone.utc)}
        )
        self._records[key] = updated
        if updated.request_id is not None:
            self._aliases[updated.request_id.lower()] = key
        self._publish(updated)
        return updated

    def annotate(self, key: str, **changes: Any) -> FlowRecord:
        """Update fields without a state change."""
        current = self._records[key]
        updated = current.model_copy(
            update={**changes, "updated_at": datetime.now(timezone.utc)}
        )
        self._records[key] = updated
        if updated.request_id is not None:
            self._aliases[updated.request_id.lower()] = key
        return updated

    def get(self, key_or_request_id: str) -> FlowRecord | None:
        record = self._records.get(key_or_request_id)
        if record is not None:
            return record
        key = self._aliases.get(key_or_request_id.lower())
        return self._records.get(key) if key is not None else None

    def active(self) -> list[FlowRecord]:
        return [r for r in self._records.values() if not r.state.is_terminal]

    def __len__(self) -> int:
        return len(self._records)

    def _publish(self, record: FlowRecord) -> None:
        logger.info(
            "orchestrator.state_changed",
            key=record.key,
            direction=record.direction.value,
            state=record.state.value,
            request_id=record.request_id,
        )
        if self._bus is not None:
            self._bus.publish_nowait(
                TOPIC_FLOW_STATE,
                record.model_dump(mode="json"),
                trace_id=record.key,
            )

    def _evict(self) -> None:
        if len(self._records) <= self._max_records:
            return
        for key in [k for k, r in self._records.items() if r.state.is_terminal]:
            if len(self._records) <= self._max_records:
                break
            record = self._records.pop(key)
            if record.request_id is not None:
                self._aliases.pop(record.request_id.lower(), None)
