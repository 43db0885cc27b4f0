"""RequestTracker — single-flight guard keyed by request id.

The in-flight set lives in this process only. Two relayer instances, or
one instance restarted mid-flow, can each admit the same key; running
more than one replica needs an external coordination store instead.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Iterator

import structlog

from core.errors import DuplicateRequestError

logger = structlog.get_logger("execution.request_tracker")


class RequestTracker:
    """Mutex-guarded map of in-flight keys to their admission time.

    ``admit`` never blocks on another flow: it either takes ownership of
    the key or reports that someone else holds it. The lock guards only
    the dictionary operations, so it is safe from both the event loop
    and worker threads.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inflight: dict[str, float] = {}

    def admit(self, key: str) -> bool:
        """Take ownership of *key*; ``False`` if it is already in flight."""
        with self._lock:
            if key in self._inflight:
                duplicate = True
            else:
                self._inflight[key] = time.monotonic()
                duplicate = False
        if duplicate:
            logger.info("request_tracker.duplicate", key=key)
            return False
        logger.debug("request_tracker.admitted", key=key)
        return True

    def release(self, key: str) -> None:
        """Drop *key*; releasing an unknown key is a no-op."""
        with self._lock:
            started = self._inflight.pop(key, None)
        if started is not None:
            logger.debug(
                "request_tracker.released",
                key=key,
                held_s=round(time.monotonic() - started, 3),
            )

    def is_tracked(self, key: str) -> bool:
        with self._lock:
            return key in self._inflight

    @contextmanager
    def track(self, key: str) -> Iterator[str]:
        """Hold *key* for the duration of the block.

        Raises
        ------
        DuplicateRequestError
            If *key* is already in flight.
        """
        if not self.admit(key):
            raise DuplicateRequestError(key)
        try:
            yield key
        finally:
            self.release(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._inflight)

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._inflight)
