"""RetryPolicy — bounded retries with pluggable backoff and cancellation.

Wraps individual ledger RPC calls. Never wrap a whole multi-step flow:
re-running a flow could submit the same transaction twice.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import structlog

from core.errors import RetryExhaustedError

logger = structlog.get_logger("core.retry")

T = TypeVar("T")


def quadratic_backoff(base_ms: int = 500) -> Callable[[int], float]:
    """Return ``attempt -> seconds`` computing ``base_ms * attempt**2``."""

    def _backoff(attempt: int) -> float:
        return base_ms * attempt * attempt / 1000.0

    return _backoff


def _always(_exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings shared across many calls.

    Parameters
    ----------
    max_attempts:
        Total number of attempts, including the first one.
    backoff:
        Maps the 1-based attempt that just failed to a delay in seconds.
    should_retry:
        Predicate over the raised exception; ``False`` propagates it
        immediately.
    on_retry:
        Called with the operation name before each backoff sleep.
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=quadratic_backoff)
    should_retry: Callable[[BaseException], bool] = _always
    on_retry: Callable[[str], None] | None = None

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        cancel_event: asyncio.Event | None = None,
        name: str | None = None,
    ) -> T:
        return await retry(
            operation,
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            should_retry=self.should_retry,
            cancel_event=cancel_event,
            name=name,
            on_retry=self.on_retry,
        )


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    backoff: Callable[[int], float] | None = None,
    should_retry: Callable[[BaseException], bool] | None = None,
    cancel_event: asyncio.Event | None = None,
    name: str | None = None,
    on_retry: Callable[[str], None] | None = None,
) -> T:
    """Run *operation* until it succeeds or the policy gives up.

    A new attempt starts only while attempts remain, ``should_retry``
    approves the last error and *cancel_event* has not fired. Errors
    rejected by ``should_retry`` propagate unchanged; anything else ends
    in :class:`RetryExhaustedError` carrying the attempt count and the
    last error.

    Raises
    ------
    ValueError
        If ``max_attempts`` is smaller than 1.
    RetryExhaustedError
        When the final attempt failed or cancellation stopped the loop.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    backoff = backoff or quadratic_backoff()
    should_retry = should_retry or _always
    label = name or getattr(operation, "__name__", "operation")

    attempts = 0
    last_error: Exception | None = None

    while attempts < max_attempts:
        if cancel_event is not None and cancel_event.is_set():
            break

        attempts += 1
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if not should_retry(exc):
                raise
            if attempts >= max_attempts:
                break

            delay = backoff(attempts)
            logger.warning(
                "retry.attempt_failed",
                operation=label,
                attempt=attempts,
                max_attempts=max_attempts,
                delay_s=round(delay, 3),
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(label)
            if await _sleep_or_cancel(delay, cancel_event):
                break

    logger.error(
        "retry.exhausted",
        operation=label,
        attempts=attempts,
        error=str(last_error) if last_error else None,
    )
    raise RetryExhaustedError(attempts, last_error)


async def _sleep_or_cancel(delay: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep for *delay*; return True if *cancel_event* fired meanwhile."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
