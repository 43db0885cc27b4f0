"""Tests for core.retry — attempts, backoff, predicate, cancellation."""

from __future__ import annotations

import asyncio

import pytest

from core.errors import NotFoundError, RetryExhaustedError, RpcError, is_retryable
from core.retry import RetryPolicy, quadratic_backoff, retry


def _no_wait(_attempt: int) -> float:
    return 0.0


class _Flaky:
    """Fails the first ``failures`` calls, then returns ``result``."""

    def __init__(self, failures: int, result: str = "ok", exc: Exception | None = None) -> None:
        self.failures = failures
        self.result = result
        self.exc = exc or RpcError("node unavailable")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.result


class TestBackoff:
    def test_quadratic_schedule(self):
        backoff = quadratic_backoff(500)
        assert [backoff(a) for a in (1, 2, 3)] == [0.5, 2.0, 4.5]

    def test_custom_base(self):
        assert quadratic_backoff(100)(3) == pytest.approx(0.9)


class TestRetry:
    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self):
        op = _Flaky(failures=2)
        assert await retry(op, max_attempts=3, backoff=_no_wait) == "ok"
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_exhaustion_names_attempt_count(self):
        op = _Flaky(failures=5)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry(op, max_attempts=3, backoff=_no_wait)
        assert op.calls == 3
        assert exc_info.value.attempts == 3
        assert "Retry failed after 3 attempts" in str(exc_info.value)
        assert "node unavailable" in str(exc_info.value)
        assert isinstance(exc_info.value.last_error, RpcError)

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_unchanged(self):
        op = _Flaky(failures=5, exc=NotFoundError("pending withdrawal account not found"))
        with pytest.raises(NotFoundError):
            await retry(op, max_attempts=3, backoff=_no_wait, should_retry=is_retryable)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_backoff_receives_failed_attempt_number(self):
        seen: list[int] = []

        def backoff(attempt: int) -> float:
            seen.append(attempt)
            return 0.0

        await retry(_Flaky(failures=2), max_attempts=3, backoff=backoff)
        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_cancel_event_stops_before_next_attempt(self):
        cancel = asyncio.Event()
        op = _Flaky(failures=5)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            cancel.set()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry(op, max_attempts=5, backoff=lambda _a: 10.0, cancel_event=cancel)
        await canceller
        assert op.calls == 1
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            await retry(_Flaky(failures=0), max_attempts=0)


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_policy_run_and_hook(self):
        retried: list[str] = []
        policy = RetryPolicy(max_attempts=3, backoff=_no_wait, on_retry=retried.append)
        op = _Flaky(failures=1)
        assert await policy.run(op, name="get_nonce") == "ok"
        assert retried == ["get_nonce"]

    def test_is_retryable(self):
        assert is_retryable(RpcError("timeout"))
        assert is_retryable(ConnectionError())
        assert not is_retryable(NotFoundError("missing"))
