"""Tests for solana_infra.result_cache — TTL expiry, in-flight sharing, ledger reads."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature

from core.retry import RetryPolicy
from solana_infra.result_cache import CachedLedgerReader, ResultCache

PROGRAM = Pubkey.from_string("4uvZW8K4g4jBg7dzPNbb9XDxJLFBK7V6iC76uofmYvEU")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestResultCache:
    @pytest.mark.asyncio
    async def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = ResultCache(clock=clock)
        loader = AsyncMock(return_value="value")

        assert await cache.get_or_load(("tx", "a"), loader, ttl_s=120) == "value"
        clock.advance(119)
        assert await cache.get_or_load(("tx", "a"), loader, ttl_s=120) == "value"
        assert loader.await_count == 1
        assert (cache.hits, cache.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_reload_after_expiry(self):
        clock = FakeClock()
        cache = ResultCache(clock=clock)
        loader = AsyncMock(side_effect=["old", "new"])

        await cache.get_or_load("k", loader, ttl_s=30)
        clock.advance(30)
        assert await cache.get_or_load("k", loader, ttl_s=30) == "new"
        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self):
        cache = ResultCache(clock=FakeClock())
        loader = AsyncMock(side_effect=[None, "late"])
        assert await cache.get_or_load("k", loader, ttl_s=60) is None
        assert await cache.get_or_load("k", loader, ttl_s=60) == "late"

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_load(self):
        cache = ResultCache()
        gate = asyncio.Event()
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await gate.wait()
            return "shared"

        first = asyncio.create_task(cache.get_or_load("k", loader, ttl_s=60))
        second = asyncio.create_task(cache.get_or_load("k", loader, ttl_s=60))
        await asyncio.sleep(0.01)
        gate.set()
        assert await asyncio.gather(first, second) == ["shared", "shared"]
        assert calls == 1

    @pytest.mark.asyncio
    async def test_loader_error_not_cached(self):
        cache = ResultCache()
        loader = AsyncMock(side_effect=[RuntimeError("boom"), "ok"])
        with pytest.raises(RuntimeError):
            await cache.get_or_load("k", loader, ttl_s=60)
        assert await cache.get_or_load("k", loader, ttl_s=60) == "ok"

    @pytest.mark.asyncio
    async def test_lookup_hook(self):
        seen: list[tuple[str, bool]] = []
        cache = ResultCache(on_lookup=lambda ns, hit: seen.append((ns, hit)))
        loader = AsyncMock(return_value=1)
        await cache.get_or_load(("transaction", "x"), loader, ttl_s=60)
        await cache.get_or_load(("transaction", "x"), loader, ttl_s=60)
        assert seen == [("transaction", False), ("transaction", True)]


class TestCachedLedgerReader:
    def _reader(self, clock: FakeClock):
        client = SimpleNamespace(
            get_transaction=AsyncMock(return_value=SimpleNamespace(value={"slot": 1})),
            get_signatures_for_address=AsyncMock(
                return_value=SimpleNamespace(value=[SimpleNamespace(signature="s1")])
            ),
        )
        reader = CachedLedgerReader(
            client,
            ResultCache(clock=clock),
            retry_policy=RetryPolicy(max_attempts=1),
        )
        return client, reader

    @pytest.mark.asyncio
    async def test_transaction_cached_for_two_minutes(self):
        clock = FakeClock()
        client, reader = self._reader(clock)
        sig = Signature.default()

        await reader.get_transaction(sig)
        clock.advance(60)
        await reader.get_transaction(str(sig))
        assert client.get_transaction.await_count == 1

        clock.advance(61)
        await reader.get_transaction(sig)
        assert client.get_transaction.await_count == 2

    @pytest.mark.asyncio
    async def test_signatures_cached_for_thirty_seconds(self):
        clock = FakeClock()
        client, reader = self._reader(clock)

        first = await reader.get_signatures_for_address(PROGRAM, limit=10)
        clock.advance(29)
        await reader.get_signatures_for_address(PROGRAM, limit=10)
        assert client.get_signatures_for_address.await_count == 1
        assert first[0].signature == "s1"

        clock.advance(1)
        await reader.get_signatures_for_address(PROGRAM, limit=10)
        assert client.get_signatures_for_address.await_count == 2

    @pytest.mark.asyncio
    async def test_different_limits_are_different_keys(self):
        client, reader = self._reader(FakeClock())
        await reader.get_signatures_for_address(PROGRAM, limit=10)
        await reader.get_signatures_for_address(PROGRAM, limit=20)
        assert client.get_signatures_for_address.await_count == 2
