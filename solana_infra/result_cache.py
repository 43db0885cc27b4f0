"""ResultCache — TTL read-through memoization for hot ledger reads.

Two read paths are cached: transaction-by-signature (2 minutes) and
signature-list-by-address (30 seconds). Entries are immutable once
written and simply expire; concurrent misses for the same key share one
in-flight load. ``None`` results are not stored.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

import structlog
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey
from solders.signature import Signature

from core.errors import is_retryable
from core.retry import RetryPolicy

logger = structlog.get_logger("solana_infra.result_cache")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    value: Any
    expires_at: float


class ResultCache:
    """Process-wide TTL cache keyed by call arguments.

    Parameters
    ----------
    clock:
        Monotonic time source; injectable for tests.
    max_entries:
        Soft bound; expired entries are swept when it is exceeded.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
        on_lookup: Callable[[str, bool], None] | None = None,
    ) -> None:
        self._clock = clock
        self._max_entries = max_entries
        self._entries: dict[Hashable, CacheEntry] = {}
        self._inflight: dict[Hashable, asyncio.Future[Any]] = {}
        self._on_lookup = on_lookup
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.value

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        ttl_s: float,
    ) -> Any:
        """Return the cached value for *key*, calling *loader* on a miss."""
        namespace = key[0] if isinstance(key, tuple) and key else "default"

        cached = self.peek(key)
        if cached is not None:
            self.hits += 1
            self._record(str(namespace), True)
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        self.misses += 1
        self._record(str(namespace), False)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await loader()
        except BaseException as exc:
            future.set_exception(exc)
            # nobody else awaited it; mark retrieved to silence the loop warning
            future.exception()
            raise
        else:
            future.set_result(value)
            if value is not None:
                self._store(key, value, ttl_s)
            return value
        finally:
            self._inflight.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _store(self, key: Hashable, value: Any, ttl_s: float) -> None:
        if len(self._entries) >= self._max_entries:
            self._sweep()
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_s)

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        logger.debug("result_cache.swept", removed=len(expired), size=len(self._entries))

    def _record(self, namespace: str, hit: bool) -> None:
        if self._on_lookup is not None:
            self._on_lookup(namespace, hit)


class CachedLedgerReader:
    """The two cached read paths over a ``solana.rpc.async_api.AsyncClient``.

    Each underlying RPC call is wrapped in the retry policy; the cache
    sits outside the retry so a successful retry is cached once.
    """

    def __init__(
        self,
        client: Any,  # solana.rpc.async_api.AsyncClient
        cache: ResultCache | None = None,
        transaction_ttl_s: float = 120.0,
        signatures_ttl_s: float = 30.0,
        commitment: Commitment | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._cache = cache if cache is not None else ResultCache()
        self._transaction_ttl_s = transaction_ttl_s
        self._signatures_ttl_s = signatures_ttl_s
        self._commitment = commitment
        self._retry = retry_policy or RetryPolicy(should_retry=is_retryable)

    @property
    def cache(self) -> ResultCache:
        return self._cache

    async def get_signatures_for_address(self, address: Pubkey, limit: int = 100) -> list[Any]:
        """Recent signature infos for *address*, newest first."""

        async def _load() -> list[Any]:
            resp = await self._retry.run(
                lambda: self._client.get_signatures_for_address(
                    address, limit=limit, commitment=self._commitment
                ),
                name="get_signatures_for_address",
            )
            return list(resp.value or [])

        return await self._cache.get_or_load(
            ("signatures", str(address), limit), _load, self._signatures_ttl_s
        )

    async def get_transaction(self, signature: Signature | str) -> Any | None:
        """Confirmed transaction with metadata, or ``None`` if unknown yet."""
        sig = Signature.from_string(signature) if isinstance(signature, str) else signature

        async def _load() -> Any | None:
            resp = await self._retry.run(
                lambda: self._client.get_transaction(
                    sig,
                    encoding="json",
                    commitment=self._commitment,
                    max_supported_transaction_version=0,
                ),
                name="get_transaction",
            )
            return resp.value

        return await self._cache.get_or_load(
            ("transaction", str(sig)), _load, self._transaction_ttl_s
        )
