"""RPCManager — EVM JSON-RPC pool with ordered failover and health tracking.

Every EVM read and broadcast in the relayer goes through ``execute()``,
which walks the endpoints from healthiest to least healthy and raises
:class:`core.errors.RpcError` only once all of them failed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

import structlog
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from core.errors import RpcError

logger = structlog.get_logger("web3_infra.rpc_manager")

T = TypeVar("T")


class EndpointStatus(str, Enum):
    """Health status of an RPC endpoint."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


_STATUS_ORDER = (EndpointStatus.HEALTHY, EndpointStatus.DEGRADED, EndpointStatus.DOWN)


@dataclass
class EndpointMetrics:
    """Rolling health of one endpoint."""

    url: str
    status: EndpointStatus = EndpointStatus.HEALTHY
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    avg_latency_ms: float = 0.0
    last_error: str | None = None

    def record_success(self, latency_ms: float) -> None:
        self.total_requests += 1
        self.consecutive_failures = 0
        self.status = EndpointStatus.HEALTHY
        self.last_error = None
        # EMA, alpha 0.3
        if self.avg_latency_ms == 0.0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.3 * latency_ms + 0.7 * self.avg_latency_ms

    def record_failure(self, error: str, down_after: int) -> None:
        self.total_requests += 1
        self.total_failures += 1
        self.consecutive_failures += 1
        self.last_error = error
        if self.consecutive_failures >= down_after:
            self.status = EndpointStatus.DOWN
        elif self.consecutive_failures >= 2:
            self.status = EndpointStatus.DEGRADED


@dataclass
class RPCManagerConfig:
    """Tuning knobs for the endpoint pool."""

    health_check_interval_s: float = 30.0
    request_timeout_s: float = 10.0
    # consecutive failures before an endpoint is only tried as a last resort
    max_consecutive_failures: int = 5


class RPCManager:
    """Pool of ``AsyncWeb3`` clients with failover.

    Usage::

        async with RPCManager(settings.evm_rpc_urls) as rpc:
            nonce = await rpc.execute(
                lambda w3: w3.eth.get_transaction_count(address)
            )
    """

    def __init__(
        self,
        endpoints: list[str],
        config: RPCManagerConfig | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")

        self._config = config or RPCManagerConfig()
        self._endpoints = list(endpoints)
        self._metrics: dict[str, EndpointMetrics] = {
            url: EndpointMetrics(url=url) for url in self._endpoints
        }
        self._clients: dict[str, AsyncWeb3] = {}
        self._health_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Create one client per endpoint and start the health loop. Idempotent."""
        if self._started:
            return

        for url in self._endpoints:
            provider = AsyncHTTPProvider(
                url,
                request_kwargs={"timeout": self._config.request_timeout_s},
            )
            self._clients[url] = AsyncWeb3(provider)

        self._started = True
        self._health_task = asyncio.create_task(
            self._health_loop(), name="evm_rpc_health"
        )
        logger.info(
            "rpc_manager.started",
            num_endpoints=len(self._endpoints),
            endpoints=[redact_url(u) for u in self._endpoints],
        )

    async def stop(self) -> None:
        if not self._started:
            return

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        self._clients.clear()
        self._started = False
        logger.info("rpc_manager.stopped")

    async def __aenter__(self) -> RPCManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Public API ───────────────────────────────────────────────

    async def execute(self, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Run *fn* against the best endpoint, failing over on error.

        Raises
        ------
        RpcError
            If every endpoint raised.
        """
        if not self._started:
            raise RuntimeError("RPCManager not started — call start() first")

        last_error: Exception | None = None
        for url in self._endpoints_by_priority():
            metrics = self._metrics[url]
            start = time.monotonic()
            try:
                result = await fn(self._clients[url])
            except Exception as exc:
                metrics.record_failure(str(exc), self._config.max_consecutive_failures)
                last_error = exc
                logger.warning(
                    "rpc_manager.endpoint_failed",
                    url=redact_url(url),
                    error=str(exc),
                    consecutive_failures=metrics.consecutive_failures,
                )
                continue
            metrics.record_success((time.monotonic() - start) * 1000)
            return result

        raise RpcError(
            f"All {len(self._endpoints)} EVM RPC endpoints failed",
            last_error=last_error,
        )

    def get_endpoint_status(self) -> list[dict[str, Any]]:
        """Per-endpoint summary reported on ``/health``."""
        return [
            {
                "url": redact_url(m.url),
                "status": m.status.value,
                "avg_latency_ms": round(m.avg_latency_ms, 1),
                "consecutive_failures": m.consecutive_failures,
                "last_error": m.last_error,
            }
            for m in self._metrics.values()
        ]

    # ── Health loop ──────────────────────────────────────────────

    async def _health_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.health_check_interval_s)
                await asyncio.gather(
                    *(self._probe(url) for url in self._endpoints),
                    return_exceptions=True,
                )
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("rpc_manager.health_check_error", error=str(exc))

    async def _probe(self, url: str) -> None:
        """eth_blockNumber against one endpoint."""
        w3 = self._clients.get(url)
        if w3 is None:
            return
        metrics = self._metrics[url]
        start = time.monotonic()
        try:
            await w3.eth.block_number
        except Exception as exc:
            metrics.record_failure(str(exc), self._config.max_consecutive_failures)
            logger.warning(
                "rpc_manager.health_check_failed",
                url=redact_url(url),
                error=str(exc),
            )
            return
        metrics.record_success((time.monotonic() - start) * 1000)

    def _endpoints_by_priority(self) -> list[str]:
        """Healthy first, then degraded, then down; by latency within a group."""
        ordered: list[str] = []
        for status in _STATUS_ORDER:
            group = [m for m in self._metrics.values() if m.status == status]
            group.sort(key=lambda m: m.avg_latency_ms)
            ordered.extend(m.url for m in group)
        return ordered


def redact_url(url: str) -> str:
    """Keep scheme and host only; RPC URLs often embed API keys."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return url[:16] + "..."
    return f"{parsed.scheme}://{parsed.hostname}"
