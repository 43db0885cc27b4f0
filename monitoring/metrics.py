"""Prometheus metrics registry for the bridge relayer.

Exposes flow admissions, duplicates and terminal outcomes, in-flight
count, flow duration, retry attempts, cache hit ratio and submissions
on both ledgers, labelled by direction or instruction where relevant.

Uses a dedicated ``CollectorRegistry`` so tests can instantiate
isolated registries without polluting the global default.
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

__all__ = ["MetricsRegistry"]


class MetricsRegistry:
    """Central Prometheus metrics registry.

    Parameters
    ----------
    registry:
        A ``CollectorRegistry`` to register metrics in.  When *None*,
        a fresh registry is created (useful for tests).

    Usage::

        metrics = MetricsRegistry()
        metrics.record_admitted("WITHDRAWAL")
        metrics.record_terminal("WITHDRAWAL", "COMPLETED", 42.0)
        print(metrics.exposition())
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        # ── App info ────────────────────────────────────────────
        self.app_info = Info(
            "relayer",
            "Bridge relayer build info",
            registry=self._registry,
        )

        # ── Flows ───────────────────────────────────────────────
        self.flows_admitted = Counter(
            "relayer_flows_admitted_total",
            "Flows admitted by the single-flight tracker",
            labelnames=["direction"],
            registry=self._registry,
        )

        self.flows_duplicate = Counter(
            "relayer_flows_duplicate_total",
            "Notifications acknowledged as already processing",
            labelnames=["direction"],
            registry=self._registry,
        )

        self.flows_terminal = Counter(
            "relayer_flows_terminal_total",
            "Flows that reached a terminal state",
            labelnames=["direction", "outcome"],
            registry=self._registry,
        )

        self.flows_inflight = Gauge(
            "relayer_flows_inflight",
            "Flows currently held by the tracker",
            registry=self._registry,
        )

        self.flow_duration = Histogram(
            "relayer_flow_duration_seconds",
            "Admission to terminal state",
            labelnames=["direction"],
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200),
            registry=self._registry,
        )

        # ── RPC ─────────────────────────────────────────────────
        self.retry_attempts = Counter(
            "relayer_retry_attempts_total",
            "Failed RPC attempts that were retried",
            labelnames=["operation"],
            registry=self._registry,
        )

        self.cache_lookups = Counter(
            "relayer_cache_lookups_total",
            "Result cache lookups",
            labelnames=["namespace", "result"],
            registry=self._registry,
        )

        # ── Submissions ─────────────────────────────────────────
        self.evm_broadcasts = Counter(
            "relayer_evm_broadcasts_total",
            "MPC-signed EVM transactions broadcast",
            labelnames=["status"],
            registry=self._registry,
        )

        self.ledger_submissions = Counter(
            "relayer_ledger_submissions_total",
            "Custody-program transactions submitted",
            labelnames=["instruction", "status"],
            registry=self._registry,
        )

    # ── Convenience recording methods ───────────────────────────

    @property
    def registry(self) -> CollectorRegistry:
        """Return the underlying ``CollectorRegistry``."""
        return self._registry

    def record_admitted(self, direction: str) -> None:
        self.flows_admitted.labels(direction=direction).inc()
        self.flows_inflight.inc()

    def record_duplicate(self, direction: str) -> None:
        self.flows_duplicate.labels(direction=direction).inc()

    def record_terminal(
        self,
        direction: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record the end of a flow.

        Parameters
        ----------
        direction:
            ``"DEPOSIT"`` or ``"WITHDRAWAL"``.
        outcome:
            Terminal state name.
        duration_seconds:
            Time since admission (optional).
        """
        self.flows_terminal.labels(direction=direction, outcome=outcome).inc()
        self.flows_inflight.dec()
        if duration_seconds is not None:
            self.flow_duration.labels(direction=direction).observe(duration_seconds)

    def record_retry(self, operation: str) -> None:
        self.retry_attempts.labels(operation=operation).inc()

    def record_cache_lookup(self, namespace: str, hit: bool) -> None:
        """Hook signature matches ``ResultCache(on_lookup=...)``."""
        self.cache_lookups.labels(namespace=namespace, result="hit" if hit else "miss").inc()

    def record_evm_broadcast(self, ok: bool) -> None:
        self.evm_broadcasts.labels(status="ok" if ok else "error").inc()

    def record_ledger_submission(self, instruction: str, ok: bool) -> None:
        """Hook signature matches ``CustodyClient(on_submission=...)``."""
        self.ledger_submissions.labels(
            instruction=instruction, status="ok" if ok else "error"
        ).inc()

    def exposition(self) -> bytes:
        """Return Prometheus text exposition format."""
        return generate_latest(self._registry)
