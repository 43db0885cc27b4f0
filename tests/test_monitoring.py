"""Tests for monitoring.metrics — Prometheus counters, gauges, histograms, exposition."""

from __future__ import annotations

from prometheus_client import CollectorRegistry

from core.retry import RetryPolicy
from monitoring.metrics import MetricsRegistry


def _value(metrics: MetricsRegistry, name: str, **labels) -> float | None:
    return metrics.registry.get_sample_value(name, labels or None)


# ════════════════════════════════════════════════════════════════
# MetricsRegistry
# ════════════════════════════════════════════════════════════════


class TestMetricsRegistry:
    """Tests for Prometheus metrics registry."""

    def test_fresh_registry_creates_all_metrics(self) -> None:
        """All expected metrics should exist on a fresh registry."""
        m = MetricsRegistry()
        assert m.flows_admitted is not None
        assert m.flows_duplicate is not None
        assert m.flows_terminal is not None
        assert m.flows_inflight is not None
        assert m.flow_duration is not None
        assert m.retry_attempts is not None
        assert m.cache_lookups is not None
        assert m.evm_broadcasts is not None
        assert m.ledger_submissions is not None

    def test_admission_and_terminal(self) -> None:
        m = MetricsRegistry()
        m.record_admitted("WITHDRAWAL")
        m.record_admitted("DEPOSIT")
        assert _value(m, "relayer_flows_inflight") == 2

        m.record_terminal("WITHDRAWAL", "COMPLETED", 12.5)
        assert _value(m, "relayer_flows_inflight") == 1
        assert _value(
            m, "relayer_flows_terminal_total", direction="WITHDRAWAL", outcome="COMPLETED"
        ) == 1
        assert _value(m, "relayer_flow_duration_seconds_count", direction="WITHDRAWAL") == 1
        assert _value(m, "relayer_flow_duration_seconds_sum", direction="WITHDRAWAL") == 12.5

    def test_terminal_without_duration(self) -> None:
        m = MetricsRegistry()
        m.record_admitted("DEPOSIT")
        m.record_terminal("DEPOSIT", "TIMED_OUT")
        assert _value(m, "relayer_flow_duration_seconds_count", direction="DEPOSIT") is None

    def test_duplicate(self) -> None:
        m = MetricsRegistry()
        m.record_duplicate("WITHDRAWAL")
        m.record_duplicate("WITHDRAWAL")
        assert _value(m, "relayer_flows_duplicate_total", direction="WITHDRAWAL") == 2
        assert _value(m, "relayer_flows_inflight") == 0

    def test_cache_lookups(self) -> None:
        m = MetricsRegistry()
        m.record_cache_lookup("transaction", True)
        m.record_cache_lookup("transaction", False)
        m.record_cache_lookup("transaction", True)
        assert _value(m, "relayer_cache_lookups_total", namespace="transaction", result="hit") == 2
        assert _value(m, "relayer_cache_lookups_total", namespace="transaction", result="miss") == 1

    def test_submissions(self) -> None:
        m = MetricsRegistry()
        m.record_evm_broadcast(True)
        m.record_evm_broadcast(False)
        m.record_ledger_submission("claim_erc20", True)
        assert _value(m, "relayer_evm_broadcasts_total", status="error") == 1
        assert _value(
            m, "relayer_ledger_submissions_total", instruction="claim_erc20", status="ok"
        ) == 1

    def test_retry_hook_matches_policy(self) -> None:
        m = MetricsRegistry()
        policy = RetryPolicy(on_retry=m.record_retry)
        policy.on_retry("get_nonce")
        assert _value(m, "relayer_retry_attempts_total", operation="get_nonce") == 1

    def test_exposition_returns_bytes(self) -> None:
        m = MetricsRegistry()
        m.record_admitted("DEPOSIT")
        output = m.exposition()
        assert isinstance(output, bytes)
        assert b"relayer_flows_admitted_total" in output

    def test_app_info(self) -> None:
        m = MetricsRegistry()
        m.app_info.info({"version": "0.1.0", "evm_chain_id": "11155111"})
        assert b"relayer_info" in m.exposition()

    def test_isolated_registries(self) -> None:
        """Two registries must not share state."""
        a = MetricsRegistry(CollectorRegistry())
        b = MetricsRegistry(CollectorRegistry())
        a.record_duplicate("DEPOSIT")
        assert _value(a, "relayer_flows_duplicate_total", direction="DEPOSIT") == 1
        assert _value(b, "relayer_flows_duplicate_total", direction="DEPOSIT") is None
