from __future__ import annotations

import pytest

from causal_router.metrics import MetricsRegistry


class TestMetricsRegistry:
    def test_counter_and_gauge(self) -> None:
        registry = MetricsRegistry()
        registry.counter("signals_received").increment()
        registry.counter("signals_received").increment(2)
        registry.gauge("inflight").set(3)
        registry.gauge("inflight").set(1)

        assert registry.value("signals_received") == 3
        assert registry.value("inflight") == 1
        assert registry.value("never_seen") == 0.0
        assert registry.metric_names() == ["inflight", "signals_received"]

    def test_type_mismatch(self) -> None:
        registry = MetricsRegistry()
        registry.counter("inflight")
        with pytest.raises(ValueError):
            registry.gauge("inflight")

    def test_snapshot_exports(self) -> None:
        registry = MetricsRegistry()
        registry.counter("executions_failed").increment()
        snapshot = registry.snapshot(now=10.0)

        assert snapshot.to_dict() == {"timestamp": 10.0, "metrics": {"executions_failed": 1.0}}
        assert snapshot.to_prometheus_text() == "causal_router_executions_failed 1.0\n"
        assert registry.snapshot().to_prometheus_text(prefix="x") == "x_executions_failed 1.0\n"

    def test_empty_prometheus_text(self) -> None:
        assert MetricsRegistry().snapshot().to_prometheus_text() == ""
