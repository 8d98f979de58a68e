"""In-process counters and gauges for the routing loop.

Snapshots export as a plain dict (JSON) or Prometheus text exposition.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class MetricValue:
    name: str
    metric_type: MetricType
    value: float = 0.0
    updated_at: float = 0.0

    def increment(self, amount: float = 1.0, now: float | None = None) -> None:
        self.value += amount
        self.updated_at = now or time.monotonic()

    def set(self, value: float, now: float | None = None) -> None:
        self.value = value
        self.updated_at = now or time.monotonic()


@dataclass(frozen=True)
class MetricSnapshot:
    timestamp: float
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_prometheus_text(self, prefix: str = "causal_router") -> str:
        lines: list[str] = []
        for name, value in sorted(self.metrics.items()):
            prom_name = f"{prefix}_{name}".replace(".", "_").replace("-", "_")
            lines.append(f"{prom_name} {value}")
        return "\n".join(lines) + "\n" if lines else ""

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "metrics": dict(self.metrics)}


class MetricsRegistry:
    """Usage::

        registry = MetricsRegistry()
        registry.counter("signals_routed").increment()
        registry.gauge("inflight").set(3)
        snapshot = registry.snapshot()
    """

    def __init__(self) -> None:
        self._metrics: Dict[str, MetricValue] = {}

    def counter(self, name: str) -> MetricValue:
        return self._get_or_create(name, MetricType.COUNTER)

    def gauge(self, name: str) -> MetricValue:
        return self._get_or_create(name, MetricType.GAUGE)

    def value(self, name: str) -> float:
        metric = self._metrics.get(name)
        return metric.value if metric is not None else 0.0

    def snapshot(self, now: float | None = None) -> MetricSnapshot:
        return MetricSnapshot(
            timestamp=now if now is not None else time.time(),
            metrics={name: mv.value for name, mv in self._metrics.items()},
        )

    def metric_names(self) -> list[str]:
        return sorted(self._metrics.keys())

    def _get_or_create(self, name: str, metric_type: MetricType) -> MetricValue:
        metric = self._metrics.get(name)
        if metric is None:
            metric = MetricValue(name=name, metric_type=metric_type)
            self._metrics[name] = metric
        elif metric.metric_type is not metric_type:
            raise ValueError(f"metric {name!r} is a {metric.metric_type.value}, not a {metric_type.value}")
        return metric
