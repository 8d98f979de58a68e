"""Execution dispatch against pluggable venues.

The dispatcher looks up the executor for an opportunity's primary strategy,
runs it under a timeout and normalises every outcome into an
ExecutionResult. Venue failures are data: nothing raised by a venue escapes
``execute``. There are no internal retries; fall-through to the next
candidate is the router's decision.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, Mapping

import numpy as np

from causal_router.metrics import MetricsRegistry
from causal_router.models import ErrorKind, ExecutionRequest, ExecutionResult, Opportunity
from causal_router.venues.base import ExecutionVenue

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchStats:
    attempts: int
    successes: int
    failures: int
    timeouts: int
    latency_p50: float
    latency_p95: float


class ExecutionDispatcher:
    def __init__(
        self,
        executors: Mapping[str, ExecutionVenue] | None = None,
        *,
        default_venue: ExecutionVenue | None = None,
        timeout_seconds: float = 15.0,
        metrics: MetricsRegistry | None = None,
        latency_history: int = 500,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._executors: Dict[str, ExecutionVenue] = dict(executors or {})
        self._default_venue = default_venue
        self._timeout_seconds = timeout_seconds
        self._metrics = metrics or MetricsRegistry()
        self._latencies: Deque[float] = deque(maxlen=latency_history)
        self._attempts = 0
        self._successes = 0
        self._failures = 0
        self._timeouts = 0

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def register(self, strategy_id: str, venue: ExecutionVenue) -> None:
        self._executors[strategy_id] = venue

    def venue_for(self, strategy_id: str) -> ExecutionVenue | None:
        venue = self._executors.get(strategy_id)
        if venue is not None:
            return venue
        if self._default_venue is not None and self._default_venue.supports(strategy_id):
            return self._default_venue
        return None

    async def execute(self, opportunity: Opportunity) -> ExecutionResult:
        request = ExecutionRequest.from_opportunity(opportunity)
        self._attempts += 1

        venue = self.venue_for(request.strategy_id)
        if venue is None:
            LOGGER.warning("no executor for strategy=%s venue=%s", request.strategy_id, request.venue_id)
            return self._failed(
                ExecutionResult.failure(ErrorKind.NO_EXECUTOR, f"no executor for {request.strategy_id}")
            )

        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(venue.execute(request), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            self._latencies.append(time.perf_counter() - started)
            self._timeouts += 1
            self._metrics.counter("executions_timed_out").increment()
            LOGGER.warning(
                "execution timed out strategy=%s venue=%s timeout=%.1fs",
                request.strategy_id,
                request.venue_id,
                self._timeout_seconds,
            )
            return self._failed(
                ExecutionResult.failure(ErrorKind.TIMEOUT, f"timed out after {self._timeout_seconds:.1f}s"),
                count_metric=False,
            )
        except Exception as exc:
            self._latencies.append(time.perf_counter() - started)
            LOGGER.warning(
                "execution failed strategy=%s venue=%s: %s",
                request.strategy_id,
                request.venue_id,
                exc,
            )
            return self._failed(ExecutionResult.failure(ErrorKind.EXECUTION_FAILURE, str(exc)))

        self._latencies.append(time.perf_counter() - started)
        if result.success and not result.execution_ref:
            result = replace(
                result,
                success=False,
                error=ErrorKind.EXECUTION_FAILURE,
                detail="venue reported success without an execution reference",
            )
        if not result.success:
            if result.error is None:
                result = replace(result, error=ErrorKind.EXECUTION_FAILURE)
            LOGGER.warning(
                "execution rejected strategy=%s venue=%s error=%s %s",
                request.strategy_id,
                request.venue_id,
                result.error.value,
                result.detail,
            )
            return self._failed(result)

        self._successes += 1
        self._metrics.counter("executions_succeeded").increment()
        LOGGER.info(
            "executed strategy=%s venue=%s profit=%.4f expected=%.4f ref=%s",
            request.strategy_id,
            request.venue_id,
            result.profit,
            request.expected_profit,
            result.execution_ref,
        )
        return result

    def stats(self) -> DispatchStats:
        if self._latencies:
            samples = np.fromiter(self._latencies, dtype=float)
            p50, p95 = (float(v) for v in np.percentile(samples, [50.0, 95.0]))
        else:
            p50 = p95 = 0.0
        return DispatchStats(
            attempts=self._attempts,
            successes=self._successes,
            failures=self._failures,
            timeouts=self._timeouts,
            latency_p50=p50,
            latency_p95=p95,
        )

    async def aclose(self) -> None:
        venues = {id(v): v for v in self._executors.values()}
        if self._default_venue is not None:
            venues[id(self._default_venue)] = self._default_venue
        await asyncio.gather(*(venue.aclose() for venue in venues.values()))

    def _failed(self, result: ExecutionResult, *, count_metric: bool = True) -> ExecutionResult:
        self._failures += 1
        if count_metric:
            self._metrics.counter("executions_failed").increment()
        return result
