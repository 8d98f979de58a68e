"""Simulated execution venue for dry runs and tests.

Outcome models follow the strategies' economics loosely: liquidations scale
with the signal's cascade potential, mass liquidations run in waves, and
unmodelled strategies land within +/-20% of the expected profit. Every draw
comes from the injected random source so a fixed seed replays exactly.
"""

from __future__ import annotations

import logging
import random
from typing import Callable, Dict, Iterable

from causal_router.models import ExecutionRequest, ExecutionResult
from causal_router.venues.base import ExecutionVenue

LOGGER = logging.getLogger(__name__)

_DEFAULT_RESOURCE_COST = 200_000


class SimulatedExecutionError(RuntimeError):
    pass


class SimulatedVenue(ExecutionVenue):
    name = "simulated"

    def __init__(
        self,
        rng: random.Random,
        *,
        failure_probability: float = 0.0,
        strategies: Iterable[str] | None = None,
    ) -> None:
        if not 0.0 <= failure_probability <= 1.0:
            raise ValueError("failure_probability must be within [0, 1]")
        self._rng = rng
        self._failure_probability = failure_probability
        self._strategies = frozenset(strategies) if strategies else None
        self._models: Dict[str, Callable[[ExecutionRequest], ExecutionResult]] = {
            "liquidation": self._liquidation,
            "sandwich": self._sandwich,
            "flashloan": self._flashloan,
            "massLiquidation": self._mass_liquidation,
        }

    def supports(self, strategy_id: str) -> bool:
        return self._strategies is None or strategy_id in self._strategies

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        if self._failure_probability and self._rng.random() < self._failure_probability:
            raise SimulatedExecutionError(
                f"simulated {request.strategy_id} failure on {request.venue_id}"
            )
        model = self._models.get(request.strategy_id, self._generic)
        result = model(request)
        LOGGER.debug(
            "simulated %s on %s profit=%.4f resource_cost=%d",
            request.strategy_id,
            request.venue_id,
            result.profit,
            result.resource_cost,
        )
        return result

    def _execution_ref(self) -> str:
        return f"0x{self._rng.getrandbits(256):064x}"

    def _liquidation(self, request: ExecutionRequest) -> ExecutionResult:
        positions = int(request.signal.cascade_potential // 20)
        total = 0.0
        for _ in range(positions):
            collateral = 10.0 + self._rng.random() * 90.0
            bonus = 0.05 + self._rng.random() * 0.08
            total += collateral * bonus
        return ExecutionResult(
            success=True,
            profit=total,
            execution_ref=self._execution_ref(),
            resource_cost=positions * 150_000,
            cascade_size=float(positions),
        )

    def _sandwich(self, request: ExecutionRequest) -> ExecutionResult:
        target_size = 50.0 + self._rng.random() * 200.0
        slippage = 0.01 + self._rng.random() * 0.02
        # Half of the victim's slippage is captured.
        return ExecutionResult(
            success=True,
            profit=target_size * slippage * 0.5,
            execution_ref=self._execution_ref(),
            resource_cost=300_000,
            cascade_size=1.0,
        )

    def _flashloan(self, request: ExecutionRequest) -> ExecutionResult:
        loan_size = 1000.0 + self._rng.random() * 4000.0
        spread = 0.002 + self._rng.random() * 0.008
        return ExecutionResult(
            success=True,
            profit=loan_size * spread,
            execution_ref=self._execution_ref(),
            resource_cost=500_000,
            cascade_size=1.0,
        )

    def _mass_liquidation(self, request: ExecutionRequest) -> ExecutionResult:
        waves = 3 + self._rng.randrange(5)
        total = 0.0
        hit = 0
        for _ in range(waves):
            positions = 10 + self._rng.randrange(20)
            hit += positions
            avg_size = 20.0 + self._rng.random() * 80.0
            bonus = 0.08 + self._rng.random() * 0.05
            total += positions * avg_size * bonus
        return ExecutionResult(
            success=True,
            profit=total,
            execution_ref=self._execution_ref(),
            resource_cost=waves * 1_000_000,
            cascade_size=float(hit),
        )

    def _generic(self, request: ExecutionRequest) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            profit=request.expected_profit * (0.8 + self._rng.random() * 0.4),
            execution_ref=self._execution_ref(),
            resource_cost=_DEFAULT_RESOURCE_COST + self._rng.randrange(300_000),
            cascade_size=float(self._rng.randrange(int(request.signal.weight * 5) + 1)),
        )
