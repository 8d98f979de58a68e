"""Expected-profit estimation for (signal, venue, route) candidates.

expected = (weight / 10) * venue_modifier * max(strategy_rate) * (1 + cascade / 100)

Venue and strategy coefficients are configuration. A venue or strategy with
no configured coefficient is an estimation anomaly: it falls back to a
conservative default and is logged once, never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping

from causal_router.config import RoutingConfigError, as_float_map
from causal_router.models import MAX_WEIGHT, Route, Signal

LOGGER = logging.getLogger(__name__)

DEFAULT_VENUE_MODIFIERS: Mapping[str, float] = MappingProxyType({
    "ethereum": 1.0,
    "arbitrum": 0.7,
    "polygon": 0.5,
    "base": 0.3,
})

DEFAULT_STRATEGY_RATES: Mapping[str, float] = MappingProxyType({
    "liquidation": 0.08,
    "sandwich": 0.02,
    "arbitrage": 0.015,
    "flashloan": 0.025,
    "massLiquidation": 0.15,
    "bridgeArbitrage": 0.01,
    "oracleArbitrage": 0.03,
    "positionExit": 0.05,
})


@dataclass(frozen=True)
class EstimatorConfig:
    """Venue and strategy economics.

    Parameters
    ----------
    venue_modifiers:
        Per-venue profitability modifier in (0, 1].
    strategy_rates:
        Per-strategy profit rate.
    default_strategy_rate:
        Rate used for strategies missing from ``strategy_rates``.
        Default 0.01.
    default_venue_modifier:
        Modifier used for venues missing from ``venue_modifiers``.
        Default 0.3, the lowest built-in venue modifier.
    """

    venue_modifiers: Mapping[str, float] = field(default_factory=lambda: DEFAULT_VENUE_MODIFIERS)
    strategy_rates: Mapping[str, float] = field(default_factory=lambda: DEFAULT_STRATEGY_RATES)
    default_strategy_rate: float = 0.01
    default_venue_modifier: float = 0.3

    def __post_init__(self) -> None:
        for venue, modifier in self.venue_modifiers.items():
            if not 0.0 < modifier <= 1.0:
                raise RoutingConfigError(f"venue modifier for {venue!r} must be in (0, 1], got {modifier}")
        if not 0.0 < self.default_venue_modifier <= 1.0:
            raise RoutingConfigError("defaultVenueModifier must be in (0, 1]")
        for strategy, rate in self.strategy_rates.items():
            if rate < 0.0:
                raise RoutingConfigError(f"strategy rate for {strategy!r} must be >= 0, got {rate}")
        if self.default_strategy_rate < 0.0:
            raise RoutingConfigError("defaultStrategyRate must be >= 0")
        object.__setattr__(self, "venue_modifiers", MappingProxyType(dict(self.venue_modifiers)))
        object.__setattr__(self, "strategy_rates", MappingProxyType(dict(self.strategy_rates)))

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "EstimatorConfig":
        venues = as_float_map(document.get("venueModifiers"), name="venueModifiers")
        rates = as_float_map(document.get("strategyRates"), name="strategyRates")
        try:
            return cls(
                venue_modifiers={**DEFAULT_VENUE_MODIFIERS, **venues},
                strategy_rates={**DEFAULT_STRATEGY_RATES, **rates},
                default_strategy_rate=float(document.get("defaultStrategyRate", 0.01)),
                default_venue_modifier=float(document.get("defaultVenueModifier", 0.3)),
            )
        except RoutingConfigError:
            raise
        except (TypeError, ValueError) as exc:
            raise RoutingConfigError(str(exc)) from exc


@dataclass(frozen=True)
class ProfitBreakdown:
    base_profit: float
    venue_modifier: float
    strategy_modifier: float
    cascade_multiplier: float

    @property
    def expected_profit(self) -> float:
        return self.base_profit * self.venue_modifier * self.strategy_modifier * self.cascade_multiplier


class ProfitEstimator:
    def __init__(self, config: EstimatorConfig | None = None) -> None:
        self._config = config or EstimatorConfig()
        self._reported_gaps: set[tuple[str, str]] = set()

    @property
    def config(self) -> EstimatorConfig:
        return self._config

    def breakdown(self, signal: Signal, venue_id: str, route: Route) -> ProfitBreakdown:
        cfg = self._config
        venue_modifier = cfg.venue_modifiers.get(venue_id)
        if venue_modifier is None:
            self._report_gap("venue", venue_id, cfg.default_venue_modifier)
            venue_modifier = cfg.default_venue_modifier

        strategy_modifier = 0.0
        for strategy in route.strategies:
            rate = cfg.strategy_rates.get(strategy)
            if rate is None:
                self._report_gap("strategy", strategy, cfg.default_strategy_rate)
                rate = cfg.default_strategy_rate
            strategy_modifier = max(strategy_modifier, rate)

        return ProfitBreakdown(
            base_profit=signal.weight / MAX_WEIGHT,
            venue_modifier=venue_modifier,
            strategy_modifier=strategy_modifier,
            cascade_multiplier=1.0 + signal.cascade_potential / 100.0,
        )

    def estimate(self, signal: Signal, venue_id: str, route: Route) -> float:
        return self.breakdown(signal, venue_id, route).expected_profit

    def _report_gap(self, kind: str, key: str, fallback: float) -> None:
        if (kind, key) in self._reported_gaps:
            return
        self._reported_gaps.add((kind, key))
        LOGGER.warning("estimation anomaly: no %s coefficient for %s, using %.4f", kind, key, fallback)
