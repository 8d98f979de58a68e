from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping

from causal_router.config import RoutingConfigError
from causal_router.models import Route, Urgency

LOGGER = logging.getLogger(__name__)

DEFAULT_ROUTE_CONFIG: Dict[str, Dict[str, Any]] = {
    # High-value mainnet signals.
    "CRITICAL_PARAMETER_CHANGE": {
        "chains": ["ethereum"],
        "strategies": ["liquidation", "positionExit"],
        "minProfit": 0.1,
        "urgency": "immediate",
    },
    "LIQUIDATION_THRESHOLD_BREACH": {
        "chains": ["ethereum", "arbitrum"],
        "strategies": ["liquidation", "flashloan"],
        "minProfit": 0.05,
        "urgency": "immediate",
    },
    # Cross-venue yield and pricing gaps.
    "CROSS_CHAIN_YIELD_DELTA": {
        "chains": ["ethereum", "arbitrum", "polygon"],
        "strategies": ["bridgeArbitrage", "yieldCapture"],
        "minProfit": 0.02,
        "urgency": "fast",
    },
    "ORACLE_PRICE_DEVIATION": {
        "chains": ["ethereum", "arbitrum"],
        "strategies": ["oracleArbitrage", "sandwich"],
        "minProfit": 0.03,
        "urgency": "immediate",
    },
    # Filings and governance: slower, larger.
    "BANKRUPTCY_FILING_DETECTED": {
        "chains": ["ethereum"],
        "strategies": ["massLiquidation", "shortPosition"],
        "minProfit": 1.0,
        "urgency": "medium",
    },
    "REGULATORY_ACTION_PENDING": {
        "chains": ["ethereum", "arbitrum"],
        "strategies": ["positionExit", "hedgeSetup"],
        "minProfit": 0.5,
        "urgency": "medium",
    },
    "MEV_OPPORTUNITY_SURFACE": {
        "chains": ["ethereum", "arbitrum"],
        "strategies": ["sandwich", "backrun"],
        "minProfit": 0.01,
        "urgency": "immediate",
    },
    "FLASHLOAN_ARBITRAGE_GAP": {
        "chains": ["ethereum", "arbitrum", "polygon"],
        "strategies": ["flashloan", "multiDexArb"],
        "minProfit": 0.02,
        "urgency": "immediate",
    },
}


def _dedupe_in_order(values: Iterable[Any]) -> tuple[str, ...]:
    ordered: list[str] = []
    seen: set[str] = set()
    for raw in values:
        value = str(raw).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return tuple(ordered)


def parse_route(signal_type: str, options: Any) -> Route:
    """Build a Route from its `{chains, strategies, minProfit, urgency}` options."""
    if not isinstance(options, dict):
        raise RoutingConfigError(f"route {signal_type!r} must be an object")
    chains = options.get("chains")
    strategies = options.get("strategies")
    if not isinstance(chains, list) or not isinstance(strategies, list):
        raise RoutingConfigError(f"route {signal_type!r} needs 'chains' and 'strategies' lists")
    try:
        urgency = Urgency.parse(options.get("urgency", Urgency.MEDIUM.value))
    except ValueError as exc:
        raise RoutingConfigError(
            f"route {signal_type!r} has unknown urgency {options.get('urgency')!r}"
        ) from exc
    try:
        min_profit = float(options.get("minProfit", 0.0))
        return Route(
            signal_type=signal_type,
            eligible_venues=_dedupe_in_order(chains),
            strategies=_dedupe_in_order(strategies),
            min_profit=min_profit,
            urgency=urgency,
        )
    except (TypeError, ValueError) as exc:
        raise RoutingConfigError(str(exc)) from exc


class RoutingTable:
    """Immutable mapping from exact signal type to its Route."""

    def __init__(self, routes: Iterable[Route]) -> None:
        table: Dict[str, Route] = {}
        for route in routes:
            if route.signal_type in table:
                raise RoutingConfigError(f"duplicate route for {route.signal_type!r}")
            table[route.signal_type] = route
        self._routes: Mapping[str, Route] = MappingProxyType(table)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RoutingTable":
        if not isinstance(config, dict):
            raise RoutingConfigError("routes must be an object keyed by signal type")
        return cls(parse_route(str(signal_type), options) for signal_type, options in config.items())

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "RoutingTable":
        routes = document.get("routes")
        if routes is None:
            return cls.from_config(DEFAULT_ROUTE_CONFIG)
        table = cls.from_config(routes)
        LOGGER.info("routing table loaded routes=%d", len(table))
        return table

    def route_for(self, signal_type: str) -> Route | None:
        """Return the configured route, or None when the type is unrouted."""
        return self._routes.get(signal_type)

    @property
    def signal_types(self) -> tuple[str, ...]:
        return tuple(self._routes.keys())

    @property
    def venues(self) -> tuple[str, ...]:
        return _dedupe_in_order(
            venue for route in self._routes.values() for venue in route.eligible_venues
        )

    def __contains__(self, signal_type: object) -> bool:
        return signal_type in self._routes

    def __len__(self) -> int:
        return len(self._routes)

    def __iter__(self) -> Iterator[Route]:
        return iter(self._routes.values())
