from __future__ import annotations

import logging

from causal_router.estimator import ProfitEstimator
from causal_router.models import Opportunity, Signal
from causal_router.routing import RoutingTable

LOGGER = logging.getLogger(__name__)


class OpportunitySelector:
    """Enumerates, filters and ranks venue options for a signal."""

    def __init__(self, table: RoutingTable, estimator: ProfitEstimator) -> None:
        self._table = table
        self._estimator = estimator

    @property
    def table(self) -> RoutingTable:
        return self._table

    def rank(self, signal: Signal) -> list[Opportunity]:
        """All candidates at or above the route's min profit, best first.

        Ordering: expected profit descending, then urgency
        (immediate > fast > medium), then venue declaration order.
        An unrouted signal type or a zero-weight (noise) signal yields an
        empty list.
        """
        route = self._table.route_for(signal.type)
        if route is None:
            return []
        if signal.weight <= 0.0:
            LOGGER.debug("noise signal not ranked signal_type=%s", signal.type)
            return []

        candidates: list[tuple[int, Opportunity]] = []
        for position, venue in enumerate(route.eligible_venues):
            expected = self._estimator.estimate(signal, venue, route)
            if expected < route.min_profit:
                LOGGER.debug(
                    "candidate below min profit signal_type=%s venue=%s expected=%.6f min=%.6f",
                    signal.type,
                    venue,
                    expected,
                    route.min_profit,
                )
                continue
            candidates.append((
                position,
                Opportunity(
                    venue=venue,
                    signal=signal,
                    expected_profit=expected,
                    strategies=route.strategies,
                    urgency=route.urgency,
                ),
            ))

        candidates.sort(key=lambda item: (-item[1].expected_profit, item[1].urgency.rank, item[0]))
        return [opportunity for _, opportunity in candidates]

    def select(self, signal: Signal) -> Opportunity | None:
        """Top-ranked opportunity, or None for "no opportunity"."""
        ranked = self.rank(signal)
        return ranked[0] if ranked else None
