"""One routing cycle per signal: select, execute, record.

The router is the only component that talks to both the dispatcher and the
ledger. A chain is opened only once a signal has at least one qualifying
opportunity; execution failures fall through to the next-ranked candidate
and every attempt is recorded on the chain.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from causal_router.dispatcher import ExecutionDispatcher
from causal_router.ledger import AttributionLedger, ProfitOutcome
from causal_router.metrics import MetricsRegistry
from causal_router.models import (
    ErrorKind,
    EventKind,
    ExecutionResult,
    Opportunity,
    ProfitData,
    Signal,
)
from causal_router.selector import OpportunitySelector

LOGGER = logging.getLogger(__name__)


class RoutingStatus(str, Enum):
    NO_ROUTE = "no_route"
    NO_OPPORTUNITY = "no_opportunity"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RoutingOutcome:
    status: RoutingStatus
    signal: Signal
    chain_id: str | None = None
    opportunity: Opportunity | None = None
    result: ExecutionResult | None = None
    profit: ProfitOutcome | None = None
    attempts: int = 0

    @property
    def executed(self) -> bool:
        return self.status is RoutingStatus.EXECUTED


class SignalRouter:
    def __init__(
        self,
        selector: OpportunitySelector,
        dispatcher: ExecutionDispatcher,
        ledger: AttributionLedger,
        *,
        metrics: MetricsRegistry | None = None,
        resource_unit_cost: float = 0.0,
        fall_through: bool = True,
    ) -> None:
        self._selector = selector
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._metrics = metrics or MetricsRegistry()
        self._resource_unit_cost = resource_unit_cost
        self._fall_through = fall_through

    @property
    def ledger(self) -> AttributionLedger:
        return self._ledger

    async def route_signal(
        self,
        signal: Signal,
        cancel: asyncio.Event | None = None,
    ) -> RoutingOutcome:
        self._metrics.counter("signals_received").increment()

        if signal.type not in self._selector.table:
            self._metrics.counter("signals_no_route").increment()
            LOGGER.info("route skipped signal_type=%s reason=no_route", signal.type)
            return RoutingOutcome(RoutingStatus.NO_ROUTE, signal)

        ranked = self._selector.rank(signal)
        if not ranked:
            self._metrics.counter("signals_no_opportunity").increment()
            LOGGER.info(
                "route skipped signal_type=%s reason=no_opportunity weight=%.2f",
                signal.type,
                signal.weight,
            )
            return RoutingOutcome(RoutingStatus.NO_OPPORTUNITY, signal)

        if cancel is not None and cancel.is_set():
            LOGGER.info("routing cancelled before tagging signal_type=%s", signal.type)
            return RoutingOutcome(RoutingStatus.CANCELLED, signal)

        chain_id = self._ledger.tag_signal(signal)
        self._metrics.counter("signals_routed").increment()

        last_opportunity: Opportunity | None = None
        last_result: ExecutionResult | None = None
        attempts = 0
        for opportunity in ranked:
            if cancel is not None and cancel.is_set():
                LOGGER.info("routing cancelled chain_id=%s attempts=%d", chain_id, attempts)
                return RoutingOutcome(
                    RoutingStatus.CANCELLED,
                    signal,
                    chain_id=chain_id,
                    opportunity=last_opportunity,
                    result=last_result,
                    attempts=attempts,
                )
            if attempts:
                self._metrics.counter("fallthrough_attempts").increment()
            attempts += 1
            last_opportunity = opportunity
            strategy = opportunity.primary_strategy

            self._ledger.record_event(
                chain_id,
                EventKind.ROUTED,
                venue=opportunity.venue,
                strategy=strategy,
                detail=f"expected_profit={opportunity.expected_profit:.6f}",
            )
            last_result = await self._dispatcher.execute(opportunity)

            if last_result.success:
                return await self._record_success(chain_id, opportunity, last_result, attempts)

            kind = (
                EventKind.EXECUTION_TIMEOUT
                if last_result.error is ErrorKind.TIMEOUT
                else EventKind.EXECUTION_FAILED
            )
            error = last_result.error.value if last_result.error else "unknown"
            self._ledger.record_event(
                chain_id,
                kind,
                venue=opportunity.venue,
                strategy=strategy,
                detail=f"{error}: {last_result.detail}" if last_result.detail else error,
            )
            if not self._fall_through:
                break

        LOGGER.warning(
            "all candidates failed chain_id=%s signal_type=%s attempts=%d",
            chain_id,
            signal.type,
            attempts,
        )
        return RoutingOutcome(
            RoutingStatus.FAILED,
            signal,
            chain_id=chain_id,
            opportunity=last_opportunity,
            result=last_result,
            attempts=attempts,
        )

    async def _record_success(
        self,
        chain_id: str,
        opportunity: Opportunity,
        result: ExecutionResult,
        attempts: int,
    ) -> RoutingOutcome:
        strategy = opportunity.primary_strategy
        if result.cascade_size > 0:
            self._ledger.record_event(
                chain_id,
                EventKind.BOT_RESPONSE,
                venue=opportunity.venue,
                strategy=strategy,
                cascade_size=result.cascade_size,
            )
        self._ledger.record_event(
            chain_id,
            EventKind.EXECUTION_EXECUTED,
            execution_ref=result.execution_ref,
            resource_cost=result.resource_cost,
            venue=opportunity.venue,
            strategy=strategy,
        )
        profit = await self._ledger.record_profit(
            chain_id,
            ProfitData(
                execution_ref=result.execution_ref,
                amount_earned=result.profit,
                gas_spent=result.resource_cost * self._resource_unit_cost,
                kind=strategy,
            ),
        )
        return RoutingOutcome(
            RoutingStatus.EXECUTED,
            opportunity.signal,
            chain_id=chain_id,
            opportunity=opportunity,
            result=result,
            profit=profit,
            attempts=attempts,
        )
