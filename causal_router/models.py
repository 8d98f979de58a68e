from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

MAX_WEIGHT = 10.0


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    FAST = "fast"
    MEDIUM = "medium"

    @property
    def rank(self) -> int:
        """Lower rank sorts first."""
        return _URGENCY_RANK[self]

    @classmethod
    def parse(cls, value: str) -> "Urgency":
        return cls(str(value).strip().lower())


_URGENCY_RANK: Dict[Urgency, int] = {
    Urgency.IMMEDIATE: 0,
    Urgency.FAST: 1,
    Urgency.MEDIUM: 2,
}


class Priority(str, Enum):
    URGENT = "URGENT"
    MONITOR = "MONITOR"


class ChainStatus(str, Enum):
    BROADCASTED = "BROADCASTED"
    TRIGGERED = "TRIGGERED"
    PROFITABLE = "PROFITABLE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    def can_transition_to(self, target: "ChainStatus") -> bool:
        return target in _STATUS_TRANSITIONS[self]

    @property
    def is_success(self) -> bool:
        return self in (ChainStatus.PROFITABLE, ChainStatus.COMPLETED)


# Triggered and Failed sit at the same depth; Triggered may still fail, a
# failed chain may still turn profitable on a fall-through attempt.
_STATUS_TRANSITIONS: Dict[ChainStatus, frozenset[ChainStatus]] = {
    ChainStatus.BROADCASTED: frozenset({
        ChainStatus.TRIGGERED,
        ChainStatus.FAILED,
        ChainStatus.PROFITABLE,
        ChainStatus.COMPLETED,
    }),
    ChainStatus.TRIGGERED: frozenset({
        ChainStatus.FAILED,
        ChainStatus.PROFITABLE,
        ChainStatus.COMPLETED,
    }),
    ChainStatus.FAILED: frozenset({ChainStatus.PROFITABLE, ChainStatus.COMPLETED}),
    ChainStatus.PROFITABLE: frozenset({ChainStatus.COMPLETED}),
    ChainStatus.COMPLETED: frozenset(),
}


class EventKind(str, Enum):
    ROUTED = "ROUTED"
    BOT_RESPONSE = "BOT_RESPONSE"
    EXECUTION_EXECUTED = "EXECUTION_EXECUTED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"


# Status each event kind pushes a chain toward (None = informational only).
EVENT_TARGET_STATUS: Dict[EventKind, Optional[ChainStatus]] = {
    EventKind.ROUTED: None,
    EventKind.BOT_RESPONSE: ChainStatus.TRIGGERED,
    EventKind.EXECUTION_EXECUTED: ChainStatus.PROFITABLE,
    EventKind.EXECUTION_FAILED: ChainStatus.FAILED,
    EventKind.EXECUTION_TIMEOUT: ChainStatus.FAILED,
}


class ErrorKind(str, Enum):
    EXECUTION_FAILURE = "execution_failure"
    TIMEOUT = "timeout"
    NO_EXECUTOR = "no_executor"
    PERSISTENCE_FAILURE = "persistence_failure"


@dataclass(frozen=True)
class RawEvent:
    """An unclassified observation before scoring."""

    category: str
    signal_type: str = ""
    source: str = ""
    anchor: str | None = None
    observed_at: float | None = None
    event_id: str | None = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RawEvent":
        observed_at = payload.get("observedAt", payload.get("timestamp"))
        return cls(
            category=str(payload.get("category") or payload.get("type") or ""),
            signal_type=str(payload.get("signalType") or ""),
            source=str(payload.get("source") or ""),
            anchor=payload.get("anchor"),
            observed_at=float(observed_at) if observed_at is not None else None,
            event_id=str(payload["id"]) if payload.get("id") is not None else None,
        )


@dataclass(frozen=True)
class CascadeAssessment:
    semantic_weight: float
    cascade_potential: float
    priority: Priority


@dataclass(frozen=True)
class Signal:
    type: str
    weight: float
    cascade_potential: float
    timestamp: float
    origin_id: str
    source: str = ""
    anchor: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.weight <= MAX_WEIGHT:
            raise ValueError(f"signal weight must be within [0, {MAX_WEIGHT}], got {self.weight}")
        if self.cascade_potential < 0.0:
            raise ValueError(f"cascade potential must be >= 0, got {self.cascade_potential}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "weight": self.weight,
            "cascadePotential": self.cascade_potential,
            "timestamp": self.timestamp,
            "originId": self.origin_id,
            "source": self.source,
            "anchor": self.anchor,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Signal":
        return cls(
            type=str(payload["type"]),
            weight=float(payload["weight"]),
            cascade_potential=float(payload.get("cascadePotential", 0.0)),
            timestamp=float(payload["timestamp"]),
            origin_id=str(payload["originId"]),
            source=str(payload.get("source") or ""),
            anchor=payload.get("anchor"),
        )


@dataclass(frozen=True)
class Route:
    signal_type: str
    eligible_venues: tuple[str, ...]
    strategies: tuple[str, ...]
    min_profit: float
    urgency: Urgency

    def __post_init__(self) -> None:
        if not self.eligible_venues:
            raise ValueError(f"route {self.signal_type!r} has no eligible venues")
        if not self.strategies:
            raise ValueError(f"route {self.signal_type!r} has no strategies")
        if self.min_profit < 0.0:
            raise ValueError(f"route {self.signal_type!r} min profit must be >= 0")


@dataclass(frozen=True)
class Opportunity:
    venue: str
    signal: Signal
    expected_profit: float
    strategies: tuple[str, ...]
    urgency: Urgency

    def __post_init__(self) -> None:
        if self.expected_profit < 0.0:
            raise ValueError(f"expected profit must be >= 0, got {self.expected_profit}")

    @property
    def primary_strategy(self) -> str:
        return self.strategies[0]


@dataclass(frozen=True)
class ExecutionRequest:
    """What an execution venue receives."""

    venue_id: str
    strategy_id: str
    signal: Signal
    expected_profit: float

    @classmethod
    def from_opportunity(cls, opportunity: Opportunity) -> "ExecutionRequest":
        return cls(
            venue_id=opportunity.venue,
            strategy_id=opportunity.primary_strategy,
            signal=opportunity.signal,
            expected_profit=opportunity.expected_profit,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "venueId": self.venue_id,
            "strategyId": self.strategy_id,
            "signal": self.signal.to_dict(),
            "expectedProfit": self.expected_profit,
        }


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    profit: float
    execution_ref: str
    resource_cost: int
    error: Optional[ErrorKind] = None
    detail: str = ""
    # Market reaction the venue observed (e.g. responding bots, positions hit).
    cascade_size: float = 0.0

    @classmethod
    def failure(cls, error: ErrorKind, detail: str = "") -> "ExecutionResult":
        return cls(
            success=False,
            profit=0.0,
            execution_ref="",
            resource_cost=0,
            error=error,
            detail=detail,
        )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ExecutionResult":
        error = payload.get("error")
        return cls(
            success=bool(payload.get("success", False)),
            profit=float(payload.get("profit") or 0.0),
            execution_ref=str(payload.get("executionRef") or ""),
            resource_cost=int(payload.get("resourceCost") or 0),
            error=ErrorKind(error) if error else None,
            detail=str(payload.get("detail") or ""),
            cascade_size=float(payload.get("cascadeSize") or 0.0),
        )


@dataclass(frozen=True)
class ChainEvent:
    kind: EventKind
    timestamp: float
    execution_ref: str | None = None
    resource_cost: int = 0
    venue: str | None = None
    strategy: str | None = None
    cascade_size: float = 0.0
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "timestamp": self.timestamp,
            "executionRef": self.execution_ref,
            "resourceCost": self.resource_cost,
            "venue": self.venue,
            "strategy": self.strategy,
            "cascadeSize": self.cascade_size,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ChainEvent":
        return cls(
            kind=EventKind(payload["type"]),
            timestamp=float(payload["timestamp"]),
            execution_ref=payload.get("executionRef"),
            resource_cost=int(payload.get("resourceCost") or 0),
            venue=payload.get("venue"),
            strategy=payload.get("strategy"),
            cascade_size=float(payload.get("cascadeSize") or 0.0),
            detail=str(payload.get("detail") or ""),
        )


@dataclass(frozen=True)
class ProfitData:
    execution_ref: str
    amount_earned: float
    gas_spent: float = 0.0
    kind: str = "UNKNOWN"


@dataclass(frozen=True)
class ProfitRecord:
    chain_id: str
    execution_ref: str
    amount_earned: float
    gas_spent: float
    net_profit: float
    timestamp: float
    kind: str = "UNKNOWN"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "amountEarned": self.amount_earned,
            "gasSpent": self.gas_spent,
            "netProfit": self.net_profit,
            "timestamp": self.timestamp,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, execution_ref: str, payload: Dict[str, Any]) -> "ProfitRecord":
        return cls(
            chain_id=str(payload["chainId"]),
            execution_ref=execution_ref,
            amount_earned=float(payload["amountEarned"]),
            gas_spent=float(payload.get("gasSpent") or 0.0),
            net_profit=float(payload["netProfit"]),
            timestamp=float(payload["timestamp"]),
            kind=str(payload.get("kind") or "UNKNOWN"),
        )


@dataclass
class AttributionChain:
    """Causal record for one signal. Owned and mutated by the ledger only."""

    chain_id: str
    origin: Signal
    tagged_at: float
    expected_cascade: float
    events: List[ChainEvent] = field(default_factory=list)
    profit: float = 0.0
    status: ChainStatus = ChainStatus.BROADCASTED
    semantic_roi: float | None = None

    @property
    def signal_type(self) -> str:
        return self.origin.type

    @property
    def cascade_size(self) -> float:
        return sum(event.cascade_size for event in self.events)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin": self.origin.to_dict(),
            "taggedAt": self.tagged_at,
            "expectedCascade": self.expected_cascade,
            "events": [event.to_dict() for event in self.events],
            "profit": self.profit,
            "status": self.status.value,
            "semanticROI": self.semantic_roi,
        }

    @classmethod
    def from_dict(cls, chain_id: str, payload: Dict[str, Any]) -> "AttributionChain":
        origin = Signal.from_dict(payload["origin"])
        roi = payload.get("semanticROI")
        return cls(
            chain_id=chain_id,
            origin=origin,
            tagged_at=float(payload.get("taggedAt", origin.timestamp)),
            expected_cascade=float(payload.get("expectedCascade", origin.weight ** 2)),
            events=[ChainEvent.from_dict(item) for item in payload.get("events", [])],
            profit=float(payload.get("profit") or 0.0),
            status=ChainStatus(payload.get("status", ChainStatus.BROADCASTED.value)),
            semantic_roi=float(roi) if roi is not None else None,
        )
