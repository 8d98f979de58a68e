"""Causal attribution ledger.

Tracks every routed signal from broadcast through downstream events to
realized profit, and answers "which signals produced which yield".

The ledger is append-only: chains are never deleted, events are only
appended, and chain status only moves forward along the transition table
in ``ChainStatus``. All mutation goes through two entry points,
``record_event`` and ``record_profit``; ``tag_signal`` opens chains.

Persistence is a JSON snapshot written after each profit record (the
durability point) and by periodic ``flush`` calls. A failed write leaves
the in-memory ledger authoritative and is retried on the next flush.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import os
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from causal_router.metrics import MetricsRegistry
from causal_router.models import (
    EVENT_TARGET_STATUS,
    AttributionChain,
    ChainEvent,
    ChainStatus,
    ErrorKind,
    EventKind,
    ProfitData,
    ProfitRecord,
    Signal,
)

LOGGER = logging.getLogger(__name__)

# Net profit is also reported relative to a nominal broadcast cost.
BASE_BROADCAST_COST = 0.02


# ---------------------------------------------------------------------------
# Reporting types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainTransition:
    chain_id: str
    signal_type: str
    previous: Optional[ChainStatus]
    current: ChainStatus
    timestamp: float


@dataclass(frozen=True)
class ProfitOutcome:
    chain_id: str
    profit: float
    semantic_roi: float
    cascade_multiplier: float
    duplicate: bool = False


@dataclass(frozen=True)
class Timeline:
    signal_to_event: float
    total_duration: float
    event_count: int


@dataclass(frozen=True)
class ChainTrace:
    """Read-only projection of one chain's history."""

    chain_id: str
    origin: Signal
    tagged_at: float
    expected_cascade: float
    events: tuple[ChainEvent, ...]
    profit: float
    semantic_roi: float | None
    status: ChainStatus
    timeline: Timeline | None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signalId": self.chain_id,
            "origin": self.origin.to_dict(),
            "broadcast": {
                "timestamp": self.tagged_at,
                "expectedCascade": self.expected_cascade,
            },
            "events": [event.to_dict() for event in self.events],
            "profit": {
                "total": self.profit,
                "roi": self.semantic_roi if self.semantic_roi is not None else 0.0,
                "status": self.status.value,
            },
            "timeline": None if self.timeline is None else {
                "signalToEvent": self.timeline.signal_to_event,
                "totalDuration": self.timeline.total_duration,
                "eventCount": self.timeline.event_count,
            },
        }


@dataclass(frozen=True)
class TypeAnalysis:
    signal_type: str
    count: int
    total_profit: float
    avg_profit: float
    success_rate: float
    avg_roi: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "totalProfit": self.total_profit,
            "avgProfit": self.avg_profit,
            "successRate": self.success_rate,
            "avgROI": self.avg_roi,
        }


@dataclass(frozen=True)
class TopSignalType:
    signal_type: str
    profit: float
    share: float


@dataclass(frozen=True)
class DashboardSummary:
    total_signals: int
    completed_signals: int
    success_rate: float
    total_profit: float
    avg_profit_per_signal: float


@dataclass(frozen=True)
class Dashboard:
    summary: DashboardSummary
    per_type_analysis: Dict[str, TypeAnalysis]
    recent_profits: tuple[ProfitRecord, ...]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "totalSignals": self.summary.total_signals,
                "completedSignals": self.summary.completed_signals,
                "successRate": self.summary.success_rate,
                "totalProfit": self.summary.total_profit,
                "avgProfitPerSignal": self.summary.avg_profit_per_signal,
            },
            "perTypeAnalysis": {
                signal_type: analysis.to_dict()
                for signal_type, analysis in self.per_type_analysis.items()
            },
            "recentProfits": [
                {"executionRef": record.execution_ref, **record.to_dict()}
                for record in self.recent_profits
            ],
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class LedgerStore(ABC):
    @abstractmethod
    def save(self, snapshot: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def load(self) -> Dict[str, Any] | None:
        raise NotImplementedError


class JsonLedgerStore(LedgerStore):
    """Single JSON document, replaced atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, snapshot: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._path)

    def load(self) -> Dict[str, Any] | None:
        if not self._path.exists():
            return None
        with open(self._path, encoding="utf-8") as f:
            payload = json.load(f)
        if not isinstance(payload, dict):
            raise ValueError(f"ledger file {self._path} must hold a JSON object")
        return payload


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


TransitionCallback = Callable[[ChainTransition], None]


class AttributionLedger:
    """Owner of all attribution chains.

    Usage::

        ledger = AttributionLedger(JsonLedgerStore("causal-profits.json"))
        ledger.load()
        chain_id = ledger.tag_signal(signal)
        ledger.record_event(chain_id, EventKind.BOT_RESPONSE, cascade_size=12)
        outcome = await ledger.record_profit(chain_id, ProfitData("0xabc", 1.2, 0.01))
    """

    def __init__(
        self,
        store: LedgerStore | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        metrics: MetricsRegistry | None = None,
        recent_profits: int = 10,
        persist: bool = True,
    ) -> None:
        self._store = store
        self._rng = rng or random.SystemRandom()
        self._clock = clock
        self._metrics = metrics or MetricsRegistry()
        self._recent_profits = recent_profits
        self._persist = persist and store is not None

        self._chains: Dict[str, AttributionChain] = {}
        self._profits: Dict[str, ProfitRecord] = {}
        self._chain_by_origin: Dict[str, str] = {}
        self._chain_locks: Dict[str, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()
        self._subscribers: List[TransitionCallback] = []
        self._version = 0
        self._persisted_version = 0

    # -- read-only views ---------------------------------------------------

    @property
    def chain_count(self) -> int:
        return len(self._chains)

    @property
    def profit_count(self) -> int:
        return len(self._profits)

    @property
    def dirty(self) -> bool:
        return self._version != self._persisted_version

    @property
    def chains(self) -> Mapping[str, AttributionChain]:
        """Detached copies; mutating them does not touch the ledger."""
        return MappingProxyType(copy.deepcopy(self._chains))

    @property
    def profits(self) -> Mapping[str, ProfitRecord]:
        return MappingProxyType(dict(self._profits))

    def chain_for_origin(self, origin_id: str) -> str | None:
        return self._chain_by_origin.get(origin_id)

    # -- subscriptions -----------------------------------------------------

    def subscribe(self, callback: TransitionCallback) -> Callable[[], None]:
        """Register a transition callback; returns the unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # -- mutation ----------------------------------------------------------

    def tag_signal(self, signal: Signal) -> str:
        """Open a chain in BROADCASTED for the signal and return its id.

        Tagging the same signal (same origin id) twice returns the
        existing chain id.
        """
        existing = self._chain_by_origin.get(signal.origin_id)
        if existing is not None:
            return existing

        chain_id = self._new_chain_id(signal)
        now = self._clock()
        self._chains[chain_id] = AttributionChain(
            chain_id=chain_id,
            origin=signal,
            tagged_at=now,
            expected_cascade=signal.weight ** 2,
        )
        self._chain_by_origin[signal.origin_id] = chain_id
        self._version += 1
        LOGGER.info("chain opened chain_id=%s signal_type=%s weight=%.2f", chain_id, signal.type, signal.weight)
        self._emit(ChainTransition(chain_id, signal.type, None, ChainStatus.BROADCASTED, now))
        return chain_id

    def record_event(
        self,
        chain_id: str,
        kind: EventKind,
        *,
        execution_ref: str | None = None,
        resource_cost: int = 0,
        venue: str | None = None,
        strategy: str | None = None,
        cascade_size: float = 0.0,
        detail: str = "",
    ) -> ChainEvent | None:
        """Append an event; unknown chain ids are ignored (returns None)."""
        chain = self._chains.get(chain_id)
        if chain is None:
            LOGGER.debug("event for unknown chain ignored chain_id=%s kind=%s", chain_id, kind.value)
            return None

        now = self._clock()
        if chain.events:
            now = max(now, chain.events[-1].timestamp)
        event = ChainEvent(
            kind=kind,
            timestamp=now,
            execution_ref=execution_ref,
            resource_cost=resource_cost,
            venue=venue,
            strategy=strategy,
            cascade_size=cascade_size,
            detail=detail,
        )
        chain.events.append(event)
        self._version += 1

        target = EVENT_TARGET_STATUS[kind]
        if target is not None:
            self._advance(chain, target, now)
        return event

    async def record_profit(self, chain_id: str, profit: ProfitData) -> ProfitOutcome | None:
        """Record realized profit, complete the chain and persist.

        Recording the same execution reference twice is a no-op that
        returns the original outcome flagged as a duplicate.
        """
        if not profit.execution_ref:
            raise ValueError("profit records need an execution reference")
        chain = self._chains.get(chain_id)
        if chain is None:
            LOGGER.debug("profit for unknown chain ignored chain_id=%s", chain_id)
            return None

        async with self._lock_for(chain_id):
            existing = self._profits.get(profit.execution_ref)
            if existing is not None:
                LOGGER.info(
                    "duplicate profit ignored chain_id=%s execution_ref=%s",
                    chain_id,
                    profit.execution_ref,
                )
                return ProfitOutcome(
                    chain_id=existing.chain_id,
                    profit=existing.net_profit,
                    semantic_roi=_semantic_roi(
                        existing.net_profit,
                        self._chains[existing.chain_id].origin.weight,
                    ),
                    cascade_multiplier=existing.net_profit / BASE_BROADCAST_COST,
                    duplicate=True,
                )

            now = self._clock()
            net_profit = profit.amount_earned - profit.gas_spent
            self._profits[profit.execution_ref] = ProfitRecord(
                chain_id=chain_id,
                execution_ref=profit.execution_ref,
                amount_earned=profit.amount_earned,
                gas_spent=profit.gas_spent,
                net_profit=net_profit,
                timestamp=now,
                kind=profit.kind,
            )
            chain.profit += net_profit
            chain.semantic_roi = _semantic_roi(net_profit, chain.origin.weight)
            self._version += 1
            self._advance(chain, ChainStatus.COMPLETED, now)

        LOGGER.info(
            "profit recorded chain_id=%s net=%.6f roi=%.2f total=%.6f",
            chain_id,
            net_profit,
            chain.semantic_roi,
            chain.profit,
        )
        await self.flush()
        return ProfitOutcome(
            chain_id=chain_id,
            profit=net_profit,
            semantic_roi=chain.semantic_roi,
            cascade_multiplier=net_profit / BASE_BROADCAST_COST,
        )

    # -- persistence -------------------------------------------------------

    async def flush(self) -> bool:
        """Write a snapshot if anything changed since the last good write.

        Returns False when the write failed; the ledger stays dirty and the
        next flush retries.
        """
        if not self._persist or not self.dirty:
            return True
        async with self._write_lock:
            version = self._version
            snapshot = self.to_dict()
            try:
                await asyncio.to_thread(self._store.save, snapshot)
            except (OSError, TypeError, ValueError) as exc:
                self._metrics.counter("ledger_persist_failures").increment()
                LOGGER.warning(
                    "ledger persist failed error=%s (will retry): %s",
                    ErrorKind.PERSISTENCE_FAILURE.value,
                    exc,
                )
                return False
            self._persisted_version = max(self._persisted_version, version)
            self._metrics.counter("ledger_persist_successes").increment()
        return True

    def load(self) -> bool:
        """Replace in-memory state with the stored snapshot.

        Returns False when there is nothing stored yet. A stored snapshot
        that cannot be parsed raises ValueError.
        """
        if self._store is None:
            return False
        try:
            payload = self._store.load()
        except json.JSONDecodeError as exc:
            raise ValueError(f"ledger snapshot is not valid JSON: {exc}") from exc
        if payload is None:
            LOGGER.info("starting fresh attribution ledger")
            return False
        self._restore(payload)
        LOGGER.info("ledger loaded chains=%d profits=%d", len(self._chains), len(self._profits))
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chains": [[chain_id, chain.to_dict()] for chain_id, chain in self._chains.items()],
            "profits": [[ref, record.to_dict()] for ref, record in self._profits.items()],
            "timestamp": self._clock(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], **kwargs: Any) -> "AttributionLedger":
        ledger = cls(**kwargs)
        ledger._restore(payload)
        return ledger

    # -- analytics ---------------------------------------------------------

    def get_trace(self, chain_id: str) -> ChainTrace | None:
        chain = self._chains.get(chain_id)
        if chain is None:
            return None
        timeline = None
        if chain.events:
            timeline = Timeline(
                signal_to_event=chain.events[0].timestamp - chain.tagged_at,
                total_duration=chain.events[-1].timestamp - chain.tagged_at,
                event_count=len(chain.events),
            )
        return ChainTrace(
            chain_id=chain_id,
            origin=chain.origin,
            tagged_at=chain.tagged_at,
            expected_cascade=chain.expected_cascade,
            events=tuple(chain.events),
            profit=chain.profit,
            semantic_roi=chain.semantic_roi,
            status=chain.status,
            timeline=timeline,
        )

    def analyze(self) -> Dict[str, TypeAnalysis]:
        """Per signal type: count, profit totals, success rate and mean ROI."""
        grouped: Dict[str, List[AttributionChain]] = {}
        for chain in self._chains.values():
            grouped.setdefault(chain.signal_type, []).append(chain)

        analysis: Dict[str, TypeAnalysis] = {}
        for signal_type, chains in grouped.items():
            count = len(chains)
            total_profit = sum(chain.profit for chain in chains)
            successes = sum(1 for chain in chains if chain.status.is_success)
            rois = [chain.semantic_roi for chain in chains if chain.semantic_roi is not None]
            analysis[signal_type] = TypeAnalysis(
                signal_type=signal_type,
                count=count,
                total_profit=total_profit,
                avg_profit=total_profit / count,
                success_rate=successes / count,
                avg_roi=sum(rois) / len(rois) if rois else 0.0,
            )
        return analysis

    def top_signal_types(self, limit: int = 5) -> list[TopSignalType]:
        totals: Dict[str, float] = {}
        for chain in self._chains.values():
            totals[chain.signal_type] = totals.get(chain.signal_type, 0.0) + chain.profit
        grand_total = sum(totals.values())
        ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            TopSignalType(
                signal_type=signal_type,
                profit=profit,
                share=profit / grand_total if grand_total else 0.0,
            )
            for signal_type, profit in ranked
        ]

    def recent_cascade_sizes(self, signal_type: str, window: int) -> list[float]:
        """Observed cascade sizes of the most recent chains of a type, newest first."""
        sizes: list[float] = []
        for chain in reversed(list(self._chains.values())):
            if chain.signal_type != signal_type:
                continue
            sizes.append(chain.cascade_size)
            if len(sizes) >= window:
                break
        return sizes

    def get_dashboard(self) -> Dashboard:
        total_signals = len(self._chains)
        completed = sum(1 for chain in self._chains.values() if chain.status is ChainStatus.COMPLETED)
        total_profit = sum(chain.profit for chain in self._chains.values())
        recent = sorted(self._profits.values(), key=lambda record: record.timestamp, reverse=True)
        return Dashboard(
            summary=DashboardSummary(
                total_signals=total_signals,
                completed_signals=completed,
                success_rate=completed / total_signals if total_signals else 0.0,
                total_profit=total_profit,
                avg_profit_per_signal=total_profit / total_signals if total_signals else 0.0,
            ),
            per_type_analysis=self.analyze(),
            recent_profits=tuple(recent[: self._recent_profits]),
            timestamp=self._clock(),
        )

    # -- internals ---------------------------------------------------------

    def _new_chain_id(self, signal: Signal) -> str:
        fingerprint = json.dumps(
            {
                "type": signal.type,
                "source": signal.source,
                "weight": signal.weight,
                "timestamp": signal.timestamp,
            },
            sort_keys=True,
        )
        semantic_hash = hashlib.sha256(fingerprint.encode()).hexdigest()[:8]
        while True:
            chain_id = f"SIG-{semantic_hash}-{self._rng.getrandbits(32):08x}"
            if chain_id not in self._chains:
                return chain_id

    def _advance(self, chain: AttributionChain, target: ChainStatus, now: float) -> None:
        previous = chain.status
        if previous is target or not previous.can_transition_to(target):
            return
        chain.status = target
        self._emit(ChainTransition(chain.chain_id, chain.signal_type, previous, target, now))

    def _emit(self, transition: ChainTransition) -> None:
        for callback in list(self._subscribers):
            try:
                callback(transition)
            except Exception:
                LOGGER.exception("ledger subscriber failed chain_id=%s", transition.chain_id)

    def _lock_for(self, chain_id: str) -> asyncio.Lock:
        lock = self._chain_locks.get(chain_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chain_locks[chain_id] = lock
        return lock

    def _restore(self, payload: Dict[str, Any]) -> None:
        try:
            chains = {
                str(chain_id): AttributionChain.from_dict(str(chain_id), body)
                for chain_id, body in payload.get("chains", [])
            }
            profits = {
                str(ref): ProfitRecord.from_dict(str(ref), body)
                for ref, body in payload.get("profits", [])
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"malformed ledger snapshot: {exc}") from exc
        self._chains = chains
        self._profits = profits
        self._chain_by_origin = {chain.origin.origin_id: chain_id for chain_id, chain in chains.items()}
        self._chain_locks.clear()
        self._version = self._persisted_version = 0


def _semantic_roi(net_profit: float, weight: float) -> float:
    # Zero-weight signals are never routed; report no return rather than dividing by zero.
    if weight <= 0.0:
        return 0.0
    return net_profit / weight * 100.0
