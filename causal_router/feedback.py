"""Feedback-driven signal selection.

Each selection cycle scores the candidate signal templates by

    weight * time_weight(type, hour) * (1 + historical_success(type))

and picks one of the top-K at random from an injected ``random.Random``.
Historical success comes from the attribution ledger: the mean observed
cascade size of the most recent chains of that type, scaled by 1/100 and
capped at 0.5.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import numpy as np

from causal_router.config import RoutingConfigError
from causal_router.ledger import AttributionLedger
from causal_router.models import MAX_WEIGHT, Signal

LOGGER = logging.getLogger(__name__)

HISTORICAL_SUCCESS_SCALE = 100.0
HISTORICAL_SUCCESS_CAP = 0.5


# ---------------------------------------------------------------------------
# Time-of-day weights
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeWindow:
    """Boost for one signal type during an inclusive hour range.

    A window whose ``start_hour`` is after its ``end_hour`` wraps past
    midnight (22 -> 3 covers 22, 23, 0, 1, 2, 3).
    """

    signal_type: str
    start_hour: int
    end_hour: int
    weight: float

    def __post_init__(self) -> None:
        for hour in (self.start_hour, self.end_hour):
            if not 0 <= hour <= 23:
                raise ValueError(f"hour must be within [0, 23], got {hour}")
        if self.weight <= 0:
            raise ValueError(f"time weight must be positive, got {self.weight}")

    def covers(self, hour: int) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        return hour >= self.start_hour or hour <= self.end_hour


DEFAULT_TIME_WINDOWS: tuple[TimeWindow, ...] = (
    TimeWindow("LIQUIDATION_THRESHOLD_BREACH", 2, 6, 1.5),
    TimeWindow("MEV_OPPORTUNITY_SURFACE", 14, 18, 1.3),
    TimeWindow("BANKRUPTCY_FILING_DETECTED", 16, 20, 1.4),
    TimeWindow("ORACLE_PRICE_DEVIATION", 0, 4, 1.6),
)


class TimeWeightTable:
    def __init__(self, windows: Sequence[TimeWindow] | None = None) -> None:
        self._windows = tuple(DEFAULT_TIME_WINDOWS if windows is None else windows)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "TimeWeightTable":
        raw = document.get("timeWeights")
        if raw is None:
            return cls()
        if not isinstance(raw, list):
            raise RoutingConfigError("timeWeights must be a list")
        windows: List[TimeWindow] = []
        for entry in raw:
            try:
                windows.append(
                    TimeWindow(
                        signal_type=str(entry["signalType"]),
                        start_hour=int(entry["startHour"]),
                        end_hour=int(entry["endHour"]),
                        weight=float(entry["weight"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise RoutingConfigError(f"invalid timeWeights entry {entry!r}: {exc}") from exc
        return cls(windows)

    @property
    def windows(self) -> tuple[TimeWindow, ...]:
        return self._windows

    def weight_for(self, signal_type: str, hour: int) -> float:
        for window in self._windows:
            if window.signal_type == signal_type and window.covers(hour):
                return window.weight
        return 1.0


# ---------------------------------------------------------------------------
# Signal templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignalTemplate:
    type: str
    weight: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.weight <= MAX_WEIGHT:
            raise ValueError(f"template weight must be within [0, {MAX_WEIGHT}], got {self.weight}")


DEFAULT_SIGNAL_TEMPLATES: tuple[SignalTemplate, ...] = (
    # Protocol state.
    SignalTemplate("CRITICAL_PARAMETER_CHANGE", 10.0),
    SignalTemplate("LIQUIDATION_THRESHOLD_BREACH", 9.5),
    SignalTemplate("COLLATERAL_RATIO_FLIP", 9.8),
    SignalTemplate("ORACLE_PRICE_DEVIATION", 9.2),
    SignalTemplate("VAULT_CASCADE_IMMINENT", 10.0),
    # Off-chain.
    SignalTemplate("BANKRUPTCY_FILING_DETECTED", 10.0),
    SignalTemplate("INSIDER_TRADE_PATTERN", 8.9),
    SignalTemplate("REGULATORY_ACTION_PENDING", 9.6),
    # Market structure.
    SignalTemplate("MEV_OPPORTUNITY_SURFACE", 9.1),
    SignalTemplate("FLASHLOAN_ARBITRAGE_GAP", 8.8),
    SignalTemplate("CROSS_CHAIN_YIELD_DELTA", 9.3),
    # Meta.
    SignalTemplate("UTXO_QUANTUM_COLLAPSE", 9.7),
    SignalTemplate("SEMANTIC_CONSENSUS_SHIFT", 9.9),
    SignalTemplate("CAUSAL_ATTRIBUTION_SPIKE", 10.0),
)


def parse_signal_templates(document: Dict[str, Any]) -> tuple[SignalTemplate, ...]:
    raw = document.get("signalTemplates")
    if raw is None:
        return DEFAULT_SIGNAL_TEMPLATES
    if not isinstance(raw, list) or not raw:
        raise RoutingConfigError("signalTemplates must be a non-empty list")
    templates: List[SignalTemplate] = []
    for entry in raw:
        try:
            templates.append(SignalTemplate(type=str(entry["type"]), weight=float(entry["weight"])))
        except (KeyError, TypeError, ValueError) as exc:
            raise RoutingConfigError(f"invalid signalTemplates entry {entry!r}: {exc}") from exc
    return tuple(templates)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CandidateScore:
    template: SignalTemplate
    time_weight: float
    historical_success: float
    score: float


class ReinforcementFeedback:
    def __init__(
        self,
        ledger: AttributionLedger,
        rng: random.Random,
        *,
        time_weights: TimeWeightTable | None = None,
        top_k: int = 3,
        history_window: int = 50,
    ) -> None:
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        if history_window < 1:
            raise ValueError("history_window must be at least 1")
        self._ledger = ledger
        self._rng = rng
        self._time_weights = time_weights or TimeWeightTable()
        self._top_k = top_k
        self._history_window = history_window

    def historical_success(self, signal_type: str) -> float:
        sizes = self._ledger.recent_cascade_sizes(signal_type, self._history_window)
        if not sizes:
            return 0.0
        mean_cascade = float(np.mean(sizes))
        return min(mean_cascade / HISTORICAL_SUCCESS_SCALE, HISTORICAL_SUCCESS_CAP)

    def rank_candidates(self, candidates: Sequence[SignalTemplate], hour: int) -> list[CandidateScore]:
        """Score every candidate, best first; ties keep candidate order."""
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be within [0, 23], got {hour}")
        scored: list[CandidateScore] = []
        for template in candidates:
            time_weight = self._time_weights.weight_for(template.type, hour)
            success = self.historical_success(template.type)
            scored.append(
                CandidateScore(
                    template=template,
                    time_weight=time_weight,
                    historical_success=success,
                    score=template.weight * time_weight * (1.0 + success),
                )
            )
        if not scored:
            return []
        order = np.argsort(-np.array([c.score for c in scored]), kind="stable")
        return [scored[int(i)] for i in order]

    def select_signal(
        self,
        candidates: Sequence[SignalTemplate],
        hour: int,
        now: float | None = None,
    ) -> Signal:
        ranked = self.rank_candidates(candidates, hour)
        if not ranked:
            raise ValueError("select_signal needs at least one candidate")
        top = ranked[: self._top_k]
        chosen = top[self._rng.randrange(len(top))]
        LOGGER.info(
            "signal selected type=%s score=%.3f time_weight=%.2f success=%.3f",
            chosen.template.type,
            chosen.score,
            chosen.time_weight,
            chosen.historical_success,
        )
        weight = chosen.template.weight
        return Signal(
            type=chosen.template.type,
            weight=weight,
            cascade_potential=weight ** 2,
            timestamp=now if now is not None else time.time(),
            origin_id=f"{self._rng.getrandbits(64):016x}",
            source="reinforcement-selection",
        )
