"""Semantic weight scoring.

Events are scored by their expected causal power rather than their dollar
size: a one-line protocol parameter change outranks a large transfer.
Cascade potential grows with the square of the weight, so a small step up
in weight models a disproportionately larger market reaction.
"""

from __future__ import annotations

import time
import uuid
from types import MappingProxyType
from typing import Any, Dict, Mapping

from causal_router.config import RoutingConfigError, as_float_map
from causal_router.models import MAX_WEIGHT, CascadeAssessment, Priority, RawEvent, Signal

URGENT_WEIGHT_THRESHOLD = 7.0

DEFAULT_EVENT_WEIGHTS: Mapping[str, float] = MappingProxyType({
    # Cascade creators.
    "parameterChange": 10.0,
    "goingConcern": 10.0,
    "firstOfType": 10.0,
    "governanceVote": 9.0,
    "insiderAction": 9.0,
    # Profitable but contested.
    "liquidationTrigger": 7.0,
    "oracleUpdate": 6.0,
    "largeTx": 3.0,
    # Noise.
    "routineTx": 1.0,
    "spam": 0.0,
})


class Scorer:
    """Total lookup from event category to a weight in [0, 10]."""

    def __init__(self, weights: Mapping[str, float] | None = None) -> None:
        table = dict(DEFAULT_EVENT_WEIGHTS if weights is None else weights)
        for category, weight in table.items():
            if not 0.0 <= weight <= MAX_WEIGHT:
                raise RoutingConfigError(
                    f"event weight for {category!r} must be within [0, {MAX_WEIGHT}], got {weight}"
                )
        self._weights: Mapping[str, float] = MappingProxyType(table)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Scorer":
        overrides = as_float_map(document.get("eventWeights"), name="eventWeights")
        if not overrides:
            return cls()
        return cls({**DEFAULT_EVENT_WEIGHTS, **overrides})

    @property
    def weights(self) -> Mapping[str, float]:
        return self._weights

    def score(self, event: RawEvent) -> float:
        return self._weights.get(event.category, 0.0)

    def calculate_cascade(self, event: RawEvent) -> CascadeAssessment:
        weight = self.score(event)
        return CascadeAssessment(
            semantic_weight=weight,
            cascade_potential=weight ** 2,
            priority=Priority.URGENT if weight >= URGENT_WEIGHT_THRESHOLD else Priority.MONITOR,
        )

    def to_signal(self, event: RawEvent, now: float | None = None) -> Signal:
        """Build an immutable Signal for routing.

        The routing key is the event's ``signal_type``; events that do not
        name one are routed under their category.
        """
        assessment = self.calculate_cascade(event)
        timestamp = event.observed_at if event.observed_at is not None else (now or time.time())
        return Signal(
            type=event.signal_type or event.category,
            weight=assessment.semantic_weight,
            cascade_potential=assessment.cascade_potential,
            timestamp=timestamp,
            origin_id=event.event_id or uuid.uuid4().hex[:16],
            source=event.source,
            anchor=event.anchor,
        )
