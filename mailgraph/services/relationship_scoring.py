"""
Relationship strength scoring.

The default scorer is a weighted sum of three terms, each in [0, 1]:

- recency:   ``0.5 ** (days_since_last / half_life_days)``; a more recent
  interaction never lowers the score.
- frequency: ``1 - exp(-interaction_count / saturation)``; more interactions
  never lower the score.
- balance:   ``1 - |inbound - outbound| / (inbound + outbound)``; two-way
  conversations score higher than one-way broadcasts.

Swap the scorer by passing any object with a ``score(inputs)`` method to
``interaction_service.recalculate_contact_stats``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from mailgraph.utils.time import ensure_utc


@dataclass(frozen=True)
class RelationshipInputs:
    now: datetime
    last_interaction_at: datetime | None
    interaction_count: int
    inbound_count: int
    outbound_count: int


class RelationshipScorer(Protocol):
    def score(self, inputs: RelationshipInputs) -> float: ...


@dataclass(frozen=True)
class WeightedRelationshipScorer:
    half_life_days: float = 30.0
    frequency_saturation: float = 20.0
    recency_weight: float = 0.5
    frequency_weight: float = 0.35
    balance_weight: float = 0.15

    def recency_term(self, now: datetime, last_interaction_at: datetime | None) -> float:
        if last_interaction_at is None:
            return 0.0
        days = (ensure_utc(now) - ensure_utc(last_interaction_at)).total_seconds() / 86400
        return 0.5 ** (max(days, 0.0) / self.half_life_days)

    def frequency_term(self, interaction_count: int) -> float:
        if interaction_count <= 0:
            return 0.0
        return 1.0 - math.exp(-interaction_count / self.frequency_saturation)

    @staticmethod
    def balance_term(inbound_count: int, outbound_count: int) -> float:
        total = inbound_count + outbound_count
        if total <= 0:
            return 0.0
        return 1.0 - abs(inbound_count - outbound_count) / total

    def score(self, inputs: RelationshipInputs) -> float:
        value = (
            self.recency_weight * self.recency_term(inputs.now, inputs.last_interaction_at)
            + self.frequency_weight * self.frequency_term(inputs.interaction_count)
            + self.balance_weight * self.balance_term(inputs.inbound_count, inputs.outbound_count)
        )
        return round(min(max(value, 0.0), 1.0), 6)


DEFAULT_SCORER = WeightedRelationshipScorer()
