from datetime import timedelta

from mailgraph.services.relationship_scoring import (
    DEFAULT_SCORER,
    RelationshipInputs,
    WeightedRelationshipScorer,
)
from mailgraph.utils.time import utcnow

NOW = utcnow()


def _inputs(*, days_ago=1.0, count=5, inbound=3, outbound=2):
    return RelationshipInputs(
        now=NOW,
        last_interaction_at=None if days_ago is None else NOW - timedelta(days=days_ago),
        interaction_count=count,
        inbound_count=inbound,
        outbound_count=outbound,
    )


def test_score_is_bounded():
    assert DEFAULT_SCORER.score(_inputs(days_ago=None, count=0, inbound=0, outbound=0)) == 0.0
    best = DEFAULT_SCORER.score(_inputs(days_ago=0, count=10_000, inbound=5000, outbound=5000))
    assert 0.99 <= best <= 1.0


def test_more_recent_interaction_never_lowers_score():
    scores = [DEFAULT_SCORER.score(_inputs(days_ago=days)) for days in (365, 90, 30, 7, 1, 0)]
    assert scores == sorted(scores)
    assert scores[0] < scores[-1]


def test_more_interactions_never_lower_score():
    scores = [
        DEFAULT_SCORER.score(_inputs(count=count, inbound=count, outbound=count))
        for count in (1, 2, 5, 20, 100)
    ]
    assert scores == sorted(scores)
    assert scores[0] < scores[-1]


def test_two_way_conversation_beats_broadcast():
    balanced = DEFAULT_SCORER.score(_inputs(count=10, inbound=5, outbound=5))
    one_way = DEFAULT_SCORER.score(_inputs(count=10, inbound=10, outbound=0))
    assert balanced > one_way


def test_recency_halves_every_half_life():
    scorer = WeightedRelationshipScorer(half_life_days=10)
    assert scorer.recency_term(NOW, NOW) == 1.0
    assert abs(scorer.recency_term(NOW, NOW - timedelta(days=10)) - 0.5) < 1e-9
    # Clock skew: a future timestamp counts as "now".
    assert scorer.recency_term(NOW, NOW + timedelta(hours=1)) == 1.0


def test_custom_weights():
    recency_only = WeightedRelationshipScorer(
        recency_weight=1.0, frequency_weight=0.0, balance_weight=0.0
    )
    assert recency_only.score(_inputs(days_ago=0, count=1, inbound=1, outbound=0)) == 1.0
