import pytest

from placeworks.apps.place_recognition.core.models import Embedding
from placeworks.apps.place_recognition.core.policy import (
    DEFAULT_THRESHOLD,
    MatchDecisionPolicy,
    combine_scores,
)

from recognition_helpers import QUERY, make_place, make_places


def test_combined_score_weights_max_and_mean() -> None:
    assert combine_scores(0.9, 0.5) == pytest.approx(0.78, abs=1e-6)


def test_score_place_blends_max_and_mean() -> None:
    score = MatchDecisionPolicy().score_place(QUERY, make_place("library", [0.9, 0.1]))

    assert score.max_similarity == pytest.approx(0.9, abs=1e-6)
    assert score.avg_similarity == pytest.approx(0.5, abs=1e-6)
    assert score.combined_score == pytest.approx(0.78, abs=1e-6)
    assert score.matches_above_threshold == 1
    assert score.reference_count == 2


def test_single_identical_reference_is_detected_with_full_confidence() -> None:
    result = MatchDecisionPolicy().decide(QUERY, [make_place("gym", [1.0])])

    assert result.detected is True
    assert result.place_id == "gym"
    assert result.confidence == pytest.approx(1.0)
    assert result.matches_above_threshold == 1


def test_best_place_wins_and_is_detected() -> None:
    places = make_places([("A", [0.8, 0.7]), ("B", [0.5, 0.5])])

    result = MatchDecisionPolicy().decide(QUERY, places)

    assert result.detected is True
    assert result.place_id == "A"
    assert result.confidence == pytest.approx(0.785, abs=1e-6)
    assert result.scores[1].combined_score == pytest.approx(0.5, abs=1e-6)
    assert [score.place_id for score in result.scores] == ["A", "B"]


def test_below_threshold_reports_best_candidate_only() -> None:
    places = make_places([("A", [0.5, 0.4]), ("B", [0.6, 0.6])])

    result = MatchDecisionPolicy().decide(QUERY, places)

    assert result.detected is False
    assert result.place_id is None
    assert result.best_candidate == "B"
    assert result.confidence == pytest.approx(0.6, abs=1e-6)
    assert result.confidence < DEFAULT_THRESHOLD


def test_empty_catalog_yields_negative_result() -> None:
    result = MatchDecisionPolicy().decide(QUERY, [])

    assert result.detected is False
    assert result.confidence == 0.0
    assert result.place_id is None
    assert result.best_candidate is None
    assert result.scores == ()


def test_ties_keep_first_place_in_catalog_order() -> None:
    places = make_places([("north", [0.9]), ("south", [0.9])])

    result = MatchDecisionPolicy().decide(QUERY, places)

    assert result.place_id == "north"
    reversed_result = MatchDecisionPolicy().decide(QUERY, list(reversed(places)))
    assert reversed_result.place_id == "south"


def test_threshold_is_inclusive() -> None:
    place = make_place("hall", [0.8, 0.7])
    exact = MatchDecisionPolicy().score_place(QUERY, place).combined_score

    result = MatchDecisionPolicy(threshold=exact).decide(QUERY, [place])

    assert result.detected is True
    assert result.confidence == exact


def test_confidence_is_monotone_in_reference_similarity() -> None:
    policy = MatchDecisionPolicy()
    weaker = policy.score_place(QUERY, make_place("x", [0.6, 0.3]))
    stronger = policy.score_place(QUERY, make_place("x", [0.7, 0.3]))

    assert stronger.combined_score > weaker.combined_score


def test_mismatched_dimension_references_score_zero() -> None:
    query = Embedding.from_vector([1.0, 0.0])

    result = MatchDecisionPolicy().decide(query, [make_place("odd", [1.0])])

    assert result.detected is False
    assert result.confidence == 0.0
    assert result.best_candidate == "odd"
