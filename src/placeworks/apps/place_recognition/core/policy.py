"""Per-place scoring and the detect / no-detect decision."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from .models import DetectionResult, Embedding, MatchScore, Place
from .similarity import similarity_scores

MAX_WEIGHT = 0.7
MEAN_WEIGHT = 0.3
DEFAULT_THRESHOLD = 0.65


def combine_scores(max_similarity: float, avg_similarity: float) -> float:
    return MAX_WEIGHT * max_similarity + MEAN_WEIGHT * avg_similarity


@dataclass(frozen=True)
class MatchDecisionPolicy:
    """Blend max and mean similarity per place and apply the threshold.

    The max term rewards a place that has a single strong reference photo;
    the mean term rewards consistency across all of its references.
    """

    threshold: float = DEFAULT_THRESHOLD

    def score_place(self, query: Embedding, place: Place) -> MatchScore:
        similarities = similarity_scores(query, place.embeddings())
        max_similarity = float(similarities.max())
        avg_similarity = float(similarities.mean())
        return MatchScore(
            place_id=place.place_id,
            max_similarity=max_similarity,
            avg_similarity=avg_similarity,
            combined_score=combine_scores(max_similarity, avg_similarity),
            matches_above_threshold=int((similarities > self.threshold).sum()),
            reference_count=place.reference_count,
        )

    def score_all(self, query: Embedding, places: Iterable[Place]) -> List[MatchScore]:
        """Score every place, preserving catalog iteration order."""

        return [self.score_place(query, place) for place in places]

    def decide(self, query: Embedding, places: Iterable[Place]) -> DetectionResult:
        scores = self.score_all(query, places)
        if not scores:
            return DetectionResult.empty(note="catalog empty")

        best = scores[0]
        for score in scores[1:]:
            # strict comparison keeps the first place on ties
            if score.combined_score > best.combined_score:
                best = score

        ranked = tuple(
            sorted(scores, key=lambda item: item.combined_score, reverse=True)
        )
        if best.combined_score >= self.threshold:
            return DetectionResult(
                detected=True,
                confidence=best.combined_score,
                place_id=best.place_id,
                best_candidate=best.place_id,
                matches_above_threshold=best.matches_above_threshold,
                scores=ranked,
            )
        return DetectionResult(
            detected=False,
            confidence=best.combined_score,
            best_candidate=best.place_id,
            matches_above_threshold=best.matches_above_threshold,
            scores=ranked,
        )
