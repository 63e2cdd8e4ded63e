"""Data models for place recognition."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np


class EmbeddingError(RuntimeError):
    """Raised when an image cannot be turned into a usable embedding."""


@dataclass(frozen=True, eq=False)
class Embedding:
    """Immutable, L2-normalised feature vector.

    Build instances through :meth:`from_vector`; the constructor trusts its
    input and is only used internally once normalisation has happened.
    """

    vector: np.ndarray

    @classmethod
    def from_vector(cls, values: Sequence[float] | np.ndarray) -> "Embedding":
        array = np.asarray(values, dtype=np.float32).reshape(-1)
        if array.size == 0:
            raise EmbeddingError("Extractor returned an empty vector")
        norm = float(np.linalg.norm(array))
        if not math.isfinite(norm) or norm == 0.0:
            raise EmbeddingError("Extractor returned a vector with zero or non-finite norm")
        normalised = (array / norm).astype(np.float32)
        normalised.setflags(write=False)
        return cls(vector=normalised)

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])

    def __len__(self) -> int:
        return self.dimension

    def tolist(self) -> List[float]:
        return [float(value) for value in self.vector]


@dataclass(frozen=True)
class ReferenceEntry:
    """One reference embedding derived from one place photo."""

    place_id: str
    embedding: Embedding
    source_uri: str


@dataclass(frozen=True)
class Place:
    """A known place and its bounded tuple of reference entries."""

    place_id: str
    reference_entries: Tuple[ReferenceEntry, ...]

    def __post_init__(self) -> None:
        if not self.reference_entries:
            raise ValueError(f"Place '{self.place_id}' needs at least one reference entry")

    @property
    def reference_count(self) -> int:
        return len(self.reference_entries)

    def embeddings(self) -> List[np.ndarray]:
        return [entry.embedding.vector for entry in self.reference_entries]


@dataclass(frozen=True)
class PlacePhotos:
    """Photo Store listing entry: a place and the URIs of its photos."""

    place_id: str
    photo_uris: Tuple[str, ...]


@dataclass(frozen=True)
class MatchScore:
    """Similarity of one query against every reference of one place."""

    place_id: str
    max_similarity: float
    avg_similarity: float
    combined_score: float
    matches_above_threshold: int = 0
    reference_count: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "place_id": self.place_id,
            "max_similarity": float(self.max_similarity),
            "avg_similarity": float(self.avg_similarity),
            "combined_score": float(self.combined_score),
            "matches_above_threshold": self.matches_above_threshold,
            "reference_count": self.reference_count,
        }


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one detection attempt."""

    detected: bool
    confidence: float
    place_id: Optional[str] = None
    best_candidate: Optional[str] = None
    matches_above_threshold: int = 0
    scores: Tuple[MatchScore, ...] = field(default_factory=tuple)
    latency_ms: float = 0.0
    note: str = ""

    @classmethod
    def empty(cls, note: str = "") -> "DetectionResult":
        return cls(detected=False, confidence=0.0, note=note)

    def to_json(self) -> Dict[str, object]:
        return {
            "detected": self.detected,
            "place_id": self.place_id,
            "confidence": float(self.confidence),
            "best_candidate": self.best_candidate,
            "matches_above_threshold": self.matches_above_threshold,
            "latency_ms": float(self.latency_ms),
            "note": self.note,
            "scores": [score.as_dict() for score in self.scores],
        }


class LoadStage(str, Enum):
    """Step of catalog population at which a photo was dropped."""

    FETCH = "fetch"
    TIMEOUT = "timeout"
    EXTRACT = "extract"


@dataclass(frozen=True)
class LoadFailure:
    place_id: str
    source_uri: str
    stage: LoadStage
    reason: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "place_id": self.place_id,
            "source_uri": self.source_uri,
            "stage": self.stage.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class CatalogDiagnostics:
    """Summary of the most recent catalog population."""

    places_enumerated: int = 0
    places_loaded: int = 0
    photos_attempted: int = 0
    photos_loaded: int = 0
    photos_discarded: int = 0
    failures: Tuple[LoadFailure, ...] = field(default_factory=tuple)
    duration_seconds: float = 0.0

    def failures_for(self, place_id: str) -> List[LoadFailure]:
        return [failure for failure in self.failures if failure.place_id == place_id]

    def as_dict(self) -> Dict[str, object]:
        return {
            "places_enumerated": self.places_enumerated,
            "places_loaded": self.places_loaded,
            "photos_attempted": self.photos_attempted,
            "photos_loaded": self.photos_loaded,
            "photos_discarded": self.photos_discarded,
            "failures": [failure.as_dict() for failure in self.failures],
            "duration_seconds": float(self.duration_seconds),
        }
