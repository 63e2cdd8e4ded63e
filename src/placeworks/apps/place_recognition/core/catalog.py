"""Reference catalog: per-place reference embeddings built from the Photo Store."""

from __future__ import annotations

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .embeddings import EmbeddingExtractor
from .models import (
    CatalogDiagnostics,
    EmbeddingError,
    LoadFailure,
    LoadStage,
    Place,
    PlacePhotos,
    ReferenceEntry,
)
from .photo_store import (
    ImageFetcher,
    PhotoFetchError,
    PhotoStore,
    PhotoStoreError,
    resolve_uri,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_REFERENCES = 5

_PhotoOutcome = Union[ReferenceEntry, LoadFailure]


class ReferenceCatalog:
    """Authoritative mapping of place id to :class:`Place`.

    Readers always see a complete catalog: population builds a new mapping
    off to the side and swaps it in with a single assignment.
    """

    def __init__(
        self,
        photo_store: PhotoStore,
        extractor: EmbeddingExtractor,
        *,
        fetcher: Optional[ImageFetcher] = None,
        max_references: int = DEFAULT_MAX_REFERENCES,
        fetch_timeout: float = 10.0,
        max_concurrency: int = 4,
    ) -> None:
        if max_references < 1:
            raise ValueError("max_references must be at least 1")
        self._photo_store = photo_store
        self._extractor = extractor
        self._fetcher = fetcher or ImageFetcher(timeout=fetch_timeout)
        self._max_references = max_references
        self._fetch_timeout = fetch_timeout
        self._max_concurrency = max(1, max_concurrency)
        self._places: Mapping[str, Place] = MappingProxyType({})
        self._diagnostics = CatalogDiagnostics()
        self._loaded = False
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------
    @property
    def max_references(self) -> int:
        return self._max_references

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def diagnostics(self) -> CatalogDiagnostics:
        return self._diagnostics

    def get(self, place_id: str) -> Optional[Place]:
        return self._places.get(place_id)

    def all_places(self) -> Tuple[Place, ...]:
        return tuple(self._places.values())

    def __len__(self) -> int:
        return len(self._places)

    def __contains__(self, place_id: object) -> bool:
        return place_id in self._places

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------
    async def list_places(self) -> Sequence[PlacePhotos]:
        """Enumerate the Photo Store; failure here is fatal for a load."""

        try:
            return await asyncio.to_thread(self._photo_store.list_places_with_photos)
        except PhotoStoreError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalise store failures
            raise PhotoStoreError(f"Photo Store enumeration failed: {exc}") from exc

    async def load_all_places(
        self, listing: Optional[Sequence[PlacePhotos]] = None
    ) -> CatalogDiagnostics:
        """Populate the catalog once; later calls are no-ops until :meth:`reload`.

        *listing* lets a caller that already enumerated the Photo Store hand
        the result over instead of enumerating twice.
        """

        async with self._lock:
            if self._loaded:
                logger.debug("Catalog already loaded; skipping load_all_places()")
                return self._diagnostics
            await self._rebuild(listing)
            return self._diagnostics

    async def reload(self) -> CatalogDiagnostics:
        """Rebuild the catalog from a fresh enumeration of the Photo Store."""

        async with self._lock:
            logger.info("Reloading reference catalog")
            await self._rebuild(None)
            return self._diagnostics

    async def _rebuild(self, listing: Optional[Sequence[PlacePhotos]]) -> None:
        started = time.perf_counter()
        if listing is None:
            listing = await self.list_places()

        jobs: List[Tuple[str, str]] = []
        for entry in listing:
            for uri in entry.photo_uris[: self._max_references]:
                jobs.append((entry.place_id, uri))

        semaphore = asyncio.Semaphore(self._max_concurrency)
        outcomes = await asyncio.gather(
            *(self._load_photo(semaphore, place_id, uri) for place_id, uri in jobs)
        )

        grouped: Dict[str, List[ReferenceEntry]] = {}
        failures: List[LoadFailure] = []
        discarded = 0
        for outcome in outcomes:
            if isinstance(outcome, LoadFailure):
                failures.append(outcome)
                continue
            bucket = grouped.setdefault(outcome.place_id, [])
            # only reachable when a store lists the same place more than once
            if len(bucket) >= self._max_references:
                discarded += 1
                continue
            bucket.append(outcome)

        places = {
            place_id: Place(place_id=place_id, reference_entries=tuple(entries))
            for place_id, entries in grouped.items()
        }
        self._places = MappingProxyType(places)
        self._loaded = True
        self._diagnostics = CatalogDiagnostics(
            places_enumerated=len({entry.place_id for entry in listing}),
            places_loaded=len(places),
            photos_attempted=len(jobs),
            photos_loaded=sum(len(entries) for entries in grouped.values()),
            photos_discarded=discarded,
            failures=tuple(failures),
            duration_seconds=time.perf_counter() - started,
        )

        logger.info(
            "catalog_load_complete",
            extra={
                "event_type": "catalog_load_complete",
                "places_enumerated": self._diagnostics.places_enumerated,
                "places_loaded": self._diagnostics.places_loaded,
                "photos_loaded": self._diagnostics.photos_loaded,
                "failures": len(failures),
            },
        )
        for place_id in sorted({entry.place_id for entry in listing} - set(places)):
            logger.warning("Place %s has no usable reference photos", place_id)

    async def _load_photo(
        self, semaphore: asyncio.Semaphore, place_id: str, uri: str
    ) -> _PhotoOutcome:
        resolved = resolve_uri(uri, self._photo_store.base_uri)
        async with semaphore:
            try:
                data = await asyncio.wait_for(
                    self._fetcher.fetch(resolved), timeout=self._fetch_timeout
                )
            except asyncio.TimeoutError:
                return self._failure(
                    place_id,
                    resolved,
                    LoadStage.TIMEOUT,
                    f"no response within {self._fetch_timeout:.1f}s",
                )
            except PhotoFetchError as exc:
                return self._failure(place_id, resolved, LoadStage.FETCH, str(exc))
            except Exception as exc:  # noqa: BLE001 - one photo must not abort the load
                return self._failure(place_id, resolved, LoadStage.FETCH, repr(exc))

            try:
                embedding = await asyncio.to_thread(self._extractor.extract, data)
            except EmbeddingError as exc:
                return self._failure(place_id, resolved, LoadStage.EXTRACT, str(exc))
            except Exception as exc:  # noqa: BLE001 - one photo must not abort the load
                return self._failure(place_id, resolved, LoadStage.EXTRACT, repr(exc))

        return ReferenceEntry(place_id=place_id, embedding=embedding, source_uri=resolved)

    @staticmethod
    def _failure(place_id: str, uri: str, stage: LoadStage, reason: str) -> LoadFailure:
        logger.warning("Skipping photo %s for %s (%s): %s", uri, place_id, stage.value, reason)
        return LoadFailure(place_id=place_id, source_uri=uri, stage=stage, reason=reason)
