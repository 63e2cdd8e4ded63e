"""Place recognition engine wiring the catalog, policy and detection loop."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, AsyncIterable, Dict, List, Optional

from .catalog import ReferenceCatalog
from .config import RecognitionConfig
from .detection_loop import DetectionLoop, extract_embedding
from .embeddings import EmbeddingExtractor, create_extractor
from .models import CatalogDiagnostics, DetectionResult, EmbeddingError, Place
from .photo_store import ImageFetcher, PhotoStore, PhotoStoreError, create_photo_store
from .policy import MatchDecisionPolicy

logger = logging.getLogger(__name__)


class EngineInitialisationError(RuntimeError):
    """Raised when the engine cannot start: no extractor or no Photo Store."""


class PlaceRecognitionEngine:
    """Identify which known place a frame shows.

    ``initialize()`` returns as soon as the Photo Store has been enumerated;
    reference photos are loaded in the background. Until that finishes,
    :meth:`detect` answers against whatever the catalog holds (possibly
    nothing, which yields a negative result).
    """

    def __init__(
        self,
        config: RecognitionConfig,
        *,
        photo_store: Optional[PhotoStore] = None,
        extractor: Optional[EmbeddingExtractor] = None,
        fetcher: Optional[ImageFetcher] = None,
    ) -> None:
        self.config = config
        self.policy = MatchDecisionPolicy(threshold=config.threshold)
        self._photo_store = photo_store
        self._extractor = extractor
        self._fetcher = fetcher or ImageFetcher(timeout=config.fetch_timeout_seconds)
        self._catalog: Optional[ReferenceCatalog] = None
        self._load_task: Optional[asyncio.Task[CatalogDiagnostics]] = None
        self._init_lock: Optional[asyncio.Lock] = None
        self._loops: List[DetectionLoop] = []
        self._last_error: Optional[str] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def catalog(self) -> Optional[ReferenceCatalog]:
        return self._catalog

    @property
    def initialised(self) -> bool:
        return self._load_task is not None

    async def initialize(self) -> None:
        """Enumerate the Photo Store and start populating the catalog.

        Safe to call repeatedly; after a failure it may be called again.
        """

        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._load_task is not None:
                return
            catalog = self._ensure_catalog()
            try:
                listing = await catalog.list_places()
            except PhotoStoreError as exc:
                self._last_error = str(exc)
                logger.error("Photo Store enumeration failed: %s", exc)
                raise EngineInitialisationError(str(exc)) from exc

            self._last_error = None
            self._load_task = asyncio.create_task(
                catalog.load_all_places(listing), name="placeworks-catalog-load"
            )
            logger.info(
                "catalog_population_started",
                extra={"event_type": "catalog_population_started", "places": len(listing)},
            )

    def _ensure_catalog(self) -> ReferenceCatalog:
        if self._catalog is not None:
            return self._catalog
        try:
            extractor = self._extractor or create_extractor(self.config)
        except EmbeddingError as exc:
            self._last_error = str(exc)
            logger.error("Embedding extractor unavailable: %s", exc)
            raise EngineInitialisationError(f"Embedding extractor unavailable: {exc}") from exc
        try:
            photo_store = self._photo_store or create_photo_store(self.config)
        except PhotoStoreError as exc:
            self._last_error = str(exc)
            logger.error("Photo Store unavailable: %s", exc)
            raise EngineInitialisationError(str(exc)) from exc

        self._extractor = extractor
        self._photo_store = photo_store
        self._catalog = ReferenceCatalog(
            photo_store,
            extractor,
            fetcher=self._fetcher,
            max_references=self.config.max_references,
            fetch_timeout=self.config.fetch_timeout_seconds,
            max_concurrency=self.config.max_concurrency,
        )
        logger.info(
            "Using %s extractor with %s photo store",
            extractor.name,
            type(photo_store).__name__,
        )
        return self._catalog

    async def wait_until_ready(self) -> CatalogDiagnostics:
        """Wait for the background catalog load, initialising first if needed."""

        if self._load_task is None:
            await self.initialize()
        assert self._load_task is not None
        return await asyncio.shield(self._load_task)

    async def reload_catalog(self) -> CatalogDiagnostics:
        """Re-enumerate the Photo Store and swap in a freshly built catalog."""

        catalog = self._ensure_catalog()
        try:
            diagnostics = await catalog.reload()
        except PhotoStoreError as exc:
            self._last_error = str(exc)
            logger.error("Catalog reload failed; keeping previous catalog: %s", exc)
            raise EngineInitialisationError(str(exc)) from exc
        self._last_error = None
        return diagnostics

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        runners = []
        for loop in self._loops:
            loop.cancel()
            if loop.runner is not None:
                runners.append(loop.runner)
        if runners:
            await asyncio.wait(runners)
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            await asyncio.wait({self._load_task})
        await self._fetcher.aclose()
        if self._photo_store is not None:
            self._photo_store.close()
        if self._extractor is not None:
            self._extractor.close()
        logger.debug("Place recognition engine closed")

    async def __aenter__(self) -> "PlaceRecognitionEngine":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------
    def places(self) -> tuple[Place, ...]:
        if self._catalog is None:
            return ()
        return self._catalog.all_places()

    async def detect(self, frame: Any) -> DetectionResult:
        """Score one frame against the catalog. Never raises for bad frames."""

        places = self.places()
        if not places or self._extractor is None:
            return DetectionResult.empty(note="catalog empty")

        started = time.perf_counter()
        try:
            embedding = await extract_embedding(
                self._extractor, frame, self.config.extraction_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Frame extraction exceeded %.1fs", self.config.extraction_timeout_seconds
            )
            return DetectionResult.empty(note="extraction timed out")
        except Exception as exc:  # noqa: BLE001 - report as a negative result
            logger.warning("Frame extraction failed: %s", exc)
            return DetectionResult.empty(note=f"extraction failed: {exc}")

        result = self.policy.decide(embedding, places)
        result = replace(result, latency_ms=(time.perf_counter() - started) * 1000.0)
        logger.info(
            "detection_result",
            extra={
                "event_type": "detection_result",
                "detected": result.detected,
                "place_id": result.place_id,
                "best_candidate": result.best_candidate,
                "confidence": round(result.confidence, 4),
                "latency_ms": round(result.latency_ms, 1),
            },
        )
        return result

    def create_loop(self, **overrides: Any) -> DetectionLoop:
        """Build a :class:`DetectionLoop` bound to this engine's catalog."""

        catalog = self._ensure_catalog()
        options: Dict[str, Any] = {
            "min_interval": self.config.min_interval_seconds,
            "extraction_timeout": self.config.extraction_timeout_seconds,
        }
        options.update(overrides)
        assert self._extractor is not None
        loop = DetectionLoop(self._extractor, self.policy, catalog.all_places, **options)
        self._loops = [existing for existing in self._loops if not existing.stopped]
        self._loops.append(loop)
        return loop

    def start_loop(
        self, frames: AsyncIterable[Any], *, drain: bool = False, **overrides: Any
    ) -> DetectionLoop:
        """Start a detection loop over *frames* in the background.

        Consume results with ``async for result in loop.results()`` and wait
        for the source to end with ``await loop.join()``.
        """

        loop = self.create_loop(**overrides)
        loop.start(frames, drain=drain)
        return loop

    def acknowledge(self) -> None:
        """Re-arm positive notifications on every running loop."""

        for loop in self._loops:
            loop.acknowledge()

    def status(self) -> Dict[str, Any]:
        catalog = self._catalog
        loading = self._load_task is not None and not self._load_task.done()
        return {
            "initialised": self.initialised,
            "loading": loading,
            "loaded": bool(catalog and catalog.is_loaded),
            "places": len(catalog) if catalog else 0,
            "references": sum(place.reference_count for place in self.places()),
            "extractor": self._extractor.name if self._extractor else None,
            "threshold": self.policy.threshold,
            "last_error": self._last_error,
            "diagnostics": catalog.diagnostics.as_dict() if catalog else None,
        }
