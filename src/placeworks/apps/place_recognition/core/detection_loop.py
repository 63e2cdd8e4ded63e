"""Throttled detection loop over a live frame source."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    List,
    Optional,
    Sequence,
)

from .embeddings import EmbeddingExtractor
from .models import DetectionResult, Embedding, Place
from .policy import MatchDecisionPolicy

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL_SECONDS = 3.0
DEFAULT_RESULT_BUFFER = 32

Listener = Callable[[DetectionResult], None]


class LoopState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    EXTRACTING = "extracting"
    SCORING = "scoring"
    STOPPED = "stopped"


@dataclass
class LoopStats:
    frames_seen: int = 0
    dropped_interval: int = 0
    skipped_busy: int = 0
    attempts: int = 0
    failed_attempts: int = 0
    results_emitted: int = 0
    detections_emitted: int = 0
    detections_suppressed: int = 0
    late_results_discarded: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


async def extract_embedding(
    extractor: EmbeddingExtractor, frame: Any, timeout: Optional[float] = None
) -> Embedding:
    """Run the (blocking) extractor in a worker thread, optionally bounded.

    On timeout the worker thread is left to finish on its own; its result is
    never looked at.
    """

    call = asyncio.to_thread(extractor.extract, frame)
    if timeout is None:
        return await call
    return await asyncio.wait_for(call, timeout=timeout)


class DetectionLoop:
    """Drive repeated detection attempts against a stream of frames.

    * frames arriving before ``min_interval`` has elapsed since the last
      attempt are dropped, not queued;
    * a frame arriving while an attempt is still in flight is skipped;
    * once a positive result is delivered, further positives are suppressed
      until :meth:`acknowledge` is called. Negative results always go out.
    """

    def __init__(
        self,
        extractor: EmbeddingExtractor,
        policy: MatchDecisionPolicy,
        places: Callable[[], Sequence[Place]],
        *,
        min_interval: float = DEFAULT_MIN_INTERVAL_SECONDS,
        extraction_timeout: Optional[float] = None,
        emit_negative: bool = True,
        result_buffer: int = DEFAULT_RESULT_BUFFER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._extractor = extractor
        self._policy = policy
        self._places = places
        self._min_interval = max(0.0, float(min_interval))
        self._extraction_timeout = extraction_timeout
        self._emit_negative = emit_negative
        self._clock = clock
        self._queue: asyncio.Queue[Optional[DetectionResult]] = asyncio.Queue(
            maxsize=max(1, result_buffer)
        )
        self._listeners: List[Listener] = []
        self._state = LoopState.IDLE
        self._in_flight: Optional[asyncio.Task[None]] = None
        self._last_attempt_at: Optional[float] = None
        self._awaiting_ack = False
        self._runner: Optional[asyncio.Task[LoopStats]] = None
        self.stats = LoopStats()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._state is LoopState.STOPPED

    @property
    def awaiting_acknowledgement(self) -> bool:
        return self._awaiting_ack

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def acknowledge(self) -> None:
        """Consumer dismissed the last positive result; allow the next one."""

        self._awaiting_ack = False

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def stop(self) -> None:
        if self._state is LoopState.STOPPED:
            return
        self._state = LoopState.STOPPED
        self._enqueue(None)
        logger.info("detection_loop_stopped", extra={"event_type": "loop_stopped", **self.stats.as_dict()})

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------
    def submit(self, frame: Any, *, now: Optional[float] = None) -> bool:
        """Offer a frame; return ``True`` when it started a detection attempt.

        Must be called from the event loop thread.
        """

        if self._state is LoopState.STOPPED:
            return False
        self.stats.frames_seen += 1
        now = self._clock() if now is None else now

        if (
            self._last_attempt_at is not None
            and now - self._last_attempt_at < self._min_interval
        ):
            self.stats.dropped_interval += 1
            return False
        if self.busy:
            self.stats.skipped_busy += 1
            return False

        self._last_attempt_at = now
        self._state = LoopState.SAMPLING
        self._in_flight = asyncio.create_task(self._attempt(frame))
        return True

    async def wait_idle(self) -> None:
        """Wait for the in-flight attempt, if any, to finish."""

        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def run(self, frames: AsyncIterable[Any], *, drain: bool = False) -> LoopStats:
        """Consume *frames* until the source ends or :meth:`stop` is called.

        With ``drain=True`` the last in-flight attempt may still publish once
        the source is exhausted; otherwise it is abandoned like any attempt
        that finishes after stop.
        """

        try:
            async for frame in frames:
                if self._state is LoopState.STOPPED:
                    break
                self.submit(frame)
                # yield so a freshly started attempt can make progress
                await asyncio.sleep(0)
            if drain and self._state is not LoopState.STOPPED:
                await self.wait_idle()
        finally:
            self.stop()
            await self.wait_idle()
        return self.stats

    def start(self, frames: AsyncIterable[Any], *, drain: bool = False) -> asyncio.Task[LoopStats]:
        """Run over *frames* in a background task; see :meth:`join`."""

        if self._runner is None:
            self._runner = asyncio.create_task(
                self.run(frames, drain=drain), name="placeworks-detection-loop"
            )
        return self._runner

    async def join(self) -> LoopStats:
        """Wait for a loop started with :meth:`start`; re-raises source errors."""

        if self._runner is not None:
            await self._runner
        return self.stats

    def cancel(self) -> None:
        self.stop()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()

    @property
    def runner(self) -> Optional[asyncio.Task[LoopStats]]:
        return self._runner

    async def results(self) -> AsyncIterator[DetectionResult]:
        """Yield delivered results in tick order until the loop stops."""

        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _attempt(self, frame: Any) -> None:
        self.stats.attempts += 1
        started = time.perf_counter()
        places = self._places()
        if not places:
            self._finish(DetectionResult.empty(note="catalog empty"))
            return

        self._set_state(LoopState.EXTRACTING)
        try:
            embedding = await extract_embedding(
                self._extractor, frame, self._extraction_timeout
            )
        except asyncio.TimeoutError:
            self.stats.failed_attempts += 1
            logger.warning(
                "Extraction exceeded %.1fs; skipping this tick", self._extraction_timeout
            )
            self._set_state(LoopState.IDLE)
            return
        except Exception as exc:  # noqa: BLE001 - a failed tick is skipped
            self.stats.failed_attempts += 1
            logger.warning("Extraction failed; skipping this tick: %s", exc)
            self._set_state(LoopState.IDLE)
            return

        self._set_state(LoopState.SCORING)
        result = self._policy.decide(embedding, self._places())
        self._finish(replace(result, latency_ms=(time.perf_counter() - started) * 1000.0))

    def _set_state(self, state: LoopState) -> None:
        if self._state is not LoopState.STOPPED:
            self._state = state

    def _finish(self, result: DetectionResult) -> None:
        if self._state is LoopState.STOPPED:
            self.stats.late_results_discarded += 1
            return
        self._state = LoopState.IDLE
        self._publish(result)

    def _publish(self, result: DetectionResult) -> None:
        if result.detected:
            if self._awaiting_ack:
                self.stats.detections_suppressed += 1
                logger.debug("Suppressed detection of %s (awaiting ack)", result.place_id)
                return
            self._awaiting_ack = True
            self.stats.detections_emitted += 1
            logger.info(
                "place_detected",
                extra={
                    "event_type": "detection_result",
                    "place_id": result.place_id,
                    "confidence": result.confidence,
                },
            )
        elif not self._emit_negative:
            return

        self.stats.results_emitted += 1
        self._enqueue(result)
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception as exc:  # noqa: BLE001 - listeners must not break the loop
                logger.error("Detection listener %r failed: %s", listener, exc)

    def _enqueue(self, item: Optional[DetectionResult]) -> None:
        if self._queue.full():
            # drop the oldest buffered result; the freshest one matters most
            self._queue.get_nowait()
        self._queue.put_nowait(item)
