"""Command line interface for the place recognition module."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from placeworks.logging_utils import configure_logging

from ..core.config import RecognitionConfig, load_config
from ..core.detection_loop import LoopStats
from ..core.engine import EngineInitialisationError, PlaceRecognitionEngine
from ..core.frames import FrameSourceError, open_frame_source
from ..core.models import CatalogDiagnostics, DetectionResult, Place

LOG_PATH = configure_logging("place_recognition")
logger = logging.getLogger(__name__)
logger.info("Place recognition logging initialised → %s", LOG_PATH)

app = typer.Typer(
    name="placeworks-places",
    help="Recognise known places (buildings, landmarks) in camera frames.",
)
console = Console()

PHOTO_ROOT_OPTION = typer.Option(
    None, "--photo-root", "-P", help="Directory with one sub-directory of photos per place."
)
PHOTO_BASE_URL_OPTION = typer.Option(
    None, "--photo-base-url", help="Base URL of an HTTP photo service."
)
THRESHOLD_OPTION = typer.Option(
    None, "--threshold", help="Combined score at or above which a place is detected."
)
MAX_REFERENCES_OPTION = typer.Option(
    None, "--max-references", help="Reference photos kept per place."
)
FETCH_TIMEOUT_OPTION = typer.Option(
    None, "--fetch-timeout", help="Per-photo fetch timeout (seconds)."
)
EMBEDDING_BACKEND_OPTION = typer.Option(
    None, "--embedding-backend", help="Embedding backend identifier (simple, open_clip, remote)."
)


def _config(**overrides: object) -> RecognitionConfig:
    try:
        config = load_config(**{k: v for k, v in overrides.items() if v is not None})
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    logger.info(
        "place_recognition_config",
        extra={
            "event_type": "config",
            "photo_store": config.resolved_photo_store(),
            "photo_root": str(config.photo_root) if config.photo_root else None,
            "photo_base_url": config.photo_base_url,
            "threshold": config.threshold,
            "max_references": config.max_references,
            "embedding_backend": config.embedding_backend,
        },
    )
    return config


async def _ready_engine(config: RecognitionConfig) -> Tuple[PlaceRecognitionEngine, CatalogDiagnostics]:
    engine = PlaceRecognitionEngine(config)
    try:
        await engine.initialize()
        diagnostics = await engine.wait_until_ready()
    except BaseException:
        await engine.close()
        raise
    return engine, diagnostics


@app.command()
def catalog(
    photo_root: Optional[Path] = PHOTO_ROOT_OPTION,
    photo_base_url: Optional[str] = PHOTO_BASE_URL_OPTION,
    max_references: Optional[int] = MAX_REFERENCES_OPTION,
    fetch_timeout: Optional[float] = FETCH_TIMEOUT_OPTION,
    embedding_backend: Optional[str] = EMBEDDING_BACKEND_OPTION,
    show_failures: bool = typer.Option(
        False, "--show-failures/--hide-failures", help="List photos that failed to load."
    ),
) -> None:
    """Build the reference catalog and report what was loaded."""

    config = _config(
        photo_root=photo_root,
        photo_base_url=photo_base_url,
        max_references=max_references,
        fetch_timeout_seconds=fetch_timeout,
        embedding_backend=embedding_backend,
    )

    async def _run() -> Tuple[CatalogDiagnostics, Tuple[Place, ...]]:
        engine, diagnostics = await _ready_engine(config)
        async with engine:
            return diagnostics, engine.places()

    try:
        diagnostics, places = asyncio.run(_run())
    except EngineInitialisationError as exc:
        typer.echo(f"Catalog unavailable: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    table = Table(title="Reference Catalog")
    table.add_column("Place")
    table.add_column("References", justify="right")
    table.add_column("Failed", justify="right")
    for place in places:
        table.add_row(
            place.place_id,
            str(place.reference_count),
            str(len(diagnostics.failures_for(place.place_id))),
        )
    console.print(table)
    typer.echo(
        f"{diagnostics.places_loaded}/{diagnostics.places_enumerated} places loaded, "
        f"{diagnostics.photos_loaded}/{diagnostics.photos_attempted} photos "
        f"in {diagnostics.duration_seconds:.2f}s"
    )

    if show_failures and diagnostics.failures:
        typer.echo("\nFailed photos:")
        for failure in diagnostics.failures:
            typer.echo(
                f"  • {failure.place_id} [{failure.stage.value}] {failure.source_uri}: {failure.reason}"
            )


@app.command()
def identify(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Image to identify."),
    photo_root: Optional[Path] = PHOTO_ROOT_OPTION,
    photo_base_url: Optional[str] = PHOTO_BASE_URL_OPTION,
    threshold: Optional[float] = THRESHOLD_OPTION,
    max_references: Optional[int] = MAX_REFERENCES_OPTION,
    fetch_timeout: Optional[float] = FETCH_TIMEOUT_OPTION,
    embedding_backend: Optional[str] = EMBEDDING_BACKEND_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON."),
) -> None:
    """Identify the place shown in a single image."""

    config = _config(
        photo_root=photo_root,
        photo_base_url=photo_base_url,
        threshold=threshold,
        max_references=max_references,
        fetch_timeout_seconds=fetch_timeout,
        embedding_backend=embedding_backend,
    )
    frame = image.read_bytes()

    async def _run() -> DetectionResult:
        engine, _ = await _ready_engine(config)
        async with engine:
            return await engine.detect(frame)

    try:
        result = asyncio.run(_run())
    except EngineInitialisationError as exc:
        typer.echo(f"Engine unavailable: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if json_output:
        typer.echo(json.dumps(result.to_json(), indent=2))
        return
    _print_result(result, label=image.name)
    if result.scores:
        table = Table(title="Scores")
        table.add_column("Place")
        table.add_column("Combined", justify="right")
        table.add_column("Max", justify="right")
        table.add_column("Mean", justify="right")
        table.add_column("Matches", justify="right")
        for score in result.scores:
            table.add_row(
                score.place_id,
                f"{score.combined_score:.3f}",
                f"{score.max_similarity:.3f}",
                f"{score.avg_similarity:.3f}",
                f"{score.matches_above_threshold}/{score.reference_count}",
            )
        console.print(table)


@app.command()
def watch(
    source: str = typer.Argument(
        ..., help="Camera index (e.g. 0), video file, or directory of frames."
    ),
    photo_root: Optional[Path] = PHOTO_ROOT_OPTION,
    photo_base_url: Optional[str] = PHOTO_BASE_URL_OPTION,
    threshold: Optional[float] = THRESHOLD_OPTION,
    min_interval_ms: Optional[int] = typer.Option(
        None, "--min-interval-ms", help="Minimum gap between detection attempts."
    ),
    max_references: Optional[int] = MAX_REFERENCES_OPTION,
    fetch_timeout: Optional[float] = FETCH_TIMEOUT_OPTION,
    embedding_backend: Optional[str] = EMBEDDING_BACKEND_OPTION,
    frame_delay: float = typer.Option(
        0.0, "--frame-delay", help="Pause between frames when replaying a directory (seconds)."
    ),
    hold: bool = typer.Option(
        False,
        "--hold/--auto-ack",
        help="Keep later detections suppressed after the first one instead of re-arming.",
    ),
) -> None:
    """Run the detection loop over a live or recorded frame source."""

    config = _config(
        photo_root=photo_root,
        photo_base_url=photo_base_url,
        threshold=threshold,
        min_interval_ms=min_interval_ms,
        max_references=max_references,
        fetch_timeout_seconds=fetch_timeout,
        embedding_backend=embedding_backend,
    )
    frames = open_frame_source(source, delay_seconds=frame_delay)
    live = source.isdigit()

    async def _run() -> LoopStats:
        engine, diagnostics = await _ready_engine(config)
        async with engine:
            typer.echo(f"Catalog ready: {diagnostics.places_loaded} places")
            loop = engine.start_loop(frames, drain=not live)

            async def _report() -> None:
                async for result in loop.results():
                    _print_result(result)
                    if result.detected and not hold:
                        loop.acknowledge()

            reporter = asyncio.create_task(_report())
            try:
                return await loop.join()
            finally:
                await reporter

    try:
        stats = asyncio.run(_run())
    except EngineInitialisationError as exc:
        typer.echo(f"Engine unavailable: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except FrameSourceError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        typer.echo("Stopped.")
        return

    typer.echo(
        f"Frames: {stats.frames_seen}  attempts: {stats.attempts}  "
        f"detections: {stats.detections_emitted}  suppressed: {stats.detections_suppressed}"
    )


def _print_result(result: DetectionResult, label: str = "") -> None:
    prefix = f"{label}: " if label else ""
    if result.detected:
        typer.echo(f"{prefix}DETECTED {result.place_id} (confidence={result.confidence:.3f})")
    elif result.best_candidate:
        typer.echo(
            f"{prefix}no match (best={result.best_candidate}, score={result.confidence:.3f})"
        )
    else:
        typer.echo(f"{prefix}no match ({result.note or 'catalog empty'})")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    app()
