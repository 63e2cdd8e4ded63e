"""Configuration helpers for the place recognition engine."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Tuple


_CONFIG_ENV_PREFIX = "PLACEWORKS_PLACE_RECOGNITION__"

PHOTO_STORE_KINDS = ("auto", "directory", "http")


def _find_pyproject(start: Optional[Path] = None) -> Optional[Path]:
    """Locate the closest ``pyproject.toml`` relative to *start*."""

    current = (start or Path.cwd()).resolve()
    for candidate in [current, *current.parents]:
        pyproject = candidate / "pyproject.toml"
        if pyproject.exists():
            return pyproject
    return None


def _coerce_int(value: object, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except Exception:  # noqa: BLE001 - defensive coercion
        return default


def _coerce_float(value: object, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except Exception:  # noqa: BLE001 - defensive coercion
        return default


def _normalise_iterable(value: object) -> Tuple[str, ...]:
    if value is None:
        return tuple()
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(",")]
    elif isinstance(value, Iterable):
        parts = []
        for item in value:
            if not item:
                continue
            parts.append(str(item).strip())
    else:
        return tuple()

    return tuple(filter(None, parts))


def _as_path(value: object) -> Optional[Path]:
    if value is None:
        return None
    if isinstance(value, Path):
        return value
    if isinstance(value, str) and value.strip():
        return Path(value).expanduser()
    return None


def _as_optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class RecognitionSettings:
    """Default configuration values sourced from project metadata."""

    default_photo_store: str = "auto"
    default_photo_root: Optional[Path] = None
    default_photo_base_url: Optional[str] = None
    default_photo_listing_path: str = "/api/buildings/all-with-photos"
    default_photo_detail_path: str = "/api/buildings/{slug}/photos"
    default_photo_extensions: Tuple[str, ...] = (
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".webp",
    )
    default_max_references: int = 5
    default_fetch_timeout_seconds: float = 10.0
    default_max_concurrency: int = 4
    default_threshold: float = 0.65
    default_min_interval_ms: int = 3000
    # 0 disables the per-attempt extraction timeout
    default_extraction_timeout_seconds: float = 10.0
    default_embedding_backend: str = "simple"
    default_embedding_model: Optional[str] = None
    default_base_url: str = "http://localhost:8000/v1"
    default_api_key: str = "EMPTY"
    default_timeout: int = 120
    default_log_dir: Optional[Path] = None


@dataclass(frozen=True)
class RecognitionConfig:
    """Fully resolved runtime configuration for an engine instance."""

    photo_store: str
    photo_root: Optional[Path]
    photo_base_url: Optional[str]
    photo_listing_path: str
    photo_detail_path: str
    photo_extensions: Tuple[str, ...]
    max_references: int
    fetch_timeout_seconds: float
    max_concurrency: int
    threshold: float
    min_interval_ms: int
    extraction_timeout_seconds: Optional[float]
    embedding_backend: str
    embedding_model: Optional[str]
    base_url: str
    api_key: str
    timeout: int
    log_dir: Optional[Path]

    @property
    def min_interval_seconds(self) -> float:
        return self.min_interval_ms / 1000.0

    def resolved_photo_store(self) -> str:
        """Return ``directory`` or ``http`` after resolving ``auto``."""

        if self.photo_store != "auto":
            return self.photo_store
        if self.photo_base_url:
            return "http"
        return "directory"


def _load_pyproject_settings(start: Optional[Path]) -> Dict[str, object]:
    pyproject = _find_pyproject(start)
    if not pyproject:
        return {}

    try:
        with pyproject.open("rb") as handle:
            data = tomllib.load(handle)
    except Exception:  # noqa: BLE001 - fallback to defaults
        return {}

    tool_cfg = data.get("tool", {}).get("placeworks", {})
    if not isinstance(tool_cfg, dict):
        return {}

    recognition_cfg = tool_cfg.get("place_recognition")
    return dict(recognition_cfg) if isinstance(recognition_cfg, dict) else {}


def _load_env_settings() -> Dict[str, object]:
    values: Dict[str, object] = {}
    for env_key, env_value in os.environ.items():
        if not env_key.startswith(_CONFIG_ENV_PREFIX):
            continue
        key = env_key[len(_CONFIG_ENV_PREFIX) :].lower()
        values[key] = env_value
    return values


def load_settings(start: Optional[Path] = None) -> RecognitionSettings:
    """Load project defaults, applying environment overrides when present."""

    raw = _load_pyproject_settings(start)
    raw.update(_load_env_settings())
    defaults = RecognitionSettings

    photo_store = (
        str(raw.get("default_photo_store") or defaults.default_photo_store)
        .strip()
        .lower()
    )
    extensions = (
        _normalise_iterable(raw.get("default_photo_extensions"))
        or defaults.default_photo_extensions
    )

    return RecognitionSettings(
        default_photo_store=photo_store,
        default_photo_root=_as_path(raw.get("default_photo_root")),
        default_photo_base_url=_as_optional_str(raw.get("default_photo_base_url")),
        default_photo_listing_path=str(
            raw.get("default_photo_listing_path")
            or defaults.default_photo_listing_path
        ).strip(),
        default_photo_detail_path=str(
            raw.get("default_photo_detail_path")
            or defaults.default_photo_detail_path
        ).strip(),
        default_photo_extensions=extensions,
        default_max_references=_coerce_int(
            raw.get("default_max_references"), defaults.default_max_references
        ),
        default_fetch_timeout_seconds=_coerce_float(
            raw.get("default_fetch_timeout_seconds"),
            defaults.default_fetch_timeout_seconds,
        ),
        default_max_concurrency=_coerce_int(
            raw.get("default_max_concurrency"), defaults.default_max_concurrency
        ),
        default_threshold=_coerce_float(
            raw.get("default_threshold"), defaults.default_threshold
        ),
        default_min_interval_ms=_coerce_int(
            raw.get("default_min_interval_ms"), defaults.default_min_interval_ms
        ),
        default_extraction_timeout_seconds=_coerce_float(
            raw.get("default_extraction_timeout_seconds"),
            defaults.default_extraction_timeout_seconds,
        ),
        default_embedding_backend=str(
            raw.get("default_embedding_backend") or defaults.default_embedding_backend
        ).strip(),
        default_embedding_model=_as_optional_str(raw.get("default_embedding_model")),
        default_base_url=str(
            raw.get("default_base_url") or defaults.default_base_url
        ).strip(),
        default_api_key=str(raw.get("default_api_key") or defaults.default_api_key),
        default_timeout=_coerce_int(raw.get("default_timeout"), defaults.default_timeout),
        default_log_dir=_as_path(raw.get("default_log_dir")),
    )


def build_runtime_config(
    *,
    settings: RecognitionSettings,
    photo_store: Optional[str] = None,
    photo_root: Optional[Path] = None,
    photo_base_url: Optional[str] = None,
    photo_listing_path: Optional[str] = None,
    photo_detail_path: Optional[str] = None,
    photo_extensions: Optional[Sequence[str]] = None,
    max_references: Optional[int] = None,
    fetch_timeout_seconds: Optional[float] = None,
    max_concurrency: Optional[int] = None,
    threshold: Optional[float] = None,
    min_interval_ms: Optional[int] = None,
    extraction_timeout_seconds: Optional[float] = None,
    embedding_backend: Optional[str] = None,
    embedding_model: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout: Optional[int] = None,
    log_dir: Optional[Path] = None,
) -> RecognitionConfig:
    """Merge CLI overrides with defaults to produce a runtime config."""

    resolved_store = (photo_store or settings.default_photo_store).strip().lower()
    if resolved_store not in PHOTO_STORE_KINDS:
        raise ValueError(
            f"Unknown photo store '{resolved_store}' (expected one of {', '.join(PHOTO_STORE_KINDS)})"
        )

    resolved_root = photo_root or settings.default_photo_root
    if resolved_root is not None:
        resolved_root = Path(resolved_root).expanduser()
    resolved_base_url = (
        photo_base_url
        if photo_base_url is not None
        else settings.default_photo_base_url
    )
    if resolved_base_url is not None:
        resolved_base_url = resolved_base_url.strip() or None

    resolved_extensions = tuple(
        ext.lower() if ext.startswith(".") else f".{ext.lower()}"
        for ext in (photo_extensions or settings.default_photo_extensions)
        if ext
    )

    resolved_max_refs = int(
        settings.default_max_references if max_references is None else max_references
    )
    if resolved_max_refs < 1:
        raise ValueError("max_references must be at least 1")

    resolved_fetch_timeout = float(
        settings.default_fetch_timeout_seconds
        if fetch_timeout_seconds is None
        else fetch_timeout_seconds
    )
    if resolved_fetch_timeout <= 0:
        raise ValueError("fetch_timeout_seconds must be positive")

    resolved_concurrency = int(
        settings.default_max_concurrency if max_concurrency is None else max_concurrency
    )
    if resolved_concurrency < 1:
        raise ValueError("max_concurrency must be at least 1")

    resolved_threshold = float(
        settings.default_threshold if threshold is None else threshold
    )
    if not 0.0 <= resolved_threshold <= 1.0:
        raise ValueError("Threshold must be in the range [0, 1]")

    resolved_interval = int(
        settings.default_min_interval_ms if min_interval_ms is None else min_interval_ms
    )
    if resolved_interval < 0:
        raise ValueError("min_interval_ms must not be negative")

    raw_extraction_timeout = (
        settings.default_extraction_timeout_seconds
        if extraction_timeout_seconds is None
        else extraction_timeout_seconds
    )
    resolved_extraction_timeout: Optional[float] = (
        float(raw_extraction_timeout) if raw_extraction_timeout > 0 else None
    )

    resolved_log_dir = log_dir or settings.default_log_dir

    return RecognitionConfig(
        photo_store=resolved_store,
        photo_root=resolved_root,
        photo_base_url=resolved_base_url,
        photo_listing_path=(
            photo_listing_path or settings.default_photo_listing_path
        ).strip(),
        photo_detail_path=(
            photo_detail_path or settings.default_photo_detail_path
        ).strip(),
        photo_extensions=resolved_extensions,
        max_references=resolved_max_refs,
        fetch_timeout_seconds=resolved_fetch_timeout,
        max_concurrency=resolved_concurrency,
        threshold=resolved_threshold,
        min_interval_ms=resolved_interval,
        extraction_timeout_seconds=resolved_extraction_timeout,
        embedding_backend=(embedding_backend or settings.default_embedding_backend)
        .strip()
        .lower(),
        embedding_model=(
            embedding_model.strip() or None
            if embedding_model is not None
            else settings.default_embedding_model
        ),
        base_url=(base_url or settings.default_base_url).strip(),
        api_key=(api_key or settings.default_api_key).strip(),
        timeout=int(timeout or settings.default_timeout),
        log_dir=Path(resolved_log_dir).expanduser() if resolved_log_dir else None,
    )


def load_config(*, start: Optional[Path] = None, **overrides: object) -> RecognitionConfig:
    """Convenience helper used by the CLI to resolve the runtime config."""

    settings = load_settings(start)
    return build_runtime_config(settings=settings, **overrides)
