"""Logging setup shared by PlaceWorks command line tools."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

__all__ = ["EventFormatter", "configure_logging", "default_log_directory"]

_MANAGED_HANDLER_FLAG = "_placeworks_managed_handler"

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class EventFormatter(logging.Formatter):
    """Append ``extra`` fields as ``key=value`` pairs after the message.

    Catalog loads, detections and loop shutdowns are logged as an event name
    plus structured fields; without this they would not reach the log file.
    """

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        if not fields:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{line} | {rendered}"


def default_log_directory() -> Path:
    """``$PLACEWORKS_LOG_DIR``, else ``logs/`` in the enclosing project, else cwd."""

    env_override = os.environ.get("PLACEWORKS_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()

    for candidate in Path(__file__).resolve().parents:
        if (candidate / "pyproject.toml").exists() or (candidate / ".git").exists():
            return candidate / "logs"
    return Path.cwd() / "logs"


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get("PLACEWORKS_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def configure_logging(
    log_name: str,
    *,
    level: Union[int, str, None] = None,
    log_dir: Optional[Path] = None,
    include_console: bool = True,
) -> Path:
    """Send root logging to ``<log_dir>/<log_name>.log`` (and the console).

    Calling it again swaps out the handlers from the previous call; handlers
    installed by anything else are left alone.
    """

    directory = Path(log_dir).expanduser() if log_dir else default_log_directory()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / f"{log_name}.log"
    resolved_level = _resolve_level(level)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    for handler in list(root.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            root.removeHandler(handler)
            handler.close()

    formatter = EventFormatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if include_console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)
        setattr(handler, _MANAGED_HANDLER_FLAG, True)
        root.addHandler(handler)

    logging.captureWarnings(True)
    return log_path
