"""Frame sources feeding the detection loop."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Union

import cv2
import numpy as np

from .photo_store import DEFAULT_PHOTO_EXTENSIONS

logger = logging.getLogger(__name__)


class FrameSourceError(RuntimeError):
    """Raised when a frame source cannot be opened."""


class DirectoryFrameSource:
    """Replay the image files of a directory (sorted by name) as frames."""

    def __init__(
        self,
        directory: Path,
        *,
        extensions: Iterable[str] = DEFAULT_PHOTO_EXTENSIONS,
        delay_seconds: float = 0.0,
    ) -> None:
        self.directory = Path(directory).expanduser()
        self.delay_seconds = max(0.0, delay_seconds)
        self._extensions = {ext.lower() for ext in extensions}

    def paths(self) -> List[Path]:
        if not self.directory.is_dir():
            raise FrameSourceError(f"Frame directory not found: {self.directory}")
        return sorted(
            path
            for path in self.directory.iterdir()
            if path.is_file() and path.suffix.lower() in self._extensions
        )

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[bytes]:
        for path in self.paths():
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except OSError as exc:
                logger.warning("Skipping unreadable frame %s: %s", path, exc)
                continue
            yield data
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)


class VideoCaptureFrameSource:
    """Read RGB frames from a camera index or video file via OpenCV."""

    def __init__(self, source: Union[int, str], *, max_frames: Optional[int] = None) -> None:
        self.source = source
        self.max_frames = max_frames

    def __aiter__(self) -> AsyncIterator[np.ndarray]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[np.ndarray]:
        capture = await asyncio.to_thread(cv2.VideoCapture, self.source)
        if not capture.isOpened():
            capture.release()
            raise FrameSourceError(f"Unable to open video source {self.source!r}")
        delivered = 0
        try:
            while self.max_frames is None or delivered < self.max_frames:
                ok, frame = await asyncio.to_thread(capture.read)
                if not ok or frame is None:
                    break
                delivered += 1
                yield cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        finally:
            capture.release()
            logger.debug("Released video source %r after %d frames", self.source, delivered)


def open_frame_source(
    source: str, *, delay_seconds: float = 0.0
) -> Union[DirectoryFrameSource, VideoCaptureFrameSource]:
    """Pick a frame source: digits mean a camera index, directories replay files."""

    if source.isdigit():
        return VideoCaptureFrameSource(int(source))
    path = Path(source).expanduser()
    if path.is_dir():
        return DirectoryFrameSource(path, delay_seconds=delay_seconds)
    return VideoCaptureFrameSource(str(path))
