import asyncio
from pathlib import Path

import pytest

from placeworks.apps.place_recognition.core.frames import (
    DirectoryFrameSource,
    FrameSourceError,
    VideoCaptureFrameSource,
    open_frame_source,
)


async def _drain(source) -> list:
    return [frame async for frame in source]


def test_directory_source_replays_images_in_name_order(tmp_path: Path) -> None:
    (tmp_path / "002.jpg").write_bytes(b"second")
    (tmp_path / "001.png").write_bytes(b"first")
    (tmp_path / "readme.md").write_text("skip me")

    frames = asyncio.run(_drain(DirectoryFrameSource(tmp_path)))

    assert frames == [b"first", b"second"]


def test_directory_source_requires_directory(tmp_path: Path) -> None:
    with pytest.raises(FrameSourceError):
        asyncio.run(_drain(DirectoryFrameSource(tmp_path / "missing")))


def test_unopenable_video_source_raises(tmp_path: Path) -> None:
    source = VideoCaptureFrameSource(str(tmp_path / "missing.mp4"))

    with pytest.raises(FrameSourceError):
        asyncio.run(_drain(source))


def test_open_frame_source_dispatch(tmp_path: Path) -> None:
    assert isinstance(open_frame_source(str(tmp_path)), DirectoryFrameSource)
    camera = open_frame_source("0")
    assert isinstance(camera, VideoCaptureFrameSource)
    assert camera.source == 0
    video = open_frame_source(str(tmp_path / "clip.mp4"))
    assert isinstance(video, VideoCaptureFrameSource)
    assert video.source == str(tmp_path / "clip.mp4")
