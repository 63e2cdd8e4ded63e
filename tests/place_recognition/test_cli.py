import json
from pathlib import Path

import pytest

typer_testing = pytest.importorskip("typer.testing")
pytest.importorskip("PIL")
from PIL import Image

from placeworks.apps.place_recognition.cli.main import app

CliRunner = typer_testing.CliRunner

runner = CliRunner()


def _make_image(path: Path, colour: tuple[int, int, int]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (32, 32), colour).save(path)
    return path


@pytest.fixture
def photo_root(tmp_path: Path) -> Path:
    root = tmp_path / "photos"
    _make_image(root / "Library" / "front.jpg", (200, 40, 40))
    _make_image(root / "Library" / "side.png", (190, 50, 45))
    _make_image(root / "Pool" / "deck.jpg", (30, 60, 210))
    (root / "Pool" / "broken.jpg").write_bytes(b"not a jpeg")
    return root


def test_catalog_command_lists_places(photo_root: Path) -> None:
    result = runner.invoke(app, ["catalog", "--photo-root", str(photo_root), "--show-failures"])

    assert result.exit_code == 0, result.output
    assert "Library" in result.output
    assert "Pool" in result.output
    assert "2/2 places loaded" in result.output
    assert "broken.jpg" in result.output


def test_identify_detects_matching_place(photo_root: Path, tmp_path: Path) -> None:
    query = _make_image(tmp_path / "query.jpg", (200, 40, 40))

    result = runner.invoke(
        app, ["identify", str(query), "--photo-root", str(photo_root), "--json"]
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["detected"] is True
    assert payload["place_id"] == "Library"
    assert payload["confidence"] >= 0.65
    assert [score["place_id"] for score in payload["scores"]][0] == "Library"


def test_identify_with_missing_photo_root_fails(tmp_path: Path) -> None:
    query = _make_image(tmp_path / "query.jpg", (1, 2, 3))

    result = runner.invoke(
        app, ["identify", str(query), "--photo-root", str(tmp_path / "nowhere")]
    )

    assert result.exit_code == 1


def test_identify_rejects_invalid_threshold(photo_root: Path, tmp_path: Path) -> None:
    query = _make_image(tmp_path / "query.jpg", (1, 2, 3))

    result = runner.invoke(
        app,
        ["identify", str(query), "--photo-root", str(photo_root), "--threshold", "1.5"],
    )

    assert result.exit_code == 2


def test_watch_replays_frame_directory(photo_root: Path, tmp_path: Path) -> None:
    frames = tmp_path / "frames"
    _make_image(frames / "0001.jpg", (30, 60, 210))
    _make_image(frames / "0002.jpg", (30, 60, 210))

    result = runner.invoke(
        app,
        [
            "watch",
            str(frames),
            "--photo-root",
            str(photo_root),
            "--min-interval-ms",
            "0",
            "--frame-delay",
            "0.2",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Catalog ready: 2 places" in result.output
    assert "DETECTED Pool" in result.output
    assert "Frames: 2" in result.output
