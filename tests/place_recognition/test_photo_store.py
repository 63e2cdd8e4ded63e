import asyncio
from pathlib import Path

import httpx
import pytest

from placeworks.apps.place_recognition.core.config import (
    RecognitionSettings,
    build_runtime_config,
)
from placeworks.apps.place_recognition.core.photo_store import (
    DirectoryPhotoStore,
    HttpPhotoStore,
    ImageFetcher,
    PhotoFetchError,
    PhotoStoreError,
    create_photo_store,
    place_slug,
    resolve_uri,
)


def _touch(path: Path, data: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_directory_store_lists_places_and_filters_extensions(tmp_path: Path) -> None:
    _touch(tmp_path / "Library" / "front.JPG")
    _touch(tmp_path / "Library" / "side.png")
    _touch(tmp_path / "Library" / "notes.txt")
    _touch(tmp_path / "Gym" / "entrance.webp")
    (tmp_path / "Empty Hall").mkdir()
    _touch(tmp_path / "stray.jpg")

    listing = DirectoryPhotoStore(tmp_path).list_places_with_photos()

    by_place = {entry.place_id: entry.photo_uris for entry in listing}
    assert set(by_place) == {"Library", "Gym", "Empty Hall"}
    assert by_place["Library"] == ("Library/front.JPG", "Library/side.png")
    assert by_place["Gym"] == ("Gym/entrance.webp",)
    assert by_place["Empty Hall"] == ()


def test_directory_store_missing_root_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(PhotoStoreError):
        DirectoryPhotoStore(tmp_path / "missing").list_places_with_photos()


def test_http_store_parses_listing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/buildings/all-with-photos"
        return httpx.Response(
            200,
            json={
                "places": [
                    {"place_id": "Library", "photos": ["/api/buildings/photo/Library/a.jpg"]},
                    {"name": "Gym", "photos": []},
                    {"photos": ["/orphan.jpg"]},
                ]
            },
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    store = HttpPhotoStore("http://campus.test", client=client)

    listing = store.list_places_with_photos()

    assert [entry.place_id for entry in listing] == ["Library", "Gym"]
    assert listing[0].photo_uris == ("/api/buildings/photo/Library/a.jpg",)
    assert listing[1].photo_uris == ()


def test_http_store_expands_building_counts_listing() -> None:
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        if request.url.path == "/api/buildings/all-with-photos":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "buildings": [
                        {"name": "Shankaracharya Bhavan", "photoCount": 2},
                        {"name": "Old Hostel", "photoCount": 0},
                        {"name": "Main Gate", "photoCount": 1},
                    ],
                },
            )
        if request.url.path == "/api/buildings/shankaracharya-bhavan/photos":
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "building": "Shankaracharya Bhavan",
                    "count": 2,
                    "photos": [
                        "/api/buildings/photos/shankaracharya-bhavan/front.jpg",
                        "/api/buildings/photos/shankaracharya-bhavan/side%20view.jpg",
                    ],
                },
            )
        return httpx.Response(404, json={"success": False})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    store = HttpPhotoStore("http://campus.test", client=client)

    listing = store.list_places_with_photos()

    by_place = {entry.place_id: entry.photo_uris for entry in listing}
    assert by_place == {
        "Shankaracharya Bhavan": (
            "/api/buildings/photos/shankaracharya-bhavan/front.jpg",
            "/api/buildings/photos/shankaracharya-bhavan/side%20view.jpg",
        ),
        "Old Hostel": (),
        "Main Gate": (),
    }
    assert "/api/buildings/old-hostel/photos" not in requested
    assert "/api/buildings/main-gate/photos" in requested


def test_http_store_uses_configured_detail_path() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/listing":
            return httpx.Response(200, json=[{"name": "Library"}])
        assert request.url.path == "/places/library/images"
        return httpx.Response(200, json={"photos": ["/img/library-1.jpg"]})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    store = HttpPhotoStore(
        "http://campus.test", "/listing", "/places/{slug}/images", client=client
    )

    listing = store.list_places_with_photos()

    assert listing[0].photo_uris == ("/img/library-1.jpg",)


@pytest.mark.parametrize(
    "name, slug",
    [
        ("Shankaracharya Bhavan", "shankaracharya-bhavan"),
        ("  Library  ", "library"),
        ("Block A / Lab 2", "block-a-lab-2"),
    ],
)
def test_place_slug(name, slug) -> None:
    assert place_slug(name) == slug


def test_http_store_error_status_is_fatal() -> None:
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )
    store = HttpPhotoStore("http://campus.test", client=client)

    with pytest.raises(PhotoStoreError, match="unavailable"):
        store.list_places_with_photos()


def test_http_store_rejects_malformed_listing() -> None:
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
    )

    with pytest.raises(PhotoStoreError):
        HttpPhotoStore("http://campus.test", client=client).list_places_with_photos()


@pytest.mark.parametrize(
    ("uri", "base", "expected"),
    [
        ("/api/photo/a.jpg", "http://campus.test", "http://campus.test/api/photo/a.jpg"),
        ("photo/a.jpg", "http://campus.test/root", "http://campus.test/root/photo/a.jpg"),
        ("https://cdn.test/a.jpg", "http://campus.test", "https://cdn.test/a.jpg"),
        ("Library/a.jpg", "/srv/photos", "/srv/photos/Library/a.jpg"),
        ("/elsewhere/a.jpg", "/srv/photos", "/elsewhere/a.jpg"),
        ("Library/a.jpg", None, "Library/a.jpg"),
    ],
)
def test_resolve_uri(uri, base, expected) -> None:
    assert resolve_uri(uri, base) == expected


def test_fetcher_reads_local_and_file_uris(tmp_path: Path) -> None:
    photo = _touch(tmp_path / "a.jpg", b"jpeg-bytes")
    fetcher = ImageFetcher()

    assert asyncio.run(fetcher.fetch(str(photo))) == b"jpeg-bytes"
    assert asyncio.run(fetcher.fetch(photo.as_uri())) == b"jpeg-bytes"

    with pytest.raises(PhotoFetchError):
        asyncio.run(fetcher.fetch(str(tmp_path / "missing.jpg")))


def test_fetcher_http_success_and_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("ok.jpg"):
            return httpx.Response(200, content=b"remote-bytes")
        return httpx.Response(404)

    async def _run() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        fetcher = ImageFetcher(client=client)
        try:
            assert await fetcher.fetch("http://campus.test/ok.jpg") == b"remote-bytes"
            with pytest.raises(PhotoFetchError, match="404"):
                await fetcher.fetch("http://campus.test/gone.jpg")
        finally:
            await client.aclose()

    asyncio.run(_run())


def test_create_photo_store_picks_adapter(tmp_path: Path) -> None:
    settings = RecognitionSettings()

    directory = create_photo_store(build_runtime_config(settings=settings, photo_root=tmp_path))
    http = create_photo_store(
        build_runtime_config(settings=settings, photo_base_url="http://campus.test")
    )

    assert isinstance(directory, DirectoryPhotoStore)
    assert isinstance(http, HttpPhotoStore)
    http.close()

    with pytest.raises(PhotoStoreError):
        create_photo_store(build_runtime_config(settings=settings))
