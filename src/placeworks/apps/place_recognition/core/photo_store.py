"""Photo Store adapters and the image fetcher used during catalog population."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import unquote, urljoin, urlsplit

import httpx

from .config import RecognitionConfig
from .models import PlacePhotos

logger = logging.getLogger(__name__)

DEFAULT_PHOTO_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")


class PhotoStoreError(RuntimeError):
    """Raised when the Photo Store cannot enumerate places at all."""


class PhotoFetchError(RuntimeError):
    """Raised when a single photo cannot be retrieved."""


def _is_http(uri: str) -> bool:
    return urlsplit(uri).scheme in {"http", "https"}


def resolve_uri(uri: str, base: Optional[str]) -> str:
    """Resolve a photo URI against the store's base location.

    URIs with a scheme are returned unchanged. With an HTTP base, every other
    URI (including ``/api/...`` style absolute paths) is joined onto it. With
    a local directory base, relative paths are joined onto the directory.
    """

    if urlsplit(uri).scheme in {"http", "https", "file"}:
        return uri
    if not base:
        return uri
    if _is_http(base):
        return urljoin(base if base.endswith("/") else base + "/", uri)
    if Path(uri).is_absolute():
        return uri
    return str(Path(base) / uri)


class PhotoStore:
    """Source of places and their photo URIs."""

    base_uri: Optional[str] = None

    def list_places_with_photos(self) -> Sequence[PlacePhotos]:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources; no-op by default."""


class StaticPhotoStore(PhotoStore):
    """In-memory store mapping place ids to photo URIs."""

    def __init__(
        self, places: Mapping[str, Sequence[str]], base_uri: Optional[str] = None
    ) -> None:
        self._places = {place_id: tuple(uris) for place_id, uris in places.items()}
        self.base_uri = base_uri

    def list_places_with_photos(self) -> Sequence[PlacePhotos]:
        return [
            PlacePhotos(place_id=place_id, photo_uris=uris)
            for place_id, uris in self._places.items()
        ]


class DirectoryPhotoStore(PhotoStore):
    """One sub-directory per place under *root*; image files are its photos."""

    def __init__(
        self, root: Path, *, extensions: Iterable[str] = DEFAULT_PHOTO_EXTENSIONS
    ) -> None:
        self.root = Path(root).expanduser()
        self.base_uri = str(self.root)
        self._extensions = tuple(
            ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions
        )

    def list_places_with_photos(self) -> Sequence[PlacePhotos]:
        if not self.root.is_dir():
            raise PhotoStoreError(f"Photo directory not found: {self.root}")

        try:
            place_dirs = sorted(path for path in self.root.iterdir() if path.is_dir())
        except OSError as exc:
            raise PhotoStoreError(f"Cannot list photo directory {self.root}: {exc}") from exc

        listing: List[PlacePhotos] = []
        for place_dir in place_dirs:
            try:
                photos = sorted(
                    entry.name
                    for entry in place_dir.iterdir()
                    if entry.is_file() and entry.suffix.lower() in self._extensions
                )
            except OSError as exc:
                logger.warning("Skipping unreadable place directory %s: %s", place_dir, exc)
                continue
            listing.append(
                PlacePhotos(
                    place_id=place_dir.name,
                    photo_uris=tuple(f"{place_dir.name}/{name}" for name in photos),
                )
            )
        logger.debug("Enumerated %d places under %s", len(listing), self.root)
        return listing


def place_slug(name: str) -> str:
    """``"Shankaracharya Bhavan"`` -> ``"shankaracharya-bhavan"``."""

    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")


class HttpPhotoStore(PhotoStore):
    """Read the place listing from a JSON endpoint.

    The listing is ``{"places": [...]}``, ``{"buildings": [...]}`` or a bare
    list. Each entry names its place with ``place_id`` or ``name`` and may
    carry its ``photos`` inline. Entries without ``photos`` (the
    ``{"name": ..., "photoCount": n}`` shape) are expanded by a second GET to
    ``detail_path`` with ``{slug}`` filled in, which must answer
    ``{"photos": [...]}``. A failed detail request drops only that place.
    """

    def __init__(
        self,
        base_url: str,
        listing_path: str = "/api/buildings/all-with-photos",
        detail_path: str = "/api/buildings/{slug}/photos",
        *,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_uri = base_url
        self._listing_url = resolve_uri(listing_path, base_url)
        self._detail_path = detail_path
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def list_places_with_photos(self) -> Sequence[PlacePhotos]:
        try:
            payload = self._get_json(self._listing_url)
        except (httpx.HTTPError, ValueError) as exc:
            raise PhotoStoreError(
                f"Photo listing unavailable at {self._listing_url}: {exc}"
            ) from exc
        return self._parse_listing(payload)

    def _get_json(self, url: str) -> object:
        response = self._client.get(url)
        response.raise_for_status()
        return response.json()

    def _parse_listing(self, payload: object) -> List[PlacePhotos]:
        entries = payload
        if isinstance(payload, dict):
            entries = payload.get("places", payload.get("buildings"))
        if not isinstance(entries, list):
            raise PhotoStoreError("Photo listing has no 'places' or 'buildings' array")

        merged: Dict[str, List[str]] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            place_id = entry.get("place_id") or entry.get("name")
            if not place_id:
                logger.warning("Ignoring listing entry without an id: %r", entry)
                continue
            if "photos" in entry:
                photos = entry.get("photos") or []
            elif entry.get("photoCount") == 0:
                photos = []
            else:
                photos = self._place_photos(str(place_id))
            uris = [str(item) for item in photos if isinstance(item, str) and item]
            merged.setdefault(str(place_id), []).extend(uris)
        return [
            PlacePhotos(place_id=place_id, photo_uris=tuple(uris))
            for place_id, uris in merged.items()
        ]

    def _place_photos(self, place_id: str) -> List[object]:
        url = resolve_uri(self._detail_path.format(slug=place_slug(place_id)), self.base_uri)
        try:
            payload = self._get_json(url)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Photo list for %s unavailable at %s: %s", place_id, url, exc)
            return []
        photos = payload.get("photos") if isinstance(payload, dict) else None
        if not isinstance(photos, list):
            logger.warning("Photo list for %s at %s has no 'photos' array", place_id, url)
            return []
        return photos

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class ImageFetcher:
    """Retrieve photo bytes from local paths, ``file://`` or HTTP(S) URIs."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def fetch(self, uri: str) -> bytes:
        if _is_http(uri):
            try:
                response = await self._http().get(uri)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise PhotoFetchError(f"{uri}: {exc}") from exc
            return response.content

        parts = urlsplit(uri)
        path = Path(unquote(parts.path)) if parts.scheme == "file" else Path(uri)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise PhotoFetchError(f"{uri}: {exc}") from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_photo_store(config: RecognitionConfig) -> PhotoStore:
    """Factory for Photo Store adapters based on configuration."""

    kind = config.resolved_photo_store()
    if kind == "http":
        if not config.photo_base_url:
            raise PhotoStoreError("An HTTP photo store needs photo_base_url")
        return HttpPhotoStore(
            config.photo_base_url,
            config.photo_listing_path,
            config.photo_detail_path,
            timeout=config.fetch_timeout_seconds,
        )
    if config.photo_root is None:
        raise PhotoStoreError("A directory photo store needs photo_root")
    return DirectoryPhotoStore(config.photo_root, extensions=config.photo_extensions)
