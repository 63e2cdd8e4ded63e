"""Embedding extractors: turn a photo or camera frame into an :class:`Embedding`."""

from __future__ import annotations

import base64
import io
import threading
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from .config import RecognitionConfig
from .models import Embedding, EmbeddingError

try:  # Optional dependency
    import torch
except Exception:  # pragma: no cover - dependency optional
    torch = None  # type: ignore[assignment]

try:  # Optional dependency
    import open_clip
except Exception:  # pragma: no cover - dependency optional
    open_clip = None  # type: ignore[assignment]


ImageInput = Union[bytes, bytearray, np.ndarray, Image.Image, Path]


def to_pil_image(image: ImageInput) -> Image.Image:
    """Decode *image* into an RGB PIL image.

    Accepts encoded bytes, a file path, a PIL image, or an ``HxW`` / ``HxWx3``
    / ``HxWx4`` array (uint8, or float in ``[0, 1]``).
    """

    try:
        if isinstance(image, Image.Image):
            return image.convert("RGB")
        if isinstance(image, (bytes, bytearray)):
            with Image.open(io.BytesIO(bytes(image))) as decoded:
                return decoded.convert("RGB")
        if isinstance(image, Path):
            with Image.open(image) as decoded:
                return decoded.convert("RGB")
        if isinstance(image, np.ndarray):
            frame = image
            if frame.ndim == 2:
                frame = np.repeat(frame[:, :, None], 3, axis=2)
            if frame.ndim != 3 or frame.shape[2] not in (3, 4):
                raise EmbeddingError(f"Unsupported frame shape {frame.shape}")
            if frame.dtype != np.uint8:
                frame = (np.clip(frame.astype(np.float32), 0.0, 1.0) * 255.0).astype(np.uint8)
            return Image.fromarray(np.ascontiguousarray(frame[:, :, :3]))
    except EmbeddingError:
        raise
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise EmbeddingError(f"Could not decode image: {exc}") from exc
    raise EmbeddingError(f"Unsupported image input type {type(image).__name__}")


def _unit(block: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(block))
    return block / norm if norm > 0.0 else block


class EmbeddingExtractor:
    """Base class for image-to-vector extractors.

    ``extract`` is blocking and is called from worker threads. The output
    dimensionality must not change for the lifetime of an instance.
    """

    name: str = "base"

    def extract(self, image: ImageInput) -> Embedding:
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources; no-op by default."""


class SceneDescriptorExtractor(EmbeddingExtractor):
    """Weight-free descriptor for building and landmark photos.

    Three blocks, each scaled to unit length before concatenation:

    * a coarse colour layout (``grid x grid`` thumbnail, mean removed so a
      brighter or darker exposure of the same facade still lines up);
    * per-channel colour histograms;
    * gradient orientation histograms over the four image quadrants, which
      pick up the dominant horizontal/vertical structure of buildings.
    """

    name = "scene"

    def __init__(
        self,
        grid: int = 16,
        colour_bins: int = 16,
        orientation_bins: int = 12,
        edge_size: int = 64,
    ) -> None:
        self.grid = grid
        self.colour_bins = colour_bins
        self.orientation_bins = orientation_bins
        self.edge_size = edge_size

    @property
    def dimension(self) -> int:
        return self.grid * self.grid * 3 + 3 * self.colour_bins + 4 * self.orientation_bins

    def extract(self, image: ImageInput) -> Embedding:
        rgb = to_pil_image(image)

        thumb = np.asarray(
            rgb.resize((self.grid, self.grid), Image.Resampling.BILINEAR), dtype=np.float32
        ) / 255.0
        layout = _unit((thumb - thumb.mean()).reshape(-1))

        colour = np.concatenate(
            [
                np.histogram(thumb[:, :, channel], bins=self.colour_bins, range=(0.0, 1.0))[0]
                for channel in range(3)
            ]
        ).astype(np.float32)
        colour = _unit(colour)

        edges = _unit(self._orientation_histograms(rgb))

        return Embedding.from_vector(np.concatenate([layout, colour, edges]))

    def _orientation_histograms(self, rgb: Image.Image) -> np.ndarray:
        grey = np.asarray(
            rgb.convert("L").resize((self.edge_size, self.edge_size), Image.Resampling.BILINEAR),
            dtype=np.float32,
        ) / 255.0
        grad_y, grad_x = np.gradient(grey)
        magnitude = np.hypot(grad_x, grad_y)
        # orientation modulo pi: a dark-to-light edge and its reverse are the same line
        angle = np.mod(np.arctan2(grad_y, grad_x), np.pi)

        half = self.edge_size // 2
        blocks = []
        for rows in (slice(0, half), slice(half, None)):
            for cols in (slice(0, half), slice(half, None)):
                hist, _ = np.histogram(
                    angle[rows, cols],
                    bins=self.orientation_bins,
                    range=(0.0, np.pi),
                    weights=magnitude[rows, cols],
                )
                blocks.append(hist)
        return np.concatenate(blocks).astype(np.float32)


class OpenClipExtractor(EmbeddingExtractor):
    """CLIP image tower via ``open_clip``; weights load on first use."""

    name = "open_clip"

    def __init__(
        self,
        model_name: str = "ViT-B-32",
        pretrained: str = "openai",
        device: Optional[str] = None,
    ) -> None:
        if open_clip is None or torch is None:  # pragma: no cover - optional runtime
            raise EmbeddingError(
                "The open_clip backend needs the 'clip' extra (torch and open_clip_torch)"
            )
        self.model_name = model_name
        self.pretrained = pretrained
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")
        self._model = None
        self._preprocess = None
        self._lock = threading.Lock()

    def _ensure_model(self) -> None:
        with self._lock:
            if self._model is not None:
                return
            model, _, preprocess = open_clip.create_model_and_transforms(  # type: ignore[union-attr]
                self.model_name, pretrained=self.pretrained, device=self.device
            )
            model.eval()
            self._model, self._preprocess = model, preprocess

    def extract(self, image: ImageInput) -> Embedding:
        self._ensure_model()
        batch = self._preprocess(to_pil_image(image)).unsqueeze(0).to(self.device)  # type: ignore[misc]
        with torch.inference_mode():  # type: ignore[union-attr]
            features = self._model.encode_image(batch)  # type: ignore[union-attr]
        return Embedding.from_vector(features[0].float().cpu().numpy())

    def close(self) -> None:
        self._model = None
        self._preprocess = None


class RemoteEmbeddingExtractor(EmbeddingExtractor):
    """POST frames to an OpenAI-compatible ``/embeddings`` endpoint.

    Images travel as ``data:`` URLs in the ``input`` list; the first
    ``data[].embedding`` of the reply is used.
    """

    name = "remote"

    def __init__(self, base_url: str, model: str, api_key: str = "", timeout: int = 120) -> None:
        self.endpoint = base_url.rstrip("/") + "/embeddings"
        self.model = model
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    @staticmethod
    def _data_url(image: ImageInput) -> str:
        if isinstance(image, (bytes, bytearray)) and bytes(image[:3]) == b"\xff\xd8\xff":
            encoded, mime = bytes(image), "image/jpeg"
        else:
            buffer = io.BytesIO()
            to_pil_image(image).save(buffer, format="PNG")
            encoded, mime = buffer.getvalue(), "image/png"
        return f"data:{mime};base64,{base64.b64encode(encoded).decode('ascii')}"

    def extract(self, image: ImageInput) -> Embedding:
        body = {"model": self.model, "input": [self._data_url(image)], "encoding_format": "float"}
        try:
            response = self._session.post(self.endpoint, json=body, timeout=self.timeout)
            response.raise_for_status()
            reply = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise EmbeddingError(f"Remote embedding request failed: {exc}") from exc

        try:
            vector = reply["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EmbeddingError(f"Malformed embedding reply from {self.endpoint}") from exc
        return Embedding.from_vector(vector)

    def close(self) -> None:
        self._session.close()


def _scene(config: RecognitionConfig) -> EmbeddingExtractor:
    return SceneDescriptorExtractor()


def _open_clip(config: RecognitionConfig) -> EmbeddingExtractor:
    if config.embedding_model:
        return OpenClipExtractor(model_name=config.embedding_model)
    return OpenClipExtractor()


def _remote(config: RecognitionConfig) -> EmbeddingExtractor:
    if not config.embedding_model:
        raise EmbeddingError("The remote backend needs embedding_model")
    return RemoteEmbeddingExtractor(
        config.base_url, config.embedding_model, config.api_key, timeout=config.timeout
    )


EXTRACTOR_BACKENDS: Dict[str, Callable[[RecognitionConfig], EmbeddingExtractor]] = {
    "simple": _scene,
    "scene": _scene,
    "open_clip": _open_clip,
    "clip": _open_clip,
    "remote": _remote,
    "openai": _remote,
}


def create_extractor(config: RecognitionConfig) -> EmbeddingExtractor:
    """Build the extractor named by ``config.embedding_backend``."""

    builder = EXTRACTOR_BACKENDS.get(config.embedding_backend.lower())
    if builder is None:
        known = ", ".join(sorted(EXTRACTOR_BACKENDS))
        raise EmbeddingError(
            f"Unknown embedding backend '{config.embedding_backend}' (expected one of {known})"
        )
    return builder(config)
