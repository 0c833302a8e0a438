"""Rendition generation for uploaded photos."""

import asyncio
import io
import logging
import threading
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import PurePath
from typing import Protocol
from uuid import UUID

from PIL import Image, ImageFile, ImageOps

from race_photos.config import PipelineConfig
from race_photos.domain.errors import DecodeError
from race_photos.domain.photos import RenditionKind, storage_key

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)
_SOURCE_QUALITY = 95
_MIN_ANALYSIS_QUALITY = 40
_QUALITY_STEP = 10


class _PillowLimits:
    """Guards Pillow's process-wide decode limits.

    Regular decodes hold the guard shared. Relaxing the limits waits for
    them to finish and blocks new ones until the defaults are restored.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._readers = 0
        self._relaxed = False

    @contextmanager
    def default(self) -> Iterator[None]:
        with self._condition:
            self._condition.wait_for(lambda: not self._relaxed)
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                self._condition.notify_all()

    @contextmanager
    def relaxed(self) -> Iterator[None]:
        with self._condition:
            self._condition.wait_for(
                lambda: not self._relaxed and self._readers == 0
            )
            self._relaxed = True
        max_pixels = Image.MAX_IMAGE_PIXELS
        truncated = ImageFile.LOAD_TRUNCATED_IMAGES
        try:
            yield
        finally:
            Image.MAX_IMAGE_PIXELS = max_pixels
            ImageFile.LOAD_TRUNCATED_IMAGES = truncated
            with self._condition:
                self._relaxed = False
                self._condition.notify_all()


_PILLOW_LIMITS = _PillowLimits()


class ObjectStore(Protocol):
    """Durable storage for photo renditions."""

    async def put(self, data: bytes, key: str, content_type: str) -> None:
        """Store bytes under a key."""

    def get(self, key: str) -> AsyncIterator[bytes]:
        """Stream the bytes stored under a key."""

    async def get_buffer(self, key: str) -> bytes:
        """Return the full contents stored under a key."""

    async def delete_many(self, keys: list[str]) -> None:
        """Delete several keys at once."""


@dataclass(frozen=True)
class RenditionSet:
    """Keys of stored renditions plus in-memory rasters for later stages."""

    original_key: str
    web_key: str
    analysis_key: str
    web_bytes: bytes
    analysis_bytes: bytes
    source_bytes: bytes
    width: int
    height: int


@dataclass(frozen=True)
class _Rendered:
    source: bytes
    web: bytes
    analysis: bytes
    size: tuple[int, int]


def detect_mime_type(data: bytes) -> str:
    """Infer a basic image MIME type from file signatures."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:12] in {b"ftypheic", b"ftypheix", b"ftypmif1"}:
        return "image/heic"
    return "application/octet-stream"


@contextmanager
def open_image(data: bytes) -> Iterator[Image.Image]:
    """Open encoded bytes with Pillow's default limits in force.

    Work that loads pixel data must stay inside the block.
    """
    with _PILLOW_LIMITS.default(), Image.open(io.BytesIO(data)) as image:
        yield image


def decode_upload(data: bytes) -> Image.Image:
    """Decode raw upload bytes into an upright RGB image.

    Strategies are tried in order and the first success wins: a direct
    decode, a decode with relaxed pixel-count limits that also tolerates
    truncated data, and a raw-pixel round trip that drops broken metadata.
    """
    strategies: list[tuple[str, Callable[[bytes], Image.Image]]] = [
        ("direct", _decode_direct),
        ("relaxed", _decode_relaxed),
        ("raw-pixels", _decode_raw_pixels),
    ]
    errors: list[str] = []
    for name, strategy in strategies:
        try:
            return strategy(data)
        except _DECODE_ERRORS as exc:
            logger.warning(
                "Decode strategy failed", extra={"strategy": name, "error": str(exc)}
            )
            errors.append(f"{name}: {exc}")
    raise DecodeError("; ".join(errors))


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    """Encode an RGB image as an optimized JPEG."""
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


def encode_webp(image: Image.Image, quality: int) -> bytes:
    """Encode an image as WebP."""
    buffer = io.BytesIO()
    image.save(buffer, format="WEBP", quality=quality, method=4)
    return buffer.getvalue()


def bounded_copy(image: Image.Image, max_dimension: int) -> Image.Image:
    """Return a copy that fits inside a square without enlarging."""
    copy = image.copy()
    copy.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return copy


@dataclass
class RenditionGenerator:
    """Stores the original upload and derives display and analysis rasters."""

    store: ObjectStore
    config: PipelineConfig

    async def generate(
        self, data: bytes, event_id: UUID, photo_id: UUID, original_filename: str
    ) -> RenditionSet:
        """Decode, store and return the renditions for one upload.

        Raises DecodeError when no decode strategy succeeds. Nothing is
        stored in that case.
        """
        rendered = await asyncio.to_thread(self.render, data)
        suffix = PurePath(original_filename).suffix.lower() or ".jpg"
        original_key = storage_key(
            event_id, RenditionKind.ORIGINAL, f"{photo_id}{suffix}"
        )
        web_key = storage_key(event_id, RenditionKind.WEB, f"{photo_id}.webp")
        analysis_key = storage_key(
            event_id, RenditionKind.ANALYSIS, f"{photo_id}.jpg"
        )
        await self.store.put(data, original_key, detect_mime_type(data))
        await self.store.put(rendered.web, web_key, "image/webp")
        await self.store.put(rendered.analysis, analysis_key, "image/jpeg")
        return RenditionSet(
            original_key=original_key,
            web_key=web_key,
            analysis_key=analysis_key,
            web_bytes=rendered.web,
            analysis_bytes=rendered.analysis,
            source_bytes=rendered.source,
            width=rendered.size[0],
            height=rendered.size[1],
        )

    def render(self, data: bytes) -> _Rendered:
        """Decode and encode all rasters synchronously."""
        image = decode_upload(data)
        source = encode_jpeg(image, _SOURCE_QUALITY)
        web = encode_webp(
            bounded_copy(image, self.config.display_max_dimension),
            self.config.display_quality,
        )
        analysis = self._encode_analysis(image)
        return _Rendered(source=source, web=web, analysis=analysis, size=image.size)

    def _encode_analysis(self, image: Image.Image) -> bytes:
        bounded = bounded_copy(image, self.config.analysis_max_dimension)
        quality = self.config.display_quality
        encoded = encode_jpeg(bounded, quality)
        while (
            len(encoded) > self.config.analysis_max_bytes
            and quality > _MIN_ANALYSIS_QUALITY
        ):
            quality -= _QUALITY_STEP
            encoded = encode_jpeg(bounded, quality)
        return encoded


def _finish(image: Image.Image) -> Image.Image:
    image.load()
    upright = ImageOps.exif_transpose(image) or image
    return upright.convert("RGB")


def _decode_direct(data: bytes) -> Image.Image:
    with open_image(data) as image:
        return _finish(image)


def _decode_relaxed(data: bytes) -> Image.Image:
    with _PILLOW_LIMITS.relaxed():
        Image.MAX_IMAGE_PIXELS = None
        ImageFile.LOAD_TRUNCATED_IMAGES = True
        with Image.open(io.BytesIO(data)) as image:
            return _finish(image)


def _decode_raw_pixels(data: bytes) -> Image.Image:
    with _PILLOW_LIMITS.relaxed():
        ImageFile.LOAD_TRUNCATED_IMAGES = True
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            rgb = image.convert("RGB")
    return Image.frombytes("RGB", rgb.size, rgb.tobytes())
