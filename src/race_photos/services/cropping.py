"""Face-centred crops that keep the runner's torso and bib in frame."""

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID

from race_photos.config import PipelineConfig
from race_photos.domain.photos import RenditionKind, storage_key
from race_photos.domain.vision import BoundingBox
from race_photos.services.renditions import (
    ObjectStore,
    bounded_copy,
    encode_webp,
    open_image,
)

logger = logging.getLogger(__name__)

PAD_SIDE = 0.8
PAD_ABOVE = 0.5
PAD_BELOW = 2.0


@dataclass(frozen=True)
class CropRegion:
    """Pixel rectangle inside an image."""

    left: int
    top: int
    width: int
    height: int

    @property
    def box(self) -> tuple[int, int, int, int]:
        """Return the region as a Pillow crop box."""
        return (self.left, self.top, self.left + self.width, self.top + self.height)


def compute_crop_region(
    image_size: tuple[int, int], face: BoundingBox, min_dimension: int = 50
) -> CropRegion | None:
    """Pad a relative face box, clamp it to the image and reject tiny crops."""
    image_width, image_height = image_size
    face_left = face.left * image_width
    face_top = face.top * image_height
    face_width = face.width * image_width
    face_height = face.height * image_height

    left = max(0, round(face_left - face_width * PAD_SIDE))
    top = max(0, round(face_top - face_height * PAD_ABOVE))
    right = min(image_width, round(face_left + face_width * (1 + PAD_SIDE)))
    bottom = min(image_height, round(face_top + face_height * (1 + PAD_BELOW)))

    width = right - left
    height = bottom - top
    if width < min_dimension or height < min_dimension:
        return None
    return CropRegion(left=left, top=top, width=width, height=height)


@dataclass
class SmartCropper:
    """Produces and stores per-face crop renditions."""

    store: ObjectStore
    config: PipelineConfig

    async def crop(
        self,
        source: bytes,
        face: BoundingBox,
        event_id: UUID,
        photo_id: UUID,
        face_index: int,
    ) -> str | None:
        """Store a crop for one face and return its key, if accepted."""
        encoded = await asyncio.to_thread(self.render, source, face)
        if encoded is None:
            return None
        key = storage_key(
            event_id, RenditionKind.CROP, f"{photo_id}_face{face_index}.webp"
        )
        await self.store.put(encoded, key, "image/webp")
        return key

    def render(self, source: bytes, face: BoundingBox) -> bytes | None:
        """Crop and encode synchronously; returns None for rejected regions."""
        with open_image(source) as image:
            region = compute_crop_region(
                image.size, face, self.config.crop_min_dimension
            )
            if region is None:
                return None
            cropped = image.convert("RGB").crop(region.box)
        return encode_webp(
            bounded_copy(cropped, self.config.crop_max_dimension),
            self.config.crop_quality,
        )
