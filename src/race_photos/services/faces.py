"""Face indexing stage."""

import logging
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from race_photos.domain.photos import PhotoFaceRecord
from race_photos.domain.vision import IndexedFace
from race_photos.services.vision import VisionClient

logger = logging.getLogger(__name__)


class FaceRepository(Protocol):
    """Persistence interface for indexed faces."""

    def add_faces(
        self, photo_id: UUID, event_id: UUID, faces: list[IndexedFace]
    ) -> list[PhotoFaceRecord]:
        """Insert faces for a photo and return the stored rows."""

    def list_for_event(self, event_id: UUID) -> list[PhotoFaceRecord]:
        """Return every face indexed for an event."""

    def list_for_photo(self, photo_id: UUID) -> list[PhotoFaceRecord]:
        """Return the faces indexed for one photo."""

    def set_crop_key(self, face_row_id: UUID, crop_key: str) -> None:
        """Attach a crop rendition to a stored face."""

    def delete_for_photo(self, photo_id: UUID) -> None:
        """Delete every face row of a photo."""


def face_index_key(event_id: UUID, photo_id: UUID) -> str:
    """Return the external image id used for a photo in the face index."""
    return f"{event_id}:{photo_id}"


def parse_face_index_key(value: str | None) -> tuple[UUID, UUID] | None:
    """Split an external image id back into event and photo ids."""
    if not value:
        return None
    parts = value.split(":")
    if len(parts) != 2:  # noqa: PLR2004
        return None
    try:
        return UUID(parts[0]), UUID(parts[1])
    except ValueError:
        return None


@dataclass
class FaceIndexer:
    """Indexes the faces of a photo and records them."""

    client: VisionClient
    repository: FaceRepository
    max_faces: int = 10

    async def index(
        self, event_id: UUID, photo_id: UUID, image: bytes
    ) -> list[PhotoFaceRecord]:
        """Index faces; failures are logged and yield no faces."""
        try:
            faces = await self.client.index_faces(
                image, face_index_key(event_id, photo_id), self.max_faces
            )
        except Exception:
            logger.exception("Face indexing failed", extra={"photo_id": str(photo_id)})
            return []
        unique: dict[str, IndexedFace] = {}
        for face in faces:
            unique.setdefault(face.face_id, face)
        if not unique:
            return []
        return self.repository.add_faces(photo_id, event_id, list(unique.values()))
