"""Photo persistence interface."""

from typing import Protocol
from uuid import UUID

from race_photos.domain.photos import PhotoRecord, PhotoUpdate


class PhotoRepository(Protocol):
    """Persistence interface for photo rows."""

    def create_photos(
        self, event_id: UUID, user_id: UUID, filenames: list[str]
    ) -> list[PhotoRecord]:
        """Create one row per filename, in order, flagged as charged."""

    def delete_photos(self, photo_ids: list[UUID]) -> None:
        """Delete photo rows created for a rejected batch."""

    def get_photo(self, photo_id: UUID) -> PhotoRecord | None:
        """Return a photo by id, if present."""

    def list_for_event(self, event_id: UUID) -> list[PhotoRecord]:
        """Return every photo of an event."""

    def update_photo(self, photo_id: UUID, update: PhotoUpdate) -> None:
        """Write the fields set on an update."""

    def mark_credit_refunded(self, photo_id: UUID) -> None:
        """Flag a photo as refunded."""
