"""Supabase-backed photo repository."""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from supabase import Client

from race_photos.domain.photos import PhotoRecord, PhotoUpdate
from race_photos.services.photos import PhotoRepository


@dataclass
class SupabasePhotoRepository(PhotoRepository):
    """Supabase implementation for photo rows."""

    client: Client

    def create_photos(
        self, event_id: UUID, user_id: UUID, filenames: list[str]
    ) -> list[PhotoRecord]:
        """Insert one row per uploaded file."""
        response = (
            self.client.table("photos")
            .insert(
                [
                    {
                        "event_id": str(event_id),
                        "user_id": str(user_id),
                        "original_filename": filename,
                        "credit_deducted": True,
                    }
                    for filename in filenames
                ]
            )
            .execute()
        )
        if not response.data or len(response.data) != len(filenames):
            raise RuntimeError("Failed to create photos")
        return [_to_record(row) for row in response.data]

    def delete_photos(self, photo_ids: list[UUID]) -> None:
        """Delete photo rows."""
        if not photo_ids:
            return
        self.client.table("photos").delete().in_(
            "id", [str(photo_id) for photo_id in photo_ids]
        ).execute()

    def get_photo(self, photo_id: UUID) -> PhotoRecord | None:
        """Fetch a photo by id."""
        response = (
            self.client.table("photos")
            .select("*")
            .eq("id", str(photo_id))
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return _to_record(response.data[0])

    def list_for_event(self, event_id: UUID) -> list[PhotoRecord]:
        """Return photos of an event, oldest first."""
        response = (
            self.client.table("photos")
            .select("*")
            .eq("event_id", str(event_id))
            .order("created_at")
            .execute()
        )
        return [_to_record(row) for row in response.data or []]

    def update_photo(self, photo_id: UUID, update: PhotoUpdate) -> None:
        """Write the collected stage results."""
        row = update.to_row()
        if not row:
            return
        self.client.table("photos").update(row).eq("id", str(photo_id)).execute()

    def mark_credit_refunded(self, photo_id: UUID) -> None:
        """Flag a photo as refunded."""
        self.client.table("photos").update({"credit_refunded": True}).eq(
            "id", str(photo_id)
        ).execute()


def _to_record(row: dict[str, object]) -> PhotoRecord:
    processed_at = row.get("processed_at")
    labels = row.get("labels")
    return PhotoRecord(
        id=UUID(str(row["id"])),
        event_id=UUID(str(row["event_id"])),
        user_id=UUID(str(row["user_id"])),
        original_filename=str(row.get("original_filename") or ""),
        original_key=row.get("original_key"),
        analysis_key=row.get("analysis_key"),
        web_key=row.get("web_key"),
        thumbnail_key=row.get("thumbnail_key"),
        crop_key=row.get("crop_key"),
        quality_score=row.get("quality_score"),
        is_blurry=bool(row.get("is_blurry")),
        auto_edited=bool(row.get("auto_edited")),
        face_indexed=bool(row.get("face_indexed")),
        ocr_provider=row.get("ocr_provider"),
        labels=list(labels) if isinstance(labels, list) else None,
        credit_deducted=bool(row.get("credit_deducted")),
        credit_refunded=bool(row.get("credit_refunded")),
        processed_at=(
            datetime.fromisoformat(str(processed_at)) if processed_at else None
        ),
    )
