"""Supabase-backed face repository."""

from dataclasses import dataclass
from uuid import UUID

from supabase import Client

from race_photos.domain.photos import PhotoFaceRecord
from race_photos.domain.vision import IndexedFace
from race_photos.services.faces import FaceRepository


@dataclass
class SupabaseFaceRepository(FaceRepository):
    """Supabase implementation for indexed faces."""

    client: Client

    def add_faces(
        self, photo_id: UUID, event_id: UUID, faces: list[IndexedFace]
    ) -> list[PhotoFaceRecord]:
        """Insert faces and return the stored rows."""
        response = (
            self.client.table("photo_faces")
            .insert(
                [
                    {
                        "photo_id": str(photo_id),
                        "event_id": str(event_id),
                        "face_id": face.face_id,
                        "confidence": face.confidence,
                        "bounding_box": face.bounding_box.model_dump(),
                    }
                    for face in faces
                ]
            )
            .execute()
        )
        if not response.data:
            raise RuntimeError("Failed to store faces")
        return [_to_record(row) for row in response.data]

    def list_for_event(self, event_id: UUID) -> list[PhotoFaceRecord]:
        """Return faces of an event."""
        response = (
            self.client.table("photo_faces")
            .select("*")
            .eq("event_id", str(event_id))
            .execute()
        )
        return [_to_record(row) for row in response.data or []]

    def list_for_photo(self, photo_id: UUID) -> list[PhotoFaceRecord]:
        """Return faces of a photo."""
        response = (
            self.client.table("photo_faces")
            .select("*")
            .eq("photo_id", str(photo_id))
            .execute()
        )
        return [_to_record(row) for row in response.data or []]

    def set_crop_key(self, face_row_id: UUID, crop_key: str) -> None:
        """Attach a crop rendition to a face row."""
        self.client.table("photo_faces").update({"crop_key": crop_key}).eq(
            "id", str(face_row_id)
        ).execute()

    def delete_for_photo(self, photo_id: UUID) -> None:
        """Delete faces of a photo."""
        self.client.table("photo_faces").delete().eq(
            "photo_id", str(photo_id)
        ).execute()


def _to_record(row: dict[str, object]) -> PhotoFaceRecord:
    box = row.get("bounding_box")
    return PhotoFaceRecord(
        id=UUID(str(row["id"])),
        photo_id=UUID(str(row["photo_id"])),
        event_id=UUID(str(row["event_id"])),
        face_id=str(row["face_id"]),
        confidence=float(row.get("confidence") or 0.0),
        bounding_box=dict(box) if isinstance(box, dict) else {},
        crop_key=row.get("crop_key"),
    )
