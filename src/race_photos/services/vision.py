"""Vision capability interface shared by the enrichment stages."""

import base64
from typing import Protocol

from race_photos.domain.vision import (
    DetectedLabel,
    FaceMatch,
    IndexedFace,
    TextDetectionResult,
)
from race_photos.services.renditions import detect_mime_type

BIB_TEXT_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "lines": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "text": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0.0, "maximum": 100.0},
                },
                "required": ["text", "confidence"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["lines"],
    "additionalProperties": False,
}

LABELS_SCHEMA: dict[str, object] = {
    "type": "object",
    "properties": {
        "labels": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0.0, "maximum": 100.0},
                },
                "required": ["name", "confidence"],
                "additionalProperties": False,
            },
        }
    },
    "required": ["labels"],
    "additionalProperties": False,
}


class VisionClient(Protocol):
    """Interface for the network-bound vision capability."""

    provider_id: str
    supports_faces: bool

    async def detect_text(self, image: bytes) -> TextDetectionResult:
        """Return bib number candidates read from the image."""

    async def index_faces(
        self, image: bytes, external_image_id: str, max_faces: int
    ) -> list[IndexedFace]:
        """Store faces found in the image and return them."""

    async def search_faces(
        self, face_id: str, max_faces: int, threshold: float
    ) -> list[FaceMatch]:
        """Return stored faces similar to an indexed face."""

    async def delete_faces(self, face_ids: list[str]) -> None:
        """Remove faces from the face index."""

    async def detect_labels(
        self, image: bytes, max_labels: int, min_confidence: float
    ) -> list[DetectedLabel]:
        """Return scene labels found in the image."""

    async def ensure_collection(self) -> None:
        """Create the face collection when it does not exist yet."""

    async def close(self) -> None:
        """Release network resources."""


def to_data_url(image_bytes: bytes) -> str:
    """Convert bytes to a base64 data URL for image input."""
    mime_type = detect_mime_type(image_bytes)
    if mime_type == "application/octet-stream":
        mime_type = "image/jpeg"
    encoded = base64.b64encode(image_bytes).decode("utf-8")
    return f"data:{mime_type};base64,{encoded}"
