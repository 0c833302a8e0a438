"""Models for vision capability results."""

from pydantic import BaseModel, Field


class BibCandidate(BaseModel):
    """A number read from an image."""

    number: str
    confidence: float = Field(ge=0.0, le=100.0)


class TextDetectionResult(BaseModel):
    """Numbers detected in an image by a text-recognition provider."""

    candidates: list[BibCandidate]
    provider_id: str


class BoundingBox(BaseModel):
    """Face box in image-relative coordinates."""

    left: float = Field(ge=0.0, le=1.0)
    top: float = Field(ge=0.0, le=1.0)
    width: float = Field(ge=0.0, le=1.0)
    height: float = Field(ge=0.0, le=1.0)


class IndexedFace(BaseModel):
    """A face stored in the provider's face index."""

    face_id: str
    confidence: float
    bounding_box: BoundingBox


class FaceMatch(BaseModel):
    """A similar face found in the face index."""

    face_id: str
    external_image_id: str | None
    similarity: float


class DetectedLabel(BaseModel):
    """A scene or object label."""

    name: str
    confidence: float
