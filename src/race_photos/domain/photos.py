"""Domain models for photos and their enrichment results."""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import StrEnum
from uuid import UUID


class RenditionKind(StrEnum):
    """Storage namespaces for derived images."""

    ORIGINAL = "original"
    ANALYSIS = "analysis"
    WEB = "web"
    THUMBNAIL = "thumbs"
    CROP = "crops"


PUBLIC_RENDITIONS = frozenset(
    {RenditionKind.WEB, RenditionKind.THUMBNAIL, RenditionKind.CROP}
)


def storage_key(event_id: UUID, kind: RenditionKind, filename: str) -> str:
    """Build an object-store key namespaced by event and rendition kind."""
    return f"{event_id}/{kind.value}/{filename}"


def rendition_kind(key: str) -> RenditionKind | None:
    """Return the rendition kind encoded in a storage key, if any."""
    parts = key.split("/")
    if len(parts) < 3:  # noqa: PLR2004
        return None
    try:
        return RenditionKind(parts[1])
    except ValueError:
        return None


class BibSource(StrEnum):
    """Origin of a bib number assignment."""

    OCR = "ocr"
    FACE_CLUSTER = "face-cluster"


@dataclass(frozen=True)
class PhotoRecord:
    """Represents a persisted photo row."""

    id: UUID
    event_id: UUID
    user_id: UUID
    original_filename: str
    original_key: str | None = None
    analysis_key: str | None = None
    web_key: str | None = None
    thumbnail_key: str | None = None
    crop_key: str | None = None
    quality_score: int | None = None
    is_blurry: bool = False
    auto_edited: bool = False
    face_indexed: bool = False
    ocr_provider: str | None = None
    labels: list[str] | None = None
    credit_deducted: bool = False
    credit_refunded: bool = False
    processed_at: datetime | None = None


@dataclass
class PhotoUpdate:
    """Accumulates stage results for a single photo update."""

    original_key: str | None = None
    analysis_key: str | None = None
    web_key: str | None = None
    thumbnail_key: str | None = None
    crop_key: str | None = None
    quality_score: int | None = None
    is_blurry: bool | None = None
    auto_edited: bool | None = None
    face_indexed: bool | None = None
    ocr_provider: str | None = None
    labels: list[str] | None = None
    processed_at: datetime | None = None

    def to_row(self) -> dict[str, object]:
        """Return only the fields that were set, serialized for storage."""
        row: dict[str, object] = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            row[key] = value.isoformat() if isinstance(value, datetime) else value
        return row


@dataclass(frozen=True)
class BibNumberRecord:
    """A bib number linked to a photo."""

    photo_id: UUID
    number: str
    confidence: float
    source: BibSource


@dataclass(frozen=True)
class PhotoFaceRecord:
    """A face stored in the event face index."""

    id: UUID
    photo_id: UUID
    event_id: UUID
    face_id: str
    confidence: float
    bounding_box: dict[str, float]
    crop_key: str | None = None


@dataclass(frozen=True)
class RosterEntry:
    """A registered runner on an event's start list."""

    event_id: UUID
    bib_number: str
    first_name: str
    last_name: str
    email: str | None = None
    notified: bool = False
