"""Shared test fixtures."""

import io
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from uuid import UUID, uuid4

import pytest
from PIL import Image, ImageDraw

from race_photos.config import PipelineConfig, Settings
from race_photos.containers import AppContainer
from race_photos.domain.credits import LedgerEntry, LedgerEntryType
from race_photos.domain.errors import ExternalServiceError, InsufficientCreditsError
from race_photos.domain.photos import (
    BibNumberRecord,
    PhotoFaceRecord,
    PhotoRecord,
    PhotoUpdate,
    RosterEntry,
)
from race_photos.domain.vision import (
    BibCandidate,
    BoundingBox,
    DetectedLabel,
    FaceMatch,
    IndexedFace,
    TextDetectionResult,
)
from race_photos.services.bibs import (
    BibNumberRepository,
    BibRecognitionService,
    RosterRepository,
)
from race_photos.services.clustering import ClusteringScheduler, FaceClusteringEngine
from race_photos.services.credits import CreditLedgerService, CreditRepository
from race_photos.services.cropping import SmartCropper
from race_photos.services.faces import FaceIndexer, FaceRepository
from race_photos.services.ingestion import IngestionCoordinator
from race_photos.services.labels import LabelDetector
from race_photos.services.photos import PhotoRepository
from race_photos.services.quality import QualityAnalyzer
from race_photos.services.renditions import ObjectStore, RenditionGenerator
from race_photos.services.sessions import UploadSessionStore
from race_photos.services.task_queue import BoundedTaskQueue
from race_photos.services.vision import VisionClient


def make_image_bytes(
    size: tuple[int, int] = (64, 48),
    color: tuple[int, int, int] = (128, 128, 128),
    image_format: str = "JPEG",
) -> bytes:
    """Encode a flat-colour image."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=image_format)
    return buffer.getvalue()


def make_checkerboard_bytes(size: tuple[int, int] = (64, 48), square: int = 4) -> bytes:
    """Encode a high-contrast checkerboard, which scores as sharp."""
    image = Image.new("RGB", size, (255, 255, 255))
    draw = ImageDraw.Draw(image)
    for top in range(0, size[1], square):
        for left in range(0, size[0], square):
            if (left // square + top // square) % 2 == 0:
                draw.rectangle(
                    (left, top, left + square - 1, top + square - 1), fill=(0, 0, 0)
                )
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_face(
    face_id: str,
    left: float = 0.4,
    top: float = 0.2,
    width: float = 0.2,
    height: float = 0.2,
) -> IndexedFace:
    return IndexedFace(
        face_id=face_id,
        confidence=99.0,
        bounding_box=BoundingBox(left=left, top=top, width=width, height=height),
    )


def bib(number: str, confidence: float = 95.0) -> BibCandidate:
    return BibCandidate(number=number, confidence=confidence)


@dataclass
class InMemoryPhotoRepository(PhotoRepository):
    """In-memory photo repository for tests."""

    photos: dict[UUID, PhotoRecord] = field(default_factory=dict)

    def create_photos(
        self, event_id: UUID, user_id: UUID, filenames: list[str]
    ) -> list[PhotoRecord]:
        created = [
            PhotoRecord(
                id=uuid4(),
                event_id=event_id,
                user_id=user_id,
                original_filename=filename,
                credit_deducted=True,
            )
            for filename in filenames
        ]
        for photo in created:
            self.photos[photo.id] = photo
        return created

    def delete_photos(self, photo_ids: list[UUID]) -> None:
        for photo_id in photo_ids:
            self.photos.pop(photo_id, None)

    def get_photo(self, photo_id: UUID) -> PhotoRecord | None:
        return self.photos.get(photo_id)

    def list_for_event(self, event_id: UUID) -> list[PhotoRecord]:
        return [photo for photo in self.photos.values() if photo.event_id == event_id]

    def update_photo(self, photo_id: UUID, update: PhotoUpdate) -> None:
        changes = {
            item.name: getattr(update, item.name)
            for item in fields(update)
            if getattr(update, item.name) is not None
        }
        self.photos[photo_id] = replace(self.photos[photo_id], **changes)

    def mark_credit_refunded(self, photo_id: UUID) -> None:
        self.photos[photo_id] = replace(self.photos[photo_id], credit_refunded=True)


@dataclass
class InMemoryBibNumberRepository(BibNumberRepository):
    """In-memory bib number repository for tests."""

    photo_repository: InMemoryPhotoRepository = field(
        default_factory=InMemoryPhotoRepository
    )
    records: list[BibNumberRecord] = field(default_factory=list)

    def add_bib_numbers(self, records: list[BibNumberRecord]) -> None:
        self.records.extend(records)

    def replace_bib_numbers(
        self, photo_id: UUID, records: list[BibNumberRecord]
    ) -> None:
        self.records = [
            record for record in self.records if record.photo_id != photo_id
        ]
        self.records.extend(records)

    def list_for_photos(self, photo_ids: list[UUID]) -> list[BibNumberRecord]:
        wanted = set(photo_ids)
        return [record for record in self.records if record.photo_id in wanted]

    def list_for_event(self, event_id: UUID) -> list[BibNumberRecord]:
        photo_ids = [
            photo.id for photo in self.photo_repository.list_for_event(event_id)
        ]
        return self.list_for_photos(photo_ids)

    def numbers_for(self, photo_id: UUID) -> list[str]:
        return sorted(
            record.number for record in self.records if record.photo_id == photo_id
        )


@dataclass
class InMemoryRosterRepository(RosterRepository):
    """In-memory start list for tests."""

    entries: list[RosterEntry] = field(default_factory=list)

    def add(self, event_id: UUID, *numbers: str) -> None:
        for number in numbers:
            self.entries.append(
                RosterEntry(
                    event_id=event_id,
                    bib_number=number,
                    first_name="Runner",
                    last_name=number,
                )
            )

    def list_entries(self, event_id: UUID) -> list[RosterEntry]:
        return [entry for entry in self.entries if entry.event_id == event_id]


@dataclass
class InMemoryFaceRepository(FaceRepository):
    """In-memory face repository for tests."""

    faces: list[PhotoFaceRecord] = field(default_factory=list)

    def add_faces(
        self, photo_id: UUID, event_id: UUID, faces: list[IndexedFace]
    ) -> list[PhotoFaceRecord]:
        created = [
            PhotoFaceRecord(
                id=uuid4(),
                photo_id=photo_id,
                event_id=event_id,
                face_id=face.face_id,
                confidence=face.confidence,
                bounding_box=face.bounding_box.model_dump(),
            )
            for face in faces
        ]
        self.faces.extend(created)
        return created

    def list_for_event(self, event_id: UUID) -> list[PhotoFaceRecord]:
        return [face for face in self.faces if face.event_id == event_id]

    def list_for_photo(self, photo_id: UUID) -> list[PhotoFaceRecord]:
        return [face for face in self.faces if face.photo_id == photo_id]

    def set_crop_key(self, face_row_id: UUID, crop_key: str) -> None:
        self.faces = [
            replace(face, crop_key=crop_key) if face.id == face_row_id else face
            for face in self.faces
        ]

    def delete_for_photo(self, photo_id: UUID) -> None:
        self.faces = [face for face in self.faces if face.photo_id != photo_id]


@dataclass
class InMemoryCreditRepository(CreditRepository):
    """In-memory ledger with the same guarantees as the database function."""

    balances: dict[UUID, int] = field(default_factory=dict)
    entries: list[LedgerEntry] = field(default_factory=list)

    def get_balance(self, user_id: UUID) -> int:
        return self.balances.get(user_id, 0)

    def apply_entry(  # noqa: PLR0913
        self,
        user_id: UUID,
        entry_type: LedgerEntryType,
        amount: int,
        reason: str,
        photo_id: UUID | None = None,
        event_id: UUID | None = None,
    ) -> LedgerEntry | None:
        if entry_type == LedgerEntryType.REFUND and photo_id is not None:
            for existing in self.entries:
                if (
                    existing.entry_type == LedgerEntryType.REFUND
                    and existing.photo_id == photo_id
                ):
                    return None
        balance = self.balances.get(user_id, 0)
        if balance + amount < 0:
            raise InsufficientCreditsError(user_id, -amount, balance)
        self.balances[user_id] = balance + amount
        entry = LedgerEntry(
            id=uuid4(),
            user_id=user_id,
            entry_type=entry_type,
            amount=amount,
            balance_before=balance,
            balance_after=balance + amount,
            reason=reason,
            created_at=datetime.now(tz=UTC),
            photo_id=photo_id,
            event_id=event_id,
        )
        self.entries.append(entry)
        return entry

    def list_entries(self, user_id: UUID, limit: int) -> list[LedgerEntry]:
        owned = [entry for entry in self.entries if entry.user_id == user_id]
        return list(reversed(owned))[:limit]


@dataclass
class FakeVisionClient(VisionClient):
    """Fake vision capability answering from queued responses.

    Text and face responses are consumed in call order. Search results are
    declared per face id and resolved to the photo each face was indexed in.
    """

    provider_id: str = "ocr_fake"
    supports_faces: bool = True
    texts: list[list[BibCandidate]] = field(default_factory=list)
    faces: list[list[IndexedFace]] = field(default_factory=list)
    similar: dict[str, list[tuple[str, float]]] = field(default_factory=dict)
    labels: list[DetectedLabel] = field(default_factory=list)
    fail_text: bool = False
    fail_search: set[str] = field(default_factory=set)
    indexed: dict[str, str] = field(default_factory=dict)
    index_calls: list[str] = field(default_factory=list)
    searches: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    collection_ready: bool = False

    async def detect_text(self, image: bytes) -> TextDetectionResult:
        if self.fail_text:
            raise ExternalServiceError("fake", "text detection unavailable")
        candidates = self.texts.pop(0) if self.texts else []
        return TextDetectionResult(candidates=candidates, provider_id=self.provider_id)

    async def index_faces(
        self, image: bytes, external_image_id: str, max_faces: int
    ) -> list[IndexedFace]:
        self.index_calls.append(external_image_id)
        faces = self.faces.pop(0) if self.faces else []
        for face in faces:
            self.indexed[face.face_id] = external_image_id
        return faces[:max_faces]

    async def search_faces(
        self, face_id: str, max_faces: int, threshold: float
    ) -> list[FaceMatch]:
        self.searches.append(face_id)
        if face_id in self.fail_search:
            raise ExternalServiceError("fake", "search unavailable")
        matches = [
            FaceMatch(
                face_id=other,
                external_image_id=self.indexed.get(other),
                similarity=similarity,
            )
            for other, similarity in self.similar.get(face_id, [])
            if similarity >= threshold
        ]
        return matches[:max_faces]

    async def delete_faces(self, face_ids: list[str]) -> None:
        self.deleted.extend(face_ids)

    async def detect_labels(
        self, image: bytes, max_labels: int, min_confidence: float
    ) -> list[DetectedLabel]:
        kept = [label for label in self.labels if label.confidence >= min_confidence]
        return kept[:max_labels]

    async def ensure_collection(self) -> None:
        self.collection_ready = True

    async def close(self) -> None:
        return None


@dataclass
class InMemoryObjectStore(ObjectStore):
    """Object store keeping bytes and content types in a dict."""

    objects: dict[str, tuple[bytes, str]] = field(default_factory=dict)
    chunk_size: int = 1024

    async def put(self, data: bytes, key: str, content_type: str) -> None:
        self.objects[key] = (data, content_type)

    async def get(self, key: str) -> AsyncIterator[bytes]:
        if key not in self.objects:
            raise KeyError(key)
        data = self.objects[key][0]
        for start in range(0, len(data), self.chunk_size):
            yield data[start : start + self.chunk_size]

    async def get_buffer(self, key: str) -> bytes:
        return self.objects[key][0]

    async def delete_many(self, keys: list[str]) -> None:
        for key in keys:
            self.objects.pop(key, None)

    async def close(self) -> None:
        return None

    def keys_for(self, photo_id: UUID) -> list[str]:
        return sorted(key for key in self.objects if str(photo_id) in key)


def build_test_container(
    settings: Settings, vision_client: FakeVisionClient | None = None
) -> AppContainer:
    """Wire the real services over in-memory adapters."""
    pipeline = settings.pipeline
    vision = vision_client or FakeVisionClient()
    store = InMemoryObjectStore()
    photo_repository = InMemoryPhotoRepository()
    bib_repository = InMemoryBibNumberRepository(photo_repository=photo_repository)
    roster_repository = InMemoryRosterRepository()
    face_repository = InMemoryFaceRepository()
    credit_service = CreditLedgerService(InMemoryCreditRepository())
    task_queue = BoundedTaskQueue(max_concurrent=pipeline.max_concurrent_tasks)
    session_store = UploadSessionStore(
        retention_seconds=pipeline.session_retention_seconds
    )
    scheduler = ClusteringScheduler(
        engine=FaceClusteringEngine(
            client=vision,
            photo_repository=photo_repository,
            bib_repository=bib_repository,
            face_repository=face_repository,
            roster_repository=roster_repository,
            threshold=pipeline.face_match_threshold,
            max_matches=pipeline.face_search_max_faces,
        ),
        delay_seconds=pipeline.clustering_delay_seconds,
    )
    ingestion = IngestionCoordinator(
        config=pipeline,
        queue=task_queue,
        sessions=session_store,
        credits=credit_service,
        photo_repository=photo_repository,
        roster_repository=roster_repository,
        store=store,
        renditions=RenditionGenerator(store=store, config=pipeline),
        quality=QualityAnalyzer(threshold=pipeline.quality_threshold),
        bibs=BibRecognitionService(
            client=vision,
            repository=bib_repository,
            min_confidence=pipeline.ocr_confidence_threshold,
        ),
        faces=FaceIndexer(
            client=vision,
            repository=face_repository,
            max_faces=pipeline.max_faces_per_photo,
        ),
        cropper=SmartCropper(store=store, config=pipeline),
        labels=LabelDetector(
            client=vision,
            max_labels=pipeline.label_max,
            min_confidence=pipeline.label_min_confidence,
        ),
        scheduler=scheduler,
    )

    async def close_resources() -> None:
        await scheduler.shutdown()
        await task_queue.close()

    return AppContainer(
        settings=settings,
        object_store=store,
        vision_client=vision,
        task_queue=task_queue,
        session_store=session_store,
        credit_service=credit_service,
        clustering_scheduler=scheduler,
        ingestion=ingestion,
        close_resources=close_resources,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="header.payload.signature",
        admin_token="admin-token",
        openai_api_key="openai-key",
        aws_access_key_id=None,
        aws_secret_access_key=None,
        pipeline=PipelineConfig(
            max_concurrent_tasks=1,
            clustering_delay_seconds=0.0,
            progress_stream_grace_seconds=0.0,
        ),
    )


@pytest.fixture
def vision_client() -> FakeVisionClient:
    return FakeVisionClient()


@pytest.fixture
def container(settings: Settings, vision_client: FakeVisionClient) -> AppContainer:
    return build_test_container(settings, vision_client)
