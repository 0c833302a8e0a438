"""Batch acceptance and per-photo orchestration of the enrichment stages."""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from uuid import UUID

from race_photos.config import CREDITS_PER_PHOTO, PipelineConfig
from race_photos.domain.errors import DecodeError, InsufficientCreditsError
from race_photos.domain.photos import (
    PhotoRecord,
    PhotoUpdate,
    RenditionKind,
    storage_key,
)
from race_photos.domain.vision import BoundingBox
from race_photos.services.bibs import (
    BibRecognitionService,
    RosterRepository,
    load_roster_numbers,
)
from race_photos.services.clustering import ClusteringScheduler
from race_photos.services.credits import CreditLedgerService
from race_photos.services.cropping import SmartCropper
from race_photos.services.faces import FaceIndexer
from race_photos.services.labels import LabelDetector
from race_photos.services.photos import PhotoRepository
from race_photos.services.quality import QualityAnalyzer
from race_photos.services.renditions import (
    ObjectStore,
    RenditionGenerator,
    RenditionSet,
)
from race_photos.services.retouch import retouch_display
from race_photos.services.sessions import UploadSessionStore
from race_photos.services.task_queue import BoundedTaskQueue
from race_photos.services.watermark import render_watermarked_thumbnail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhotoUpload:
    """Raw bytes of one uploaded file."""

    filename: str
    data: bytes


@dataclass(frozen=True)
class BatchOptions:
    """Per-batch processing switches chosen by the photographer."""

    auto_retouch: bool = True
    smart_crop: bool = False
    face_matching: bool = True


@dataclass(frozen=True)
class BatchReceipt:
    """Result of accepting a batch."""

    session_id: UUID
    photo_ids: list[UUID]
    credits_debited: int
    balance_after: int


@dataclass(frozen=True)
class _PhotoJob:
    photo_id: UUID
    event_id: UUID
    user_id: UUID
    session_id: UUID | None
    filename: str
    data: bytes
    label: str
    roster: set[str]
    options: BatchOptions


@dataclass(frozen=True)
class _Charge:
    user_id: UUID
    session_id: UUID


@dataclass
class IngestionCoordinator:  # noqa: PLR0902
    """Runs uploads through the pipeline and reconciles credits afterwards.

    Refunds are settled only after the event's clustering run finishes and
    only when none of the event's photos are still being processed.
    """

    config: PipelineConfig
    queue: BoundedTaskQueue
    sessions: UploadSessionStore
    credits: CreditLedgerService
    photo_repository: PhotoRepository
    roster_repository: RosterRepository
    store: ObjectStore
    renditions: RenditionGenerator
    quality: QualityAnalyzer
    bibs: BibRecognitionService
    faces: FaceIndexer
    cropper: SmartCropper
    labels: LabelDetector
    scheduler: ClusteringScheduler
    _in_flight: Counter[UUID] = field(default_factory=Counter, init=False)
    _charged: dict[UUID, dict[UUID, _Charge]] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        self.scheduler.on_settled(self.settle_event)

    async def accept_batch(
        self,
        user_id: UUID,
        event_id: UUID,
        uploads: list[PhotoUpload],
        options: BatchOptions | None = None,
    ) -> BatchReceipt:
        """Charge for a batch, create its rows and enqueue one unit per photo.

        Raises InsufficientCreditsError before anything is enqueued.
        """
        if not uploads:
            raise ValueError("Batch must contain at least one photo")
        resolved_options = options or BatchOptions()
        required = len(uploads) * CREDITS_PER_PHOTO
        available = self.credits.balance(user_id)
        if available < required:
            raise InsufficientCreditsError(user_id, required, available)

        photos = self.photo_repository.create_photos(
            event_id, user_id, [upload.filename for upload in uploads]
        )
        try:
            entry = self.credits.debit(
                user_id,
                required,
                f"Upload of {len(uploads)} photos",
                event_id=event_id,
            )
        except InsufficientCreditsError:
            self.photo_repository.delete_photos([photo.id for photo in photos])
            raise

        session = self.sessions.create_session(user_id, event_id, len(uploads))
        roster = load_roster_numbers(self.roster_repository, event_id)
        charges = self._charged.setdefault(event_id, {})
        for index, (photo, upload) in enumerate(zip(photos, uploads, strict=True)):
            charges[photo.id] = _Charge(user_id=user_id, session_id=session.id)
            job = _PhotoJob(
                photo_id=photo.id,
                event_id=event_id,
                user_id=user_id,
                session_id=session.id,
                filename=upload.filename,
                data=upload.data,
                label=f"{index + 1}/{len(uploads)}",
                roster=roster,
                options=resolved_options,
            )
            self._in_flight[event_id] += 1
            self.queue.enqueue(partial(self._process_upload, job))
        logger.info(
            "Batch accepted",
            extra={"event_id": str(event_id), "photos": len(photos)},
        )
        return BatchReceipt(
            session_id=session.id,
            photo_ids=[photo.id for photo in photos],
            credits_debited=required,
            balance_after=entry.balance_after,
        )

    async def reprocess_event(self, event_id: UUID, reindex_faces: bool = False) -> int:
        """Enqueue every stored photo of an event for reprocessing.

        Bib numbers are replaced wholesale. Faces are only indexed for photos
        that have none unless ``reindex_faces`` is set. No credits move.
        """
        photos = [
            (photo, original_key)
            for photo in self.photo_repository.list_for_event(event_id)
            if (original_key := photo.original_key)
        ]
        roster = load_roster_numbers(self.roster_repository, event_id)
        for index, (photo, original_key) in enumerate(photos):
            self._in_flight[event_id] += 1
            self.queue.enqueue(
                partial(
                    self._reprocess_photo,
                    photo,
                    original_key,
                    roster,
                    f"{index + 1}/{len(photos)}",
                    reindex_faces,
                )
            )
        return len(photos)

    async def settle_event(self, event_id: UUID) -> int:
        """Refund finished photos of an event that still have no bib number.

        Charges whose lookup or refund fails are kept for the next settlement.
        """
        if self._in_flight[event_id] > 0:
            return 0
        charges = self._charged.get(event_id)
        if not charges:
            return 0
        try:
            records = self.bibs.repository.list_for_photos(list(charges))
        except Exception:
            logger.exception(
                "Bib lookup for settlement failed", extra={"event_id": str(event_id)}
            )
            return 0
        with_bibs = {record.photo_id for record in records}
        refunds: Counter[UUID] = Counter()
        for photo_id, charge in list(charges.items()):
            if photo_id in with_bibs:
                del charges[photo_id]
                continue
            try:
                entry = self.credits.refund(
                    charge.user_id,
                    CREDITS_PER_PHOTO,
                    "No bib number detected",
                    photo_id=photo_id,
                    event_id=event_id,
                )
            except Exception:
                logger.exception(
                    "Credit refund failed", extra={"photo_id": str(photo_id)}
                )
                continue
            if entry is not None:
                refunds[charge.session_id] += 1
            try:
                self.photo_repository.mark_credit_refunded(photo_id)
            except Exception:
                logger.exception(
                    "Marking photo as refunded failed",
                    extra={"photo_id": str(photo_id)},
                )
                continue
            del charges[photo_id]
        if not charges:
            self._charged.pop(event_id, None)
        for session_id, count in refunds.items():
            self.sessions.add_credit_refunds(session_id, count)
        total = sum(refunds.values())
        if total:
            logger.info(
                "Credits refunded", extra={"event_id": str(event_id), "count": total}
            )
        return total

    def in_flight(self, event_id: UUID) -> int:
        """Return how many photos of an event are queued or running."""
        return self._in_flight[event_id]

    async def _process_upload(self, job: _PhotoJob) -> None:
        if job.session_id is not None:
            self.sessions.update_progress(
                job.session_id, current_step=f"Processing photo {job.label}"
            )
        try:
            try:
                renditions = await self.renditions.generate(
                    job.data, job.event_id, job.photo_id, job.filename
                )
            except DecodeError:
                logger.warning(
                    "Photo could not be decoded", extra={"photo_id": str(job.photo_id)}
                )
                return
            update = PhotoUpdate(
                original_key=renditions.original_key,
                web_key=renditions.web_key,
                analysis_key=renditions.analysis_key,
            )
            await self._enrich(job, renditions, update, index_faces=True)
            update.processed_at = datetime.now(tz=UTC)
            self.photo_repository.update_photo(job.photo_id, update)
        finally:
            if job.session_id is not None:
                self.sessions.record_photo_processed(
                    job.session_id, current_step=f"Processed photo {job.label}"
                )
            self._photo_done(job.event_id)

    async def _reprocess_photo(
        self,
        photo: PhotoRecord,
        original_key: str,
        roster: set[str],
        label: str,
        reindex_faces: bool,
    ) -> None:
        try:
            data = await self.store.get_buffer(original_key)
            job = _PhotoJob(
                photo_id=photo.id,
                event_id=photo.event_id,
                user_id=photo.user_id,
                session_id=None,
                filename=photo.original_filename,
                data=data,
                label=label,
                roster=roster,
                options=BatchOptions(
                    auto_retouch=photo.auto_edited, smart_crop=reindex_faces
                ),
            )
            try:
                renditions = await self.renditions.generate(
                    data, photo.event_id, photo.id, photo.original_filename
                )
            except DecodeError:
                logger.warning(
                    "Stored original could not be decoded",
                    extra={"photo_id": str(photo.id)},
                )
                return
            index_faces = not photo.face_indexed
            if reindex_faces and photo.face_indexed:
                await self._drop_faces(photo.id)
                index_faces = True
            update = PhotoUpdate(
                original_key=renditions.original_key,
                web_key=renditions.web_key,
                analysis_key=renditions.analysis_key,
            )
            await self._enrich(
                job, renditions, update, index_faces=index_faces, replace_bibs=True
            )
            update.processed_at = datetime.now(tz=UTC)
            self.photo_repository.update_photo(photo.id, update)
        finally:
            self._photo_done(photo.event_id)

    async def _enrich(  # noqa: PLR0912
        self,
        job: _PhotoJob,
        renditions: RenditionSet,
        update: PhotoUpdate,
        index_faces: bool,
        replace_bibs: bool = False,
    ) -> None:
        """Run every enrichment stage; a failing stage is skipped."""
        photo_key = {"photo_id": str(job.photo_id)}
        quality = await asyncio.to_thread(
            self.quality.analyze, renditions.analysis_bytes
        )
        update.quality_score = quality.score
        update.is_blurry = quality.is_blurry

        display = renditions.web_bytes
        if self.config.auto_edit_enabled and job.options.auto_retouch:
            if quality.is_blurry:
                update.auto_edited = False
            else:
                try:
                    display = await asyncio.to_thread(
                        retouch_display, display, self.config.display_quality
                    )
                    await self.store.put(display, renditions.web_key, "image/webp")
                    update.auto_edited = True
                except Exception:
                    logger.exception("Auto-retouch failed", extra=photo_key)
                    display = renditions.web_bytes

        try:
            thumbnail = await asyncio.to_thread(
                render_watermarked_thumbnail,
                display,
                self.config.watermark_text,
                self.config.thumbnail_max_dimension,
                self.config.thumbnail_quality,
            )
            thumbnail_key = storage_key(
                job.event_id, RenditionKind.THUMBNAIL, f"{job.photo_id}.jpg"
            )
            await self.store.put(thumbnail, thumbnail_key, "image/jpeg")
            update.thumbnail_key = thumbnail_key
        except Exception:
            logger.exception("Watermarked thumbnail failed", extra=photo_key)

        try:
            result = await self.bibs.recognize(
                job.photo_id,
                renditions.analysis_bytes,
                job.roster,
                replace=replace_bibs,
            )
            if result.provider_id:
                update.ocr_provider = result.provider_id
        except Exception:
            logger.exception("Bib recognition failed", extra=photo_key)

        if index_faces and self._faces_enabled(job.options):
            try:
                await self._index_faces(job, renditions, update)
            except Exception:
                logger.exception("Face indexing stage failed", extra=photo_key)

        if self.config.label_detection_enabled:
            labels = await self.labels.detect(job.photo_id, renditions.analysis_bytes)
            if labels:
                update.labels = labels

    async def _index_faces(
        self, job: _PhotoJob, renditions: RenditionSet, update: PhotoUpdate
    ) -> None:
        faces = await self.faces.index(
            job.event_id, job.photo_id, renditions.analysis_bytes
        )
        if not faces:
            return
        update.face_indexed = True
        if not job.options.smart_crop:
            return
        for index, face in enumerate(faces):
            try:
                crop_key = await self.cropper.crop(
                    renditions.source_bytes,
                    BoundingBox.model_validate(face.bounding_box),
                    job.event_id,
                    job.photo_id,
                    index,
                )
            except Exception:
                logger.exception(
                    "Smart crop failed",
                    extra={"photo_id": str(job.photo_id), "face": index},
                )
                continue
            if crop_key is None:
                continue
            self.faces.repository.set_crop_key(face.id, crop_key)
            if update.crop_key is None:
                update.crop_key = crop_key

    async def _drop_faces(self, photo_id: UUID) -> None:
        faces = self.faces.repository.list_for_photo(photo_id)
        crop_keys = [face.crop_key for face in faces if face.crop_key]
        if crop_keys:
            await self.store.delete_many(crop_keys)
        if faces:
            await self.faces.client.delete_faces([face.face_id for face in faces])
        self.faces.repository.delete_for_photo(photo_id)

    def _faces_enabled(self, options: BatchOptions) -> bool:
        return (
            self.config.face_index_enabled
            and options.face_matching
            and self.faces.client.supports_faces
        )

    def _photo_done(self, event_id: UUID) -> None:
        self._in_flight[event_id] -= 1
        if self._in_flight[event_id] <= 0:
            del self._in_flight[event_id]
            self.scheduler.schedule(event_id)
