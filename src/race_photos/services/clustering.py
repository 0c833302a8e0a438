"""Face clustering of orphan photos and its per-event scheduler."""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

from race_photos.domain.bibs import normalize_bib
from race_photos.domain.photos import BibNumberRecord, BibSource, PhotoFaceRecord
from race_photos.services.bibs import (
    BibNumberRepository,
    RosterRepository,
    load_roster_numbers,
)
from race_photos.services.faces import FaceRepository, parse_face_index_key
from race_photos.services.photos import PhotoRepository
from race_photos.services.vision import VisionClient

logger = logging.getLogger(__name__)

SettledCallback = Callable[[UUID], Awaitable[None]]


@dataclass
class ClusteringStats:
    """Summary of one clustering run."""

    total_anchor_photos: int = 0
    total_orphan_photos: int = 0
    faces_searched: int = 0
    photos_linked: int = 0
    new_bibs_assigned: int = 0
    errors: int = 0


@dataclass(frozen=True)
class ClusteringStatus:
    """Counts describing how much of an event is identified."""

    total_photos: int
    photos_with_bibs: int
    photos_with_faces: int
    orphan_photos: int
    last_clustered_at: datetime | None
    running: bool
    pending: bool

    @property
    def needs_clustering(self) -> bool:
        """Return true when orphans with faces are waiting for a run."""
        return self.orphan_photos > 0


def _number_order(number: str) -> tuple[int, int | str]:
    return (0, int(number)) if number.isdigit() else (1, number)


def choose_bib(votes: dict[str, list[float]]) -> tuple[str, float] | None:
    """Pick the number with the highest summed similarity.

    Ties go to the higher single similarity, then to the lowest number.
    """
    if not votes:
        return None
    number = min(
        votes,
        key=lambda candidate: (
            -sum(votes[candidate]),
            -max(votes[candidate]),
            _number_order(candidate),
        ),
    )
    return number, max(votes[number])


@dataclass
class FaceClusteringEngine:
    """Links orphan photos to bib numbers through similar indexed faces."""

    client: VisionClient
    photo_repository: PhotoRepository
    bib_repository: BibNumberRepository
    face_repository: FaceRepository
    roster_repository: RosterRepository
    threshold: float = 85.0
    max_matches: int = 100
    enabled: bool = True

    async def run(self, event_id: UUID) -> ClusteringStats:
        """Cluster every orphan photo of an event once."""
        stats = ClusteringStats()
        if not self.enabled or not self.client.supports_faces:
            return stats
        roster = load_roster_numbers(self.roster_repository, event_id)
        bibs_by_photo = _group_bibs(self.bib_repository.list_for_event(event_id))
        anchors = _anchor_numbers(bibs_by_photo, roster)
        faces_by_photo = _group_faces(self.face_repository.list_for_event(event_id))
        orphans = [
            photo_id for photo_id in faces_by_photo if photo_id not in bibs_by_photo
        ]
        stats.total_anchor_photos = len(anchors)
        stats.total_orphan_photos = len(orphans)
        if not anchors or not orphans:
            return stats

        for photo_id in orphans:
            votes = await self._collect_votes(
                event_id, photo_id, faces_by_photo[photo_id], anchors, stats
            )
            choice = choose_bib(votes)
            if choice is None:
                continue
            if self.bib_repository.list_for_photos([photo_id]):
                continue
            number, similarity = choice
            self.bib_repository.add_bib_numbers(
                [
                    BibNumberRecord(
                        photo_id=photo_id,
                        number=number,
                        confidence=min(100.0, similarity),
                        source=BibSource.FACE_CLUSTER,
                    )
                ]
            )
            stats.photos_linked += 1
            stats.new_bibs_assigned += 1
        logger.info(
            "Clustering finished",
            extra={"event_id": str(event_id), "linked": stats.photos_linked},
        )
        return stats

    def status(
        self, event_id: UUID, last_clustered_at: datetime | None = None
    ) -> ClusteringStatus:
        """Return identification counts for an event."""
        photos = self.photo_repository.list_for_event(event_id)
        with_bibs = set(_group_bibs(self.bib_repository.list_for_event(event_id)))
        with_faces = set(_group_faces(self.face_repository.list_for_event(event_id)))
        return ClusteringStatus(
            total_photos=len(photos),
            photos_with_bibs=len(with_bibs),
            photos_with_faces=len(with_faces),
            orphan_photos=len(with_faces - with_bibs),
            last_clustered_at=last_clustered_at,
            running=False,
            pending=False,
        )

    async def _collect_votes(
        self,
        event_id: UUID,
        photo_id: UUID,
        faces: list[PhotoFaceRecord],
        anchors: dict[UUID, set[str]],
        stats: ClusteringStats,
    ) -> dict[str, list[float]]:
        votes: dict[str, list[float]] = defaultdict(list)
        for face in faces:
            try:
                matches = await self.client.search_faces(
                    face.face_id, self.max_matches, self.threshold
                )
            except Exception:
                logger.exception(
                    "Face search failed",
                    extra={"photo_id": str(photo_id), "face_id": face.face_id},
                )
                stats.errors += 1
                continue
            stats.faces_searched += 1
            for match in matches:
                if match.similarity < self.threshold:
                    continue
                parsed = parse_face_index_key(match.external_image_id)
                if parsed is None:
                    continue
                match_event_id, match_photo_id = parsed
                if match_event_id != event_id or match_photo_id == photo_id:
                    continue
                for number in anchors.get(match_photo_id, ()):
                    votes[number].append(match.similarity)
        return dict(votes)


def _group_bibs(records: list[BibNumberRecord]) -> dict[UUID, list[BibNumberRecord]]:
    grouped: dict[UUID, list[BibNumberRecord]] = defaultdict(list)
    for record in records:
        grouped[record.photo_id].append(record)
    return dict(grouped)


def _group_faces(records: list[PhotoFaceRecord]) -> dict[UUID, list[PhotoFaceRecord]]:
    grouped: dict[UUID, list[PhotoFaceRecord]] = defaultdict(list)
    for record in records:
        grouped[record.photo_id].append(record)
    return dict(grouped)


def _anchor_numbers(
    bibs_by_photo: dict[UUID, list[BibNumberRecord]], roster: set[str]
) -> dict[UUID, set[str]]:
    anchors: dict[UUID, set[str]] = {}
    for photo_id, records in bibs_by_photo.items():
        numbers = {
            normalize_bib(record.number)
            for record in records
            if record.source == BibSource.OCR
        }
        if roster:
            numbers &= roster
        if numbers:
            anchors[photo_id] = numbers
    return anchors


@dataclass
class ClusteringScheduler:
    """Debounces clustering per event and keeps runs mutually exclusive.

    Each trigger cancels and replaces the event's pending timer. A timer
    that fires while a run is active schedules itself again instead of
    starting a second run. Settled callbacks fire after every run.
    """

    engine: FaceClusteringEngine
    delay_seconds: float = 30.0
    _timers: dict[UUID, asyncio.Task[None]] = field(default_factory=dict, init=False)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False)
    _active: set[UUID] = field(default_factory=set, init=False)
    _callbacks: list[SettledCallback] = field(default_factory=list, init=False)
    _last_run: dict[UUID, datetime] = field(default_factory=dict, init=False)

    def on_settled(self, callback: SettledCallback) -> None:
        """Register a coroutine called with the event id after each run."""
        self._callbacks.append(callback)

    def schedule(self, event_id: UUID) -> None:
        """(Re)start the quiet-period timer for an event."""
        pending = self._timers.pop(event_id, None)
        if pending is not None:
            pending.cancel()
        task = asyncio.create_task(
            self._delayed_run(event_id), name=f"clustering-{event_id}"
        )
        self._timers[event_id] = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_now(self, event_id: UUID) -> ClusteringStats | None:
        """Run immediately; returns None when a run is already active.

        Engine failures are re-raised after the settled callbacks ran.
        """
        if event_id in self._active:
            return None
        pending = self._timers.pop(event_id, None)
        if pending is not None:
            pending.cancel()
        return await self._run(event_id, raise_errors=True)

    def is_running(self, event_id: UUID) -> bool:
        """Return true while a run is active for the event."""
        return event_id in self._active

    def is_pending(self, event_id: UUID) -> bool:
        """Return true while a debounce timer is waiting for the event."""
        return event_id in self._timers

    def status(self, event_id: UUID) -> ClusteringStatus:
        """Return engine counts enriched with scheduler state."""
        status = self.engine.status(event_id, self._last_run.get(event_id))
        return ClusteringStatus(
            total_photos=status.total_photos,
            photos_with_bibs=status.photos_with_bibs,
            photos_with_faces=status.photos_with_faces,
            orphan_photos=status.orphan_photos,
            last_clustered_at=status.last_clustered_at,
            running=self.is_running(event_id),
            pending=self.is_pending(event_id),
        )

    async def wait_idle(self) -> None:
        """Wait for every pending and running scheduled run to finish."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def shutdown(self) -> None:
        """Cancel pending timers and wait for them to stop."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()

    async def _delayed_run(self, event_id: UUID) -> None:
        await asyncio.sleep(self.delay_seconds)
        if self._timers.get(event_id) is asyncio.current_task():
            del self._timers[event_id]
        if event_id in self._active:
            self.schedule(event_id)
            return
        await self._run(event_id)

    async def _run(
        self, event_id: UUID, raise_errors: bool = False
    ) -> ClusteringStats | None:
        self._active.add(event_id)
        stats: ClusteringStats | None = None
        failure: Exception | None = None
        try:
            stats = await self.engine.run(event_id)
        except Exception as exc:
            logger.exception("Clustering run failed", extra={"event_id": str(event_id)})
            failure = exc
        finally:
            self._active.discard(event_id)
            self._last_run[event_id] = datetime.now(tz=UTC)
        for callback in self._callbacks:
            try:
                await callback(event_id)
            except Exception:
                logger.exception(
                    "Clustering settle callback failed",
                    extra={"event_id": str(event_id)},
                )
        if failure is not None and raise_errors:
            raise failure
        return stats
