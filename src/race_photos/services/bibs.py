"""Bib number recognition stage."""

import logging
from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from race_photos.domain.bibs import normalize_bib
from race_photos.domain.photos import BibNumberRecord, BibSource, RosterEntry
from race_photos.domain.vision import BibCandidate
from race_photos.services.vision import VisionClient

logger = logging.getLogger(__name__)


class BibNumberRepository(Protocol):
    """Persistence interface for bib numbers."""

    def add_bib_numbers(self, records: list[BibNumberRecord]) -> None:
        """Insert bib numbers."""

    def replace_bib_numbers(
        self, photo_id: UUID, records: list[BibNumberRecord]
    ) -> None:
        """Delete every bib number of a photo and insert the given ones."""

    def list_for_photos(self, photo_ids: list[UUID]) -> list[BibNumberRecord]:
        """Return bib numbers attached to the given photos."""

    def list_for_event(self, event_id: UUID) -> list[BibNumberRecord]:
        """Return bib numbers attached to any photo of an event."""


class RosterRepository(Protocol):
    """Read-only access to event start lists."""

    def list_entries(self, event_id: UUID) -> list[RosterEntry]:
        """Return the start list of an event."""


@dataclass(frozen=True)
class BibRecognitionResult:
    """Numbers stored for a photo and the provider that read them."""

    numbers: list[str]
    provider_id: str | None


def load_roster_numbers(repository: RosterRepository, event_id: UUID) -> set[str]:
    """Return the normalized bib numbers registered for an event."""
    return {
        normalize_bib(entry.bib_number) for entry in repository.list_entries(event_id)
    }


def select_candidates(
    candidates: list[BibCandidate], roster: set[str] | None, min_confidence: float
) -> dict[str, float]:
    """Filter candidates by confidence and roster, keeping the best per number."""
    selected: dict[str, float] = {}
    for candidate in candidates:
        if candidate.confidence < min_confidence:
            continue
        number = normalize_bib(candidate.number)
        if roster and number not in roster:
            continue
        if candidate.confidence > selected.get(number, -1.0):
            selected[number] = candidate.confidence
    return selected


@dataclass
class BibRecognitionService:
    """Reads bib numbers from a photo and stores the validated ones."""

    client: VisionClient
    repository: BibNumberRepository
    min_confidence: float = 70.0

    async def recognize(
        self,
        photo_id: UUID,
        image: bytes,
        roster: set[str] | None = None,
        replace: bool = False,
    ) -> BibRecognitionResult:
        """Detect, validate and persist bib numbers for one photo.

        Provider failures are logged and produce an empty result.
        """
        try:
            detection = await self.client.detect_text(image)
        except Exception:
            logger.exception(
                "Text detection failed", extra={"photo_id": str(photo_id)}
            )
            return BibRecognitionResult(numbers=[], provider_id=None)
        selected = select_candidates(detection.candidates, roster, self.min_confidence)
        records = [
            BibNumberRecord(
                photo_id=photo_id,
                number=number,
                confidence=confidence,
                source=BibSource.OCR,
            )
            for number, confidence in selected.items()
        ]
        if replace:
            self.repository.replace_bib_numbers(photo_id, records)
        elif records:
            self.repository.add_bib_numbers(records)
        return BibRecognitionResult(
            numbers=list(selected), provider_id=detection.provider_id
        )
