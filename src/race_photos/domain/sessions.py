"""Domain models for upload sessions."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

ProgressListener = Callable[[str], None]


@dataclass
class UploadSession:
    """In-memory progress state for one upload batch."""

    id: UUID
    user_id: UUID
    event_id: UUID
    total: int
    processed: int = 0
    credits_refunded: int = 0
    current_step: str = "Starting"
    complete: bool = False
    completed_at: datetime | None = None
    listeners: set[ProgressListener] = field(default_factory=set)

    @property
    def percent(self) -> int:
        """Return the rounded completion percentage."""
        if self.total <= 0:
            return 0
        return int(self.processed / self.total * 100 + 0.5)

    def snapshot(self) -> dict[str, object]:
        """Return the message payload sent to progress listeners."""
        return {
            "total": self.total,
            "processed": self.processed,
            "percent": self.percent,
            "currentStep": self.current_step,
            "creditsRefunded": self.credits_refunded,
            "complete": self.complete,
        }
