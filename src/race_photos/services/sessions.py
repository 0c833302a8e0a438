"""Upload session progress tracking and fan-out."""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from race_photos.domain.sessions import ProgressListener, UploadSession

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class ProgressBroadcaster:
    """Serializes session state and pushes it to every attached listener."""

    def broadcast(self, session: UploadSession) -> str:
        """Send the current state; listeners that fail are detached."""
        message = json.dumps(session.snapshot())
        for listener in list(session.listeners):
            try:
                listener(message)
            except Exception:
                logger.warning(
                    "Dropping failed progress listener",
                    extra={"session_id": str(session.id)},
                )
                session.listeners.discard(listener)
        return message


@dataclass
class UploadSessionStore:
    """Process-local map of upload sessions.

    Completed sessions stay readable for a retention window so late
    listeners can still see the final state; expired ones are purged
    lazily on access.
    """

    retention_seconds: float = 300.0
    broadcaster: ProgressBroadcaster = field(default_factory=ProgressBroadcaster)
    clock: Callable[[], datetime] = _utc_now
    _sessions: dict[UUID, UploadSession] = field(default_factory=dict, init=False)

    def create_session(
        self, user_id: UUID, event_id: UUID, total: int
    ) -> UploadSession:
        """Start tracking a new batch."""
        if total < 0:
            raise ValueError("total must not be negative")
        self.purge_expired()
        session = UploadSession(
            id=uuid4(), user_id=user_id, event_id=event_id, total=total
        )
        self._sessions[session.id] = session
        return session

    def get_session(self, session_id: UUID) -> UploadSession | None:
        """Return a live session, if present and not expired."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_expired(session):
            self._sessions.pop(session_id, None)
            return None
        return session

    def update_progress(  # noqa: PLR0913
        self,
        session_id: UUID,
        *,
        processed: int | None = None,
        current_step: str | None = None,
        credits_refunded: int | None = None,
        complete: bool | None = None,
    ) -> UploadSession | None:
        """Merge the given fields and broadcast the full state."""
        session = self.get_session(session_id)
        if session is None:
            return None
        if processed is not None:
            session.processed = max(0, min(processed, session.total))
        if current_step is not None:
            session.current_step = current_step
        if credits_refunded is not None:
            session.credits_refunded = credits_refunded
        if complete and not session.complete:
            session.complete = True
            session.completed_at = self.clock()
        self.broadcaster.broadcast(session)
        return session

    def record_photo_processed(
        self, session_id: UUID, current_step: str | None = None
    ) -> UploadSession | None:
        """Count one finished photo, completing the session on the last one."""
        session = self.get_session(session_id)
        if session is None:
            return None
        if session.complete:
            return session
        processed = min(session.processed + 1, session.total)
        return self.update_progress(
            session_id,
            processed=processed,
            current_step=current_step,
            complete=processed >= session.total,
        )

    def add_credit_refunds(self, session_id: UUID, count: int = 1) -> None:
        """Increase the refunded credit counter."""
        session = self.get_session(session_id)
        if session is None:
            return
        self.update_progress(
            session_id, credits_refunded=session.credits_refunded + count
        )

    def add_listener(self, session_id: UUID, listener: ProgressListener) -> bool:
        """Attach a listener; returns False for unknown sessions."""
        session = self.get_session(session_id)
        if session is None:
            return False
        session.listeners.add(listener)
        return True

    def remove_listener(self, session_id: UUID, listener: ProgressListener) -> None:
        """Detach a listener if it is still attached."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.listeners.discard(listener)

    def purge_expired(self) -> int:
        """Drop every expired session and return how many were removed."""
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if self._is_expired(session)
        ]
        for session_id in expired:
            self._sessions.pop(session_id, None)
        return len(expired)

    def _is_expired(self, session: UploadSession) -> bool:
        if session.completed_at is None:
            return False
        retention = timedelta(seconds=self.retention_seconds)
        return self.clock() >= session.completed_at + retention
