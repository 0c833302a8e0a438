"""Errors raised by the ingestion pipeline."""

from uuid import UUID


class PipelineError(Exception):
    """Base class for pipeline failures."""


class DecodeError(PipelineError):
    """Raised when every decode strategy failed for an upload."""


class ExternalServiceError(PipelineError):
    """Raised when a remote vision or storage capability fails."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class InsufficientCreditsError(PipelineError):
    """Raised when a debit would make a user's balance negative."""

    def __init__(self, user_id: UUID, required: int, available: int) -> None:
        super().__init__(
            f"User {user_id} needs {required} credits but has {available}"
        )
        self.user_id = user_id
        self.required = required
        self.available = available
