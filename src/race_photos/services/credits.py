"""Credit ledger operations."""

from dataclasses import dataclass
from typing import Protocol
from uuid import UUID

from race_photos.domain.credits import LedgerEntry, LedgerEntryType


class CreditRepository(Protocol):
    """Persistence interface for balances and ledger entries."""

    def get_balance(self, user_id: UUID) -> int:
        """Return the current balance of a user."""

    def apply_entry(  # noqa: PLR0913
        self,
        user_id: UUID,
        entry_type: LedgerEntryType,
        amount: int,
        reason: str,
        photo_id: UUID | None = None,
        event_id: UUID | None = None,
    ) -> LedgerEntry | None:
        """Atomically change a balance and append the matching entry.

        Raises InsufficientCreditsError when the balance would go negative.
        Returns None when a refund for the same photo already exists.
        """

    def list_entries(self, user_id: UUID, limit: int) -> list[LedgerEntry]:
        """Return the most recent ledger entries of a user."""


@dataclass
class CreditLedgerService:
    """Application service for debits, refunds and manual adjustments.

    Amounts on ledger entries are signed balance changes.
    """

    repository: CreditRepository

    def balance(self, user_id: UUID) -> int:
        """Return the current balance."""
        return self.repository.get_balance(user_id)

    def debit(
        self, user_id: UUID, amount: int, reason: str, event_id: UUID | None = None
    ) -> LedgerEntry:
        """Charge credits, failing with InsufficientCreditsError on overdraft."""
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        entry = self.repository.apply_entry(
            user_id, LedgerEntryType.DEBIT, -amount, reason, event_id=event_id
        )
        if entry is None:
            raise RuntimeError("Failed to record credit debit")
        return entry

    def refund(  # noqa: PLR0913
        self,
        user_id: UUID,
        amount: int,
        reason: str,
        photo_id: UUID | None = None,
        event_id: UUID | None = None,
    ) -> LedgerEntry | None:
        """Return credits; a photo is refunded at most once."""
        if amount <= 0:
            raise ValueError("Refund amount must be positive")
        return self.repository.apply_entry(
            user_id,
            LedgerEntryType.REFUND,
            amount,
            reason,
            photo_id=photo_id,
            event_id=event_id,
        )

    def adjust(self, user_id: UUID, amount: int, reason: str) -> LedgerEntry:
        """Apply a manual signed adjustment."""
        if amount == 0:
            raise ValueError("Adjustment amount must not be zero")
        entry = self.repository.apply_entry(
            user_id, LedgerEntryType.ADMIN_ADJUSTMENT, amount, reason
        )
        if entry is None:
            raise RuntimeError("Failed to record credit adjustment")
        return entry

    def history(self, user_id: UUID, limit: int = 50) -> list[LedgerEntry]:
        """Return recent ledger entries, newest first."""
        return self.repository.list_entries(user_id, limit)
