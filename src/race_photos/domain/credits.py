"""Domain models for the credit ledger."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from uuid import UUID


class LedgerEntryType(StrEnum):
    """Kinds of balance movements."""

    DEBIT = "debit"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin-adjustment"


@dataclass(frozen=True)
class LedgerEntry:
    """An immutable credit ledger entry; amount is the signed balance change."""

    id: UUID
    user_id: UUID
    entry_type: LedgerEntryType
    amount: int
    balance_before: int
    balance_after: int
    reason: str
    created_at: datetime
    photo_id: UUID | None = None
    event_id: UUID | None = None
