"""Supabase-backed credit ledger repository."""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from postgrest.exceptions import APIError
from supabase import Client

from race_photos.domain.credits import LedgerEntry, LedgerEntryType
from race_photos.domain.errors import InsufficientCreditsError
from race_photos.services.credits import CreditRepository

_INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


@dataclass
class SupabaseCreditRepository(CreditRepository):
    """Ledger writes go through the apply_credit_entry database function.

    The function locks the user's balance row, so concurrent batches of
    the same user are serialized by Postgres.
    """

    client: Client

    def get_balance(self, user_id: UUID) -> int:
        """Return the stored balance, zero when the user has none yet."""
        response = (
            self.client.table("user_credits")
            .select("balance")
            .eq("user_id", str(user_id))
            .limit(1)
            .execute()
        )
        if not response.data:
            return 0
        return int(response.data[0]["balance"])

    def apply_entry(  # noqa: PLR0913
        self,
        user_id: UUID,
        entry_type: LedgerEntryType,
        amount: int,
        reason: str,
        photo_id: UUID | None = None,
        event_id: UUID | None = None,
    ) -> LedgerEntry | None:
        """Apply a balance change through the database function."""
        params = {
            "p_user_id": str(user_id),
            "p_entry_type": entry_type.value,
            "p_amount": amount,
            "p_reason": reason,
            "p_photo_id": str(photo_id) if photo_id else None,
            "p_event_id": str(event_id) if event_id else None,
        }
        try:
            response = self.client.rpc("apply_credit_entry", params).execute()
        except APIError as exc:
            if _INSUFFICIENT_CREDITS in str(exc.message):
                available = int(exc.details) if str(exc.details).isdigit() else 0
                raise InsufficientCreditsError(user_id, -amount, available) from exc
            raise
        if not response.data:
            return None
        row = response.data[0] if isinstance(response.data, list) else response.data
        return _to_entry(row)

    def list_entries(self, user_id: UUID, limit: int) -> list[LedgerEntry]:
        """Return recent entries, newest first."""
        response = (
            self.client.table("credit_ledger")
            .select("*")
            .eq("user_id", str(user_id))
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [_to_entry(row) for row in response.data or []]


def _to_entry(row: dict[str, object]) -> LedgerEntry:
    photo_id = row.get("photo_id")
    event_id = row.get("event_id")
    return LedgerEntry(
        id=UUID(str(row["id"])),
        user_id=UUID(str(row["user_id"])),
        entry_type=LedgerEntryType(str(row["entry_type"])),
        amount=int(row["amount"]),
        balance_before=int(row["balance_before"]),
        balance_after=int(row["balance_after"]),
        reason=str(row.get("reason") or ""),
        created_at=datetime.fromisoformat(str(row["created_at"])),
        photo_id=UUID(str(photo_id)) if photo_id else None,
        event_id=UUID(str(event_id)) if event_id else None,
    )
