"""Supabase-backed bib number and start-list repositories."""

from dataclasses import dataclass
from uuid import UUID

from supabase import Client

from race_photos.domain.photos import BibNumberRecord, BibSource, RosterEntry
from race_photos.services.bibs import BibNumberRepository, RosterRepository

_COLUMNS = "photo_id, number, confidence, source"
_IN_FILTER_CHUNK = 200


@dataclass
class SupabaseBibNumberRepository(BibNumberRepository):
    """Supabase implementation for bib numbers."""

    client: Client

    def add_bib_numbers(self, records: list[BibNumberRecord]) -> None:
        """Insert bib numbers."""
        if not records:
            return
        self.client.table("bib_numbers").insert(
            [_to_row(record) for record in records]
        ).execute()

    def replace_bib_numbers(
        self, photo_id: UUID, records: list[BibNumberRecord]
    ) -> None:
        """Replace every bib number of a photo."""
        self.client.table("bib_numbers").delete().eq(
            "photo_id", str(photo_id)
        ).execute()
        self.add_bib_numbers(records)

    def list_for_photos(self, photo_ids: list[UUID]) -> list[BibNumberRecord]:
        """Return bib numbers of the given photos.

        Ids are sent in chunks to keep each request URL bounded.
        """
        records: list[BibNumberRecord] = []
        for start in range(0, len(photo_ids), _IN_FILTER_CHUNK):
            chunk = photo_ids[start : start + _IN_FILTER_CHUNK]
            response = (
                self.client.table("bib_numbers")
                .select(_COLUMNS)
                .in_("photo_id", [str(photo_id) for photo_id in chunk])
                .execute()
            )
            records.extend(_to_record(row) for row in response.data or [])
        return records

    def list_for_event(self, event_id: UUID) -> list[BibNumberRecord]:
        """Return bib numbers of every photo in an event."""
        response = (
            self.client.table("bib_numbers")
            .select(f"{_COLUMNS}, photos!inner(event_id)")
            .eq("photos.event_id", str(event_id))
            .execute()
        )
        return [_to_record(row) for row in response.data or []]


@dataclass
class SupabaseRosterRepository(RosterRepository):
    """Read-only access to imported start lists."""

    client: Client

    def list_entries(self, event_id: UUID) -> list[RosterEntry]:
        """Return the start list of an event."""
        response = (
            self.client.table("start_list_entries")
            .select("*")
            .eq("event_id", str(event_id))
            .execute()
        )
        return [
            RosterEntry(
                event_id=UUID(str(row["event_id"])),
                bib_number=str(row["bib_number"]),
                first_name=str(row.get("first_name") or ""),
                last_name=str(row.get("last_name") or ""),
                email=row.get("email"),
                notified=bool(row.get("notified")),
            )
            for row in response.data or []
        ]


def _to_row(record: BibNumberRecord) -> dict[str, object]:
    return {
        "photo_id": str(record.photo_id),
        "number": record.number,
        "confidence": record.confidence,
        "source": record.source.value,
    }


def _to_record(row: dict[str, object]) -> BibNumberRecord:
    return BibNumberRecord(
        photo_id=UUID(str(row["photo_id"])),
        number=str(row["number"]),
        confidence=float(row.get("confidence") or 0.0),
        source=BibSource(str(row["source"])),
    )
