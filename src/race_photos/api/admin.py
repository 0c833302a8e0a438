"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from race_photos.domain.errors import InsufficientCreditsError

if TYPE_CHECKING:
    from race_photos.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


class CreditAdjustmentRequest(BaseModel):
    """Manual balance correction."""

    amount: int
    reason: str = Field(min_length=1)


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/queue", dependencies=[Depends(require_admin)])
async def queue_stats(request: Request) -> dict[str, int]:
    """Return running and queued processing units."""
    container: AppContainer = request.app.state.container
    return asdict(container.task_queue.stats)


@router.get("/events/{event_id}/clustering", dependencies=[Depends(require_admin)])
async def clustering_status(event_id: UUID, request: Request) -> dict[str, object]:
    """Return identification counts and clustering state for an event."""
    container: AppContainer = request.app.state.container
    current = container.clustering_scheduler.status(event_id)
    return {**asdict(current), "needs_clustering": current.needs_clustering}


@router.post("/events/{event_id}/clustering", dependencies=[Depends(require_admin)])
async def run_clustering(event_id: UUID, request: Request) -> dict[str, object]:
    """Run clustering for an event right away."""
    container: AppContainer = request.app.state.container
    stats = await container.clustering_scheduler.run_now(event_id)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Clustering is already running for this event",
        )
    return asdict(stats)


@router.post("/events/{event_id}/reprocess", dependencies=[Depends(require_admin)])
async def reprocess_event(
    event_id: UUID, request: Request, reindex_faces: bool = False
) -> dict[str, int]:
    """Queue every stored photo of an event for another enrichment pass."""
    container: AppContainer = request.app.state.container
    count = await container.ingestion.reprocess_event(event_id, reindex_faces)
    return {"photos_enqueued": count}


@router.get("/users/{user_id}/credits", dependencies=[Depends(require_admin)])
async def user_credits(
    user_id: UUID, request: Request, limit: int = 20
) -> dict[str, object]:
    """Return the balance and recent ledger entries of a user."""
    container: AppContainer = request.app.state.container
    credit_service = container.credit_service
    return {
        "balance": credit_service.balance(user_id),
        "entries": [asdict(entry) for entry in credit_service.history(user_id, limit)],
    }


@router.post("/users/{user_id}/credits", dependencies=[Depends(require_admin)])
async def adjust_credits(
    user_id: UUID, payload: CreditAdjustmentRequest, request: Request
) -> dict[str, object]:
    """Apply a manual credit adjustment."""
    container: AppContainer = request.app.state.container
    try:
        entry = container.credit_service.adjust(
            user_id, payload.amount, payload.reason
        )
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc)
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc
    return asdict(entry)
