"""FastAPI application factory."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import PurePath
from uuid import UUID

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from race_photos.api.admin import router as admin_router
from race_photos.app_logging import configure_logging
from race_photos.containers import AppContainer
from race_photos.domain.photos import PUBLIC_RENDITIONS, rendition_kind
from race_photos.services.sessions import UploadSessionStore

_MEDIA_TYPES = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging()
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await app.state.container.vision_client.ensure_collection()
        except Exception:
            logger.exception("Failed to prepare face collection")
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Simple health check endpoint."""
        return {"status": "ok"}

    @app.get("/uploads/{session_id}/progress")
    async def upload_progress(session_id: UUID, request: Request) -> StreamingResponse:
        """Stream upload session progress as server-sent events."""
        state_container: AppContainer = request.app.state.container
        if state_container.session_store.get_session(session_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        return StreamingResponse(
            _progress_events(
                state_container.session_store,
                session_id,
                state_container.settings.pipeline.progress_stream_grace_seconds,
            ),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/media/{key:path}")
    async def media(key: str, request: Request) -> StreamingResponse:
        """Stream a public rendition from object storage."""
        state_container: AppContainer = request.app.state.container
        if rendition_kind(key) not in PUBLIC_RENDITIONS:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        chunks = state_container.object_store.get(key)
        try:
            first = await anext(chunks)
        except StopAsyncIteration:
            first = b""
        except Exception:
            logger.exception("Failed to read rendition", extra={"key": key})
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND) from None

        async def body() -> AsyncIterator[bytes]:
            yield first
            async for chunk in chunks:
                yield chunk

        media_type = _MEDIA_TYPES.get(
            PurePath(key).suffix.lower(), "application/octet-stream"
        )
        return StreamingResponse(
            body(),
            media_type=media_type,
            headers={"Cache-Control": "public, max-age=86400"},
        )

    return app


async def _progress_events(
    sessions: UploadSessionStore, session_id: UUID, grace_seconds: float
) -> AsyncIterator[str]:
    """Yield SSE frames until the grace period after completion runs out."""
    messages: asyncio.Queue[str] = asyncio.Queue()
    listener = messages.put_nowait
    if not sessions.add_listener(session_id, listener):
        return
    loop = asyncio.get_running_loop()
    deadline: float | None = None
    try:
        session = sessions.get_session(session_id)
        if session is None:
            return
        snapshot = session.snapshot()
        yield f"data: {json.dumps(snapshot)}\n\n"
        if snapshot["complete"]:
            deadline = loop.time() + grace_seconds
        while True:
            timeout = None if deadline is None else deadline - loop.time()
            if timeout is not None and timeout <= 0:
                break
            try:
                message = await asyncio.wait_for(messages.get(), timeout)
            except TimeoutError:
                break
            yield f"data: {message}\n\n"
            if deadline is None and json.loads(message).get("complete"):
                deadline = loop.time() + grace_seconds
    finally:
        sessions.remove_listener(session_id, listener)
