import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from cardify.application.config import resolve_config
from cardify.application.factory import AppContext, open_context
from cardify.consts import VERSION
from cardify.domain.constants import MAX_REVIEW_LIMIT
from cardify.domain.errors import CardifyError, NotFoundError, ValidationError
from cardify.domain.models import format_timestamp

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cardify.server")


async def _default_context() -> AppContext:
    return await open_context(resolve_config())


def _http_error(e: CardifyError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    logger.error(f"Request failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class ReviewRequest(BaseModel):
    quality: int = Field(strict=True)


class ConnectivityRequest(BaseModel):
    online: bool


class SyncStatusResponse(BaseModel):
    last_sync_at: str | None
    pending: int
    dead_letters: int
    stale: bool
    suspended: bool
    running: bool


def create_app(
    context_factory: Callable[[], Awaitable[AppContext]] = _default_context,
    start_sync: bool = True,
) -> FastAPI:
    """Build the API. The lifespan owns the store and the background sync loop."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"cardify server v{VERSION} starting up...")
        ctx = await context_factory()
        app.state.ctx = ctx
        if start_sync:
            await ctx.runner.start()
        try:
            yield
        finally:
            # Shutdown
            logger.info("cardify server shutting down...")
            await ctx.close()

    app = FastAPI(
        title="cardify server",
        description="Local study API with background sync.",
        version=VERSION,
        lifespan=lifespan,
    )
    start_time = time.time()

    def _ctx(request: Request) -> AppContext:
        return request.app.state.ctx

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """
        Simple health check to verify server is reachable.
        """
        return HealthResponse(
            status="ok", version=VERSION, uptime_seconds=time.time() - start_time
        )

    @app.get("/version")
    async def get_version():
        return {"version": VERSION}

    @app.post("/cards/{card_id}/review")
    async def review_card(card_id: str, req: ReviewRequest, request: Request) -> dict[str, Any]:
        try:
            state = await _ctx(request).service.review_card(card_id, req.quality)
        except CardifyError as e:
            raise _http_error(e) from e
        return state.to_payload()

    @app.get("/decks")
    async def list_decks(request: Request) -> list[dict[str, Any]]:
        try:
            summaries = await _ctx(request).service.list_decks()
        except CardifyError as e:
            raise _http_error(e) from e
        return [
            {**s.deck.to_payload(), "cardCount": s.card_count, "dueCount": s.due_count}
            for s in summaries
        ]

    @app.get("/decks/{deck_id}/due")
    async def due_cards(
        deck_id: str,
        request: Request,
        limit: int | None = None,
        shuffle: bool = False,
    ) -> list[dict[str, Any]]:
        if limit is not None and not 1 <= limit <= MAX_REVIEW_LIMIT:
            raise HTTPException(
                status_code=400, detail=f"limit must be between 1 and {MAX_REVIEW_LIMIT}"
            )
        try:
            cards = await _ctx(request).service.get_due_cards(
                deck_id, limit=limit, shuffle=shuffle
            )
        except CardifyError as e:
            raise _http_error(e) from e
        return [card.to_payload() for card in cards]

    @app.get("/stats")
    async def stats(request: Request) -> dict[str, int]:
        try:
            snapshot = await _ctx(request).service.get_stats_snapshot()
        except CardifyError as e:
            raise _http_error(e) from e
        return {
            "dueToday": snapshot.due_today,
            "dueTomorrow": snapshot.due_tomorrow,
            "dueThisWeek": snapshot.due_this_week,
            "reviewedToday": snapshot.reviewed_today,
            "totalCards": snapshot.total_cards,
        }

    @app.post("/sync", status_code=202)
    async def trigger_sync(request: Request):
        """
        Request a sync cycle. Returns immediately; see /sync/status.
        """
        _ctx(request).service.trigger_sync()
        return {"status": "scheduled"}

    @app.get("/sync/status", response_model=SyncStatusResponse)
    async def sync_status(request: Request):
        try:
            info = await _ctx(request).service.sync_status()
        except CardifyError as e:
            raise _http_error(e) from e
        return SyncStatusResponse(
            last_sync_at=format_timestamp(info.last_sync_at),
            pending=info.pending,
            dead_letters=len(info.dead_letters),
            stale=info.stale,
            suspended=info.suspended,
            running=info.running,
        )

    @app.post("/connectivity")
    async def set_connectivity(req: ConnectivityRequest, request: Request):
        """Host platforms report network changes here; regaining it kicks a sync."""
        _ctx(request).connectivity.set_online(req.online)
        return {"online": req.online}

    return app


app = create_app()
