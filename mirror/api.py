"""FastAPI surface for stash-mirror.

Exposes:
- GET  /api/ready
- GET  /api/sync/status
- POST /api/sync/trigger
- POST /api/library/{entity_type}/find
- POST /api/library/{entity_type}/ids
- PUT  /api/overlay/rating
- POST /api/overlay/play
- POST /api/hidden
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import MirrorConfig
from .errors import NotReadyError, QueryError
from .library import Library
from .logging_config import get_logger
from .query import QueryOptions, QueryResult, QuerySpec
from .query.filters import ENTITY_TYPE
from .scheduler import SyncScheduler

logger = get_logger("api")


class SyncTrigger(BaseModel):
    instance_id: Optional[str] = None
    entity_type: Optional[ENTITY_TYPE] = None
    kind: Literal["full", "incremental", "smart"] = "smart"


class IdsRequest(BaseModel):
    user_id: str
    ids: list[str]
    instance_id: Optional[str] = None
    apply_exclusions: bool = True


class RatingUpdate(BaseModel):
    user_id: str
    entity_type: ENTITY_TYPE
    entity_id: str
    instance_id: str
    rating100: Optional[int] = Field(default=None, ge=0, le=100)
    favorite: Optional[bool] = None


class PlayRecord(BaseModel):
    user_id: str
    instance_id: str
    scene_id: str
    duration: float = Field(default=0.0, ge=0)
    resume_time: Optional[float] = Field(default=None, ge=0)
    count_play: bool = True
    o: bool = False


class HiddenUpdate(BaseModel):
    user_id: str
    entity_type: ENTITY_TYPE
    entity_id: str
    instance_id: str = ""
    hidden: bool = True


def create_app(library: Library, scheduler: Optional[SyncScheduler] = None) -> FastAPI:
    """Build the app around one library. The scheduler, if any, lives as long as the app."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(title="stash-mirror", lifespan=_lifespan)
    app.state.library = library

    @app.exception_handler(QueryError)
    async def _query_error(request: Request, exc: QueryError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotReadyError)
    async def _not_ready(request: Request, exc: NotReadyError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.get("/api/ready")
    def ready() -> dict:
        return {"ready": library.is_ready()}

    @app.get("/api/sync/status")
    def sync_status(instance_id: Optional[str] = None, entity_type: Optional[ENTITY_TYPE] = None) -> list[dict]:
        return [s.to_dict() for s in library.get_sync_status(instance_id, entity_type)]

    @app.post("/api/sync/trigger", status_code=202)
    def sync_trigger(body: SyncTrigger, background_tasks: BackgroundTasks) -> dict:
        """Start a sync after the response is sent; progress shows in /api/sync/status."""
        state = {"instance_id": body.instance_id, "entity_type": body.entity_type, "kind": body.kind}
        # Raises ValueError (400) for an unknown instance
        if library.orchestrator.all_running(body.instance_id, body.entity_type):
            return {"status": "coalesced", **state}
        background_tasks.add_task(library.trigger_sync, body.instance_id, body.entity_type, body.kind)
        return {"status": "started", **state}

    @app.post("/api/library/{entity_type}/find")
    def find(entity_type: ENTITY_TYPE, body: QueryOptions) -> QueryResult:
        spec = QuerySpec(entity_type=entity_type, **body.model_dump())
        return library.execute(spec)

    @app.post("/api/library/{entity_type}/ids")
    def find_by_ids(entity_type: ENTITY_TYPE, body: IdsRequest) -> dict:
        rows = library.get_by_ids(
            entity_type, body.ids, body.user_id, body.instance_id, body.apply_exclusions
        )
        return {"rows": rows}

    @app.put("/api/overlay/rating")
    def rate(body: RatingUpdate) -> dict:
        return library.actions.set_rating(
            body.user_id,
            body.entity_type,
            body.entity_id,
            body.instance_id,
            rating100=body.rating100,
            favorite=body.favorite,
        )

    @app.post("/api/overlay/play")
    def play(body: PlayRecord) -> dict:
        result = library.actions.record_play(
            body.user_id,
            body.instance_id,
            body.scene_id,
            duration=body.duration,
            resume_time=body.resume_time,
            count_play=body.count_play,
        )
        if body.o:
            result["o_count"] = library.actions.increment_o(body.user_id, body.instance_id, body.scene_id)
        return result

    @app.post("/api/hidden")
    def hide(body: HiddenUpdate) -> dict:
        if body.hidden:
            count = library.actions.hide_entity(
                body.user_id, body.entity_type, body.entity_id, body.instance_id
            )
        else:
            count = library.actions.unhide_entity(
                body.user_id, body.entity_type, body.entity_id, body.instance_id
            )
        return {"excluded": count}

    return app


def run_server(
    config: MirrorConfig,
    library: Library,
    host: Optional[str] = None,
    port: Optional[int] = None,
    scheduler: Optional[SyncScheduler] = None,
) -> None:
    """Run the FastAPI app with Uvicorn."""
    import uvicorn

    effective_host = host or config.server.host
    effective_port = port or config.server.port
    app = create_app(library, scheduler)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logger.info(f"API available at: http://{effective_host}:{effective_port}/api/")
    uvicorn.run(
        app,
        host=effective_host,
        port=effective_port,
        log_level="info",
        log_config=None,
    )
