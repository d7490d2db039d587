import asyncio
import json
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .config import AppConfig, resolve_storage_paths
from .db import now_stamp
from .exceptions import (
    InvalidTokenError,
    KiroMemoryError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .logging_config import get_logger
from .memory import NOTIFY_EVENTS, MemoryManager
from .models import SearchFilters
from .scoring import estimate_tokens
from .validation import clamp_int, validate_project

logger = get_logger("server")

MAX_SSE_CLIENTS = 50

_manager: Optional[MemoryManager] = None
_sse_clients = 0


def get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        _manager = MemoryManager()
    return _manager


def set_manager(manager: Optional[MemoryManager]) -> None:
    """Install the manager the worker serves (tests, embedding hosts)."""
    global _manager
    _manager = manager


def _ensure_worker_token(config: AppConfig) -> str:
    """Use the configured token or mint one and publish it for local hooks."""
    if config.server.worker_token:
        return config.server.worker_token
    token = secrets.token_hex(32)
    storage = resolve_storage_paths(config)
    token_file = Path(storage.data_dir) / "worker.token"
    token_file.parent.mkdir(parents=True, exist_ok=True)
    token_file.write_text(token, encoding="utf-8")
    try:
        os.chmod(token_file, 0o600)
    except OSError as e:
        logger.warning(f"Could not restrict permissions on {token_file}: {e}")
    config.server.worker_token = token
    logger.info(f"Generated worker token at {token_file}")
    return token


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager = get_manager()
    await manager.initialize()
    _ensure_worker_token(manager.config)
    yield
    if _manager:
        await _manager.close()


app = FastAPI(title="kiro-memory worker", lifespan=lifespan)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": exc.message, "field": exc.field},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"detail": exc.message, "type": exc.resource_type, "id": exc.resource_id},
    )


@app.exception_handler(InvalidTokenError)
async def invalid_token_handler(request: Request, exc: InvalidTokenError):
    return JSONResponse(
        status_code=401,
        content={"detail": exc.message},
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Database error: {exc.message}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Database error occurred"},
    )


@app.exception_handler(KiroMemoryError)
async def kiro_memory_error_handler(request: Request, exc: KiroMemoryError):
    logger.error(f"Application error: {exc.message}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": exc.message},
    )


_allowed_origins = os.environ.get(
    "KIRO_MEMORY_ALLOWED_ORIGINS", "http://localhost:3001,http://127.0.0.1:3001"
).split(",")
_allowed_origins = [o.strip() for o in _allowed_origins if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)


# =============================================================================
# Request bodies
# =============================================================================

class ObservationInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project: str
    title: str
    type: str = "manual"
    content: Optional[str] = None
    concepts: Optional[List[str]] = None
    files: Optional[List[str]] = None
    memory_session_id: Optional[str] = Field(default=None, alias="memorySessionId")


class SummaryInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project: str
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    request: Optional[str] = None
    investigated: Optional[str] = None
    learned: Optional[str] = None
    completed: Optional[str] = None
    next_steps: Optional[str] = Field(default=None, alias="nextSteps")
    notes: Optional[str] = None


class ObservationIds(BaseModel):
    ids: List[Any]


class BackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_size: Optional[Any] = Field(default=None, alias="batchSize")


class AliasUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: Optional[Any] = Field(default=None, alias="displayName")


class ConsolidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project: Optional[str] = None
    min_group_size: Optional[int] = Field(default=None, alias="minGroupSize")
    dry_run: bool = Field(default=False, alias="dryRun")


class StalenessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project: Optional[str] = None
    base_dir: Optional[str] = Field(default=None, alias="baseDir")
    reset: bool = False


class NotifyRequest(BaseModel):
    event: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


def _check_worker_token(request: Request) -> None:
    expected = get_manager().config.server.worker_token
    token = request.headers.get("x-worker-token", "")
    if not expected or not token or not secrets.compare_digest(token, expected):
        raise InvalidTokenError()


def _require_query(name: str, value: Optional[str]) -> str:
    if not value or not value.strip():
        raise ValidationError(name, f'Query parameter "{name}" is required')
    return value


# =============================================================================
# Routes
# =============================================================================

@app.get("/health")
def health():
    return {"status": "ok", "timestamp": now_stamp()[1], "version": __version__}


@app.post("/api/notify")
def notify(payload: NotifyRequest, request: Request):
    _check_worker_token(request)
    get_manager().publish_event(payload.event or "", payload.data or {})
    return {"ok": True}


@app.get("/api/context/{project}")
async def get_context(project: str):
    return await get_manager().get_context(project)


@app.post("/api/observations")
async def create_observation(obs: ObservationInput):
    obs_id = await get_manager().create_observation(
        project=obs.project,
        obs_type=obs.type,
        title=obs.title,
        content=obs.content,
        concepts=obs.concepts,
        files=obs.files,
        memory_session_id=obs.memory_session_id,
    )
    return {"id": obs_id, "success": True}


@app.get("/api/observations/{obs_id}")
async def get_observation(obs_id: int):
    obs = await get_manager().get_observation(obs_id)
    if not obs:
        raise NotFoundError("observation", str(obs_id))
    return obs


@app.post("/api/observations/batch")
async def get_observations_batch(payload: ObservationIds):
    return {"observations": await get_manager().get_by_ids(payload.ids)}


@app.post("/api/summaries")
async def create_summary(summary: SummaryInput):
    summary_id = await get_manager().create_summary(
        project=summary.project,
        session_id=summary.session_id,
        request=summary.request,
        investigated=summary.investigated,
        learned=summary.learned,
        completed=summary.completed,
        next_steps=summary.next_steps,
        notes=summary.notes,
    )
    return {"id": summary_id, "success": True}


@app.get("/api/search")
async def search(
    q: Optional[str] = None,
    project: Optional[str] = None,
    type: Optional[str] = None,
    limit: Optional[str] = None,
):
    query = _require_query("q", q)
    filters = SearchFilters(
        project=project or None,
        type=type or None,
        limit=clamp_int(limit, 20, 1, 100),
    )
    return await get_manager().search(query, filters)


@app.get("/api/hybrid-search")
async def hybrid_search(
    q: Optional[str] = None,
    project: Optional[str] = None,
    limit: Optional[str] = None,
):
    query = _require_query("q", q)
    manager = get_manager()
    results = await manager.hybrid_search(
        query,
        project=project or None,
        limit=clamp_int(limit, manager.config.search.default_limit, 1, manager.config.search.max_limit),
    )
    return {"results": results, "count": len(results)}


@app.get("/api/timeline")
async def timeline(
    anchor: Optional[str] = None,
    depth_before: Optional[str] = None,
    depth_after: Optional[str] = None,
):
    _require_query("anchor", anchor)
    anchor_id = clamp_int(anchor, 0, 1, 2**53 - 1)
    if anchor_id == 0:
        raise ValidationError("anchor", 'Invalid "anchor" (must be positive integer)', value=anchor)
    entries = await get_manager().timeline(
        anchor_id,
        clamp_int(depth_before, 5, 1, 50),
        clamp_int(depth_after, 5, 1, 50),
    )
    return {"timeline": entries}


@app.get("/api/stats/{project}")
async def project_stats(project: str):
    return await get_manager().project_stats(project)


@app.post("/api/embeddings/backfill")
async def backfill_embeddings(payload: Optional[BackfillRequest] = None):
    batch_size = payload.batch_size if payload else None
    generated = await get_manager().backfill_embeddings(batch_size)
    return {"success": True, "generated": generated}


@app.get("/api/embeddings/stats")
async def embedding_stats():
    return await get_manager().embedding_stats()


@app.get("/api/observations")
async def list_observations(
    response: Response,
    offset: Optional[str] = None,
    limit: Optional[str] = None,
    project: Optional[str] = None,
):
    items, total = await get_manager().list_observations(
        clamp_int(offset, 0, 0, 1_000_000), clamp_int(limit, 50, 1, 200), project or None
    )
    response.headers["X-Total-Count"] = str(total)
    return items


@app.get("/api/summaries")
async def list_summaries(
    response: Response,
    offset: Optional[str] = None,
    limit: Optional[str] = None,
    project: Optional[str] = None,
):
    items, total = await get_manager().list_summaries(
        clamp_int(offset, 0, 0, 1_000_000), clamp_int(limit, 20, 1, 200), project or None
    )
    response.headers["X-Total-Count"] = str(total)
    return items


@app.get("/api/prompts")
async def list_prompts(
    response: Response,
    offset: Optional[str] = None,
    limit: Optional[str] = None,
    project: Optional[str] = None,
):
    items, total = await get_manager().list_prompts(
        clamp_int(offset, 0, 0, 1_000_000), clamp_int(limit, 20, 1, 200), project or None
    )
    response.headers["X-Total-Count"] = str(total)
    return items


@app.get("/api/projects")
async def list_projects():
    return await get_manager().list_projects()


@app.get("/api/project-aliases")
async def list_project_aliases():
    return await get_manager().list_project_aliases()


@app.put("/api/project-aliases/{project}")
async def update_project_alias(project: str, payload: AliasUpdate):
    display_name = await get_manager().set_project_alias(project, payload.display_name)
    return {"ok": True, "project_name": project, "display_name": display_name}


@app.post("/api/maintenance/consolidate")
async def consolidate(payload: ConsolidateRequest):
    return await get_manager().consolidate(
        project=payload.project,
        min_group_size=payload.min_group_size,
        dry_run=payload.dry_run,
    )


@app.post("/api/maintenance/staleness")
async def detect_stale(payload: StalenessRequest):
    return await get_manager().detect_stale(
        project=payload.project,
        base_dir=payload.base_dir,
        reset=payload.reset,
    )


@app.get("/events")
async def stream_events(request: Request, project: Optional[str] = None):
    if project:
        validate_project(project)
    if _sse_clients >= MAX_SSE_CLIENTS:
        return JSONResponse(status_code=503, content={"detail": "Too many SSE connections"})

    manager = get_manager()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

    def _listener(event: str, data: Dict[str, Any]) -> None:
        if project and data.get("project") != project:
            return
        payload = dict(data)
        if "title" in payload:
            payload["token_estimate"] = estimate_tokens(payload["title"])
        loop.call_soon_threadsafe(queue.put_nowait, {"event": event, "data": payload})

    async def _event_stream():
        global _sse_clients
        # Slot and listener are only taken once the body starts streaming
        _sse_clients += 1
        remove_listener = manager.add_listener(_listener)
        try:
            yield f"event: connected\ndata: {json.dumps({'timestamp': now_stamp()[1]})}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {item['event']}\ndata: {json.dumps(item['data'], ensure_ascii=True)}\n\n"
        finally:
            remove_listener()
            _sse_clients -= 1

    return StreamingResponse(_event_stream(), media_type="text/event-stream")


def start_server(host: str = "127.0.0.1", port: int = 3001):
    uvicorn.run(app, host=host, port=port)
