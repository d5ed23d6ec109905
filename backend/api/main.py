import uuid
import json
import logging
import secrets

from fastapi import FastAPI, Depends, HTTPException, status, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text

import redis.asyncio as redis

from common.config import settings
from common.conflicts import list_conflicts, resolve_conflict
from common.integrations import (
    connect_todoist, connected_user_ids, disconnect_todoist, get_mapping_data, get_sync_status,
    rotate_integration
)
from common.mapping import MappingEntry, create_mapping_list, set_label_mappings, set_project_mappings
from common.models import ExternalSyncConflict
from common.results import (
    ActionResult, ALREADY_RESOLVED, NOT_FOUND, RECONNECT_REQUIRED, REMOTE_ERROR, SYNC_IN_PROGRESS,
    UNSUPPORTED_ENTITY, VALIDATION_ERROR
)
from common.sync import run_sync_pass
from common.todoist import create_todoist_client
from api.schemas import (
    TodoistConnectRequest, MappingSetRequest, MappingListCreateRequest, ConflictResolveRequest,
    ConflictOut, ConflictListResponse, TodoistSyncStatusResponse, SyncRunResponse, EnqueueAllResponse
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Todoist Sync API")

STATUS_BY_CODE = {
    VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ALREADY_RESOLVED: status.HTTP_409_CONFLICT,
    UNSUPPORTED_ENTITY: status.HTTP_409_CONFLICT,
    RECONNECT_REQUIRED: status.HTTP_409_CONFLICT,
    SYNC_IN_PROGRESS: status.HTTP_409_CONFLICT,
    REMOTE_ERROR: status.HTTP_502_BAD_GATEWAY,
}

# DB Setup
engine = create_async_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def get_authenticated_user(request: Request):
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ")[1]
    token_map = settings.token_user_map
    if token_map:
        mapped_user = token_map.get(token)
        if mapped_user:
            return mapped_user
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return settings.APP_DEFAULT_USER_ID

async def enforce_rate_limit(user_id: str, endpoint_class: str, limit: int):
    key = f"rate_limit:{endpoint_class}:{user_id}"
    current = await redis_client.incr(key)
    if current == 1:
        await redis_client.expire(key, settings.RATE_LIMIT_WINDOW_SECONDS)
    if current > limit:
        ttl = await redis_client.ttl(key)
        if ttl is None or ttl < 0:
            ttl = settings.RATE_LIMIT_WINDOW_SECONDS
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded for {endpoint_class}. Retry in {ttl}s.",
        )

def _result_response(result: ActionResult):
    if result.success:
        return result.to_dict()
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(result.code, status.HTTP_400_BAD_REQUEST),
        content=result.to_dict(),
    )

def _mapping_entries(payload: MappingSetRequest):
    return [MappingEntry(external_id=item.external_id, local_id=item.local_id) for item in payload.mappings]

def _conflict_out(conflict: ExternalSyncConflict) -> ConflictOut:
    return ConflictOut(
        id=conflict.id,
        entity_type=conflict.entity_type.value,
        local_id=conflict.local_id,
        external_id=conflict.external_id,
        conflict_type=conflict.conflict_type,
        local_payload=conflict.local_payload,
        external_payload=conflict.external_payload,
        created_at=conflict.created_at.isoformat() if conflict.created_at else None,
    )

async def _enqueue_todoist_sync_job(user_id: str) -> str:
    job_id = str(uuid.uuid4())
    await redis_client.rpush(
        "default_queue",
        json.dumps({"job_id": job_id, "topic": "sync.todoist", "payload": {"user_id": user_id}}),
    )
    return job_id

# --- Health ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

# --- Todoist Integration ---

@app.post("/v1/integrations/todoist/connect")
async def connect_integration(payload: TodoistConnectRequest, user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    result = await connect_todoist(db, user_id, payload.token, client_factory=create_todoist_client)
    return _result_response(result)


@app.delete("/v1/integrations/todoist")
async def disconnect_integration(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    return _result_response(await disconnect_todoist(db, user_id))


@app.post("/v1/integrations/todoist/rotate")
async def rotate_integration_tokens(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    return _result_response(await rotate_integration(db, user_id))


@app.post("/v1/integrations/todoist/sync", response_model=SyncRunResponse)
async def sync_now(request: Request, user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    await enforce_rate_limit(user_id, "todoist_sync", settings.RATE_LIMIT_SYNC_PER_WINDOW)
    result = await run_sync_pass(db, user_id, client_factory=create_todoist_client, request_id=request.state.request_id)
    if result.status == "error" and result.code is None:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=result.to_dict())
    if result.code is not None:
        return JSONResponse(status_code=STATUS_BY_CODE[result.code], content=result.to_dict())
    return SyncRunResponse(**result.to_dict())


@app.get("/v1/integrations/todoist/status", response_model=TodoistSyncStatusResponse)
async def todoist_status(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    return TodoistSyncStatusResponse(**(await get_sync_status(db, user_id)))


@app.get("/v1/integrations/todoist/mappings")
async def todoist_mapping_data(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    result = await get_mapping_data(db, user_id, client_factory=create_todoist_client)
    return _result_response(result)


@app.put("/v1/integrations/todoist/mappings/projects")
async def put_project_mappings(payload: MappingSetRequest, user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    return _result_response(await set_project_mappings(db, user_id, _mapping_entries(payload)))


@app.put("/v1/integrations/todoist/mappings/labels")
async def put_label_mappings(payload: MappingSetRequest, user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    return _result_response(await set_label_mappings(db, user_id, _mapping_entries(payload)))


@app.post("/v1/integrations/todoist/mapping_lists")
async def post_mapping_list(payload: MappingListCreateRequest, user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    result = await create_mapping_list(db, user_id, payload.name)
    if not result.success:
        return _result_response(result)
    task_list = result.data["list"]
    return {"success": True, "list": {"id": task_list.id, "name": task_list.name, "slug": task_list.slug}}


@app.get("/v1/integrations/todoist/conflicts", response_model=ConflictListResponse)
async def get_conflicts(user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    conflicts = await list_conflicts(db, user_id)
    return ConflictListResponse(conflicts=[_conflict_out(conflict) for conflict in conflicts])


@app.post("/v1/integrations/todoist/conflicts/{conflict_id}/resolve")
async def post_conflict_resolution(conflict_id: int, payload: ConflictResolveRequest, user_id: str = Depends(get_authenticated_user), db: AsyncSession = Depends(get_db)):
    result = await resolve_conflict(db, user_id, conflict_id, payload.resolution, client_factory=create_todoist_client)
    return _result_response(result)

# --- Scheduled Sync ---

@app.post("/v1/sync/todoist/enqueue_all", response_model=EnqueueAllResponse)
async def enqueue_all_todoist_syncs(request: Request, db: AsyncSession = Depends(get_db)):
    expected = settings.TODOIST_SYNC_SECRET or ""
    provided = request.headers.get("X-Cron-Secret") or ""
    if not expected or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
    job_ids = []
    for user_id in await connected_user_ids(db):
        job_ids.append(await _enqueue_todoist_sync_job(user_id))
    logger.info(f"Enqueued {len(job_ids)} scheduled Todoist syncs")
    return EnqueueAllResponse(status="ok", enqueued=len(job_ids), job_ids=job_ids)
