from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from shelfsync.aims_client import AimsClient
from shelfsync.config import Settings, get_settings
from shelfsync.db import Database, isoformat, now_utc
from shelfsync.errors import NotFoundError, PermissionDeniedError, SyncError, ValidationError
from shelfsync.models import (
    JOB_QUEUED,
    Space,
    Store,
    StoreMembership,
    SyncJob,
    SyncQueueItem,
    User,
)
from shelfsync.permissions import (
    Action,
    Resource,
    Role,
    can,
    parse_role,
    permitted_store_ids,
    roles_from_memberships,
)
from shelfsync.reconcile import ENTITY_MODELS, ReconciliationEngine
from shelfsync.scheduler import SyncScheduler
from shelfsync.status import overall_status, store_status
from shelfsync.sync_queue import QueuePolicy, SyncQueue

logger = logging.getLogger(__name__)

EntityName = Literal["spaces", "people", "conference"]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    database = Database(settings.database_url)
    if settings.create_tables:
        database.create_all()
    client = AimsClient.from_settings(settings)
    engine = ReconciliationEngine(client, SyncQueue(QueuePolicy.from_settings(settings)))
    app.state.database = database
    app.state.engine = engine
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = SyncScheduler(
            database,
            engine,
            interval_seconds=settings.scheduler_interval_seconds,
            max_workers=settings.scheduler_max_workers,
            cycle_timeout=settings.sync_job_timeout_seconds,
        )
        scheduler.start()
    logger.info("shelfsync started")
    yield
    if scheduler is not None:
        scheduler.stop(timeout=settings.aims_timeout_seconds)
    client.close()
    database.dispose()
    logger.info("shelfsync stopped")


app = FastAPI(title="shelfsync", lifespan=lifespan)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_db(database: Database = Depends(get_database)) -> Session:
    db = database.session()
    try:
        yield db
    finally:
        db.close()


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@dataclass
class CurrentUser:
    id: int
    global_role: Optional[Role]
    store_roles: dict[int, Role]

    @property
    def is_platform_admin(self) -> bool:
        return self.global_role is Role.PLATFORM_ADMIN


def get_current_user(
    x_user_id: Optional[int] = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> CurrentUser:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="authentication required")
    user = db.get(User, x_user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="unknown user")
    memberships = (
        db.query(StoreMembership.store_id, StoreMembership.role)
        .filter(StoreMembership.user_id == user.id)
        .all()
    )
    return CurrentUser(
        id=user.id,
        global_role=parse_role(user.global_role),
        store_roles=roles_from_memberships(memberships),
    )


def _authorize(user: CurrentUser, store_id: Optional[int], resource: Resource, action: Action) -> None:
    if not can(user.global_role, user.store_roles, store_id, resource, action):
        raise PermissionDeniedError(f"permission denied: {action.value} on {resource.value}")


def _scoped_store_ids(user: CurrentUser, resource: Resource, action: Action) -> Optional[list[int]]:
    if user.is_platform_admin:
        return None
    return permitted_store_ids(user.store_roles, resource, action)


def _get_store(db: Session, store_id: int) -> Store:
    store = db.get(Store, store_id)
    if not store:
        raise HTTPException(status_code=404, detail="store not found")
    return store


def _queue_item_data(item: SyncQueueItem) -> dict:
    return {
        "queue_item_id": item.id,
        "store_id": item.store_id,
        "entity_type": item.entity_type,
        "entity_id": item.entity_id,
        "action": item.action,
        "status": item.status,
        "payload": item.payload,
        "error_message": item.error_message,
        "retry_count": item.retry_count,
        "scheduled_at": isoformat(item.scheduled_at),
        "processed_at": isoformat(item.processed_at),
        "created_at": isoformat(item.created_at),
    }


def _job_data(job: SyncJob) -> dict:
    return {
        "job_id": job.id,
        "store_id": job.store_id,
        "type": job.job_type,
        "entities": job.entities,
        "status": job.status,
        "stats": job.stats,
        "error": job.error_message,
        "created_at": isoformat(job.created_at),
        "started_at": isoformat(job.started_at),
        "completed_at": isoformat(job.completed_at),
    }


def _space_data(space: Space) -> dict:
    return {
        "space_id": space.id,
        "store_id": space.store_id,
        "external_id": space.external_id,
        "label_code": space.label_code,
        "data": space.data,
        "sync_status": space.sync_status,
        "last_synced_at": isoformat(space.last_synced_at),
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class SpaceCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'store_id': 1, 'external_id': '101', 'label_code': None, 'data': {'name': 'Room 101'}}}}
    store_id: int
    external_id: str
    label_code: Optional[str] = None
    data: dict = Field(default_factory=dict)


class SpaceUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'data': {'name': 'Room 101B'}}}}
    label_code: Optional[str] = None
    data: Optional[dict] = None


@app.post("/api/v1/spaces", tags=["Spaces"])
def create_space(
    payload: SpaceCreate,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, payload.store_id, Resource.SPACES, Action.CREATE)
    _get_store(db, payload.store_id)
    exists = db.query(Space).filter(
        Space.store_id == payload.store_id,
        Space.external_id == payload.external_id,
    ).first()
    if exists:
        raise HTTPException(status_code=409, detail="space already exists")
    space = Space(
        store_id=payload.store_id,
        external_id=payload.external_id,
        label_code=payload.label_code,
        data=payload.data,
        created_at=now_utc(),
    )
    db.add(space)
    db.commit()
    db.refresh(space)
    engine.enqueue(db, space.store_id, "spaces", space.id, "create", {"entityData": payload.data})
    db.refresh(space)
    return {"data": _space_data(space), "meta": _meta()}


@app.get("/api/v1/spaces", tags=["Spaces"])
def list_spaces(
    store_id: int = Query(...),
    sync_status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, store_id, Resource.SPACES, Action.READ)
    query = db.query(Space).filter(Space.store_id == store_id)
    if sync_status is not None:
        query = query.filter(Space.sync_status == sync_status)
    spaces, next_cursor = _paginate_by_id(query, Space, limit, cursor)
    return {"data": [_space_data(space) for space in spaces], "meta": _list_meta(limit, cursor, next_cursor)}


@app.patch("/api/v1/spaces/{space_id}", tags=["Spaces"])
def update_space(
    space_id: int,
    payload: SpaceUpdate,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    space = db.get(Space, space_id)
    if not space:
        raise HTTPException(status_code=404, detail="space not found")
    _authorize(user, space.store_id, Resource.SPACES, Action.UPDATE)
    changes: dict = {}
    if payload.data is not None:
        space.data = {**(space.data or {}), **payload.data}
        changes["data"] = payload.data
    if payload.label_code is not None:
        space.label_code = payload.label_code
        changes["label_code"] = payload.label_code
    db.commit()
    if changes:
        engine.enqueue(db, space.store_id, "spaces", space.id, "update", {"changes": changes})
    db.refresh(space)
    return {"data": _space_data(space), "meta": _meta()}


@app.delete("/api/v1/spaces/{space_id}", tags=["Spaces"])
def delete_space(
    space_id: int,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    space = db.get(Space, space_id)
    if not space:
        raise HTTPException(status_code=404, detail="space not found")
    _authorize(user, space.store_id, Resource.SPACES, Action.DELETE)
    store_id, external_id = space.store_id, space.external_id
    item = engine.enqueue(db, store_id, "spaces", space_id, "delete", {"articleId": external_id})
    db.delete(space)
    db.commit()
    return {
        "data": {
            "space_id": space_id,
            "deleted": True,
            "queue_item_id": item.id if item else None,
        },
        "meta": _meta(),
    }


class LabelLink(BaseModel):
    model_config = {"json_schema_extra": {"example": {'store_id': 1, 'label_code': 'L-0001', 'entity_type': 'spaces', 'entity_id': 10, 'template_name': None}}}
    store_id: int
    label_code: str
    entity_type: EntityName = "spaces"
    entity_id: int
    template_name: Optional[str] = None


class LabelUnlink(BaseModel):
    model_config = {"json_schema_extra": {"example": {'store_id': 1, 'label_code': 'L-0001', 'entity_type': 'spaces', 'entity_id': 10}}}
    store_id: int
    label_code: str
    entity_type: EntityName = "spaces"
    entity_id: int


def _label_target(db: Session, engine: ReconciliationEngine, store_id: int, entity_type: str, entity_id: int):
    entity = db.get(ENTITY_MODELS[entity_type], entity_id)
    if not entity or entity.store_id != store_id:
        raise NotFoundError(f"{entity_type} entity not found")
    article_id = engine.article_id(entity_type, entity)
    if not article_id:
        raise ValidationError(f"{entity_type}/{entity_id} has no article id to link")
    return entity, article_id


@app.post("/api/v1/labels/link", tags=["Labels"])
def link_label(
    payload: LabelLink,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, payload.store_id, Resource.LABELS, Action.MANAGE)
    entity, article_id = _label_target(db, engine, payload.store_id, payload.entity_type, payload.entity_id)
    if hasattr(entity, "label_code"):
        entity.label_code = payload.label_code
        db.commit()
    body = {"labelCode": payload.label_code, "articleId": article_id}
    if payload.template_name:
        body["templateName"] = payload.template_name
    item = engine.enqueue(db, payload.store_id, payload.entity_type, payload.entity_id, "link", body)
    return {
        "data": {"queued": item is not None, "queue_item": _queue_item_data(item) if item else None},
        "meta": _meta(),
    }


@app.post("/api/v1/labels/unlink", tags=["Labels"])
def unlink_label(
    payload: LabelUnlink,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, payload.store_id, Resource.LABELS, Action.MANAGE)
    entity, _ = _label_target(db, engine, payload.store_id, payload.entity_type, payload.entity_id)
    if getattr(entity, "label_code", None) == payload.label_code:
        entity.label_code = None
        db.commit()
    item = engine.enqueue(
        db,
        payload.store_id,
        payload.entity_type,
        payload.entity_id,
        "unlink",
        {"labelCode": payload.label_code},
    )
    return {
        "data": {"queued": item is not None, "queue_item": _queue_item_data(item) if item else None},
        "meta": _meta(),
    }


@app.get("/api/v1/sync/status", tags=["Sync"])
def get_sync_status(
    store_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    if store_id is not None:
        _authorize(user, store_id, Resource.SYNC, Action.VIEW)
        store_ids = [store_id]
    else:
        store_ids = _scoped_store_ids(user, Resource.SYNC, Action.VIEW)
        if store_ids is None:
            store_ids = [row[0] for row in db.query(Store.id).order_by(Store.id).all()]
    aims_connected = any(engine.is_connected(db, sid) for sid in store_ids)
    return {"data": overall_status(db, engine.queue, store_ids, aims_connected), "meta": _meta()}


@app.get("/api/v1/sync/health", tags=["Sync"])
def check_sync_health(
    store_id: int = Query(...),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, store_id, Resource.SYNC, Action.VIEW)
    return {"data": {"store_id": store_id, "connected": engine.is_connected(db, store_id)}, "meta": _meta()}


class SyncTrigger(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"example": {'storeId': 1, 'type': 'full', 'entities': ['spaces']}},
    }
    store_id: int = Field(alias="storeId")
    type: Literal["full", "push", "pull"] = "full"
    entities: Optional[list[EntityName]] = None


@app.post("/api/v1/sync/trigger", tags=["Sync"])
def trigger_sync(
    payload: SyncTrigger,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    database: Database = Depends(get_database),
    engine: ReconciliationEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, payload.store_id, Resource.SYNC, Action.TRIGGER)
    engine.enabled_store_config(db, payload.store_id)
    job = SyncJob(
        store_id=payload.store_id,
        job_type=payload.type,
        entities=payload.entities,
        status=JOB_QUEUED,
        requested_by=user.id,
        created_at=now_utc(),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    background_tasks.add_task(engine.run_job, database, job.id, settings.sync_job_timeout_seconds)
    return {
        "data": {"message": "Sync queued", "job_id": job.id, "status": job.status, "stats": {}},
        "meta": _meta(),
    }


@app.get("/api/v1/sync/jobs/{job_id}", tags=["Sync"])
def get_sync_job(
    job_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    job = db.get(SyncJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="sync job not found")
    _authorize(user, job.store_id, Resource.SYNC, Action.VIEW)
    return {"data": _job_data(job), "meta": _meta()}


@app.get("/api/v1/sync/queue", tags=["Sync"])
def list_sync_queue(
    store_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    if store_id is not None:
        _authorize(user, store_id, Resource.SYNC, Action.VIEW)
        store_ids: Optional[list[int]] = [store_id]
    else:
        store_ids = _scoped_store_ids(user, Resource.SYNC, Action.VIEW)
    query = engine.queue.query(db, store_ids, status)
    items, next_cursor = _paginate_by_id(query, SyncQueueItem, limit, cursor)
    return {"data": [_queue_item_data(item) for item in items], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/sync/queue/cleanup", tags=["Sync"])
def cleanup_sync_queue(
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    if not user.is_platform_admin:
        raise PermissionDeniedError("platform admin required")
    return {"data": engine.queue.cleanup(db), "meta": _meta()}


@app.post("/api/v1/sync/queue/{item_id}/retry", tags=["Sync"])
def retry_sync_item(
    item_id: int,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    item = engine.queue.retry_failed(db, item_id, _scoped_store_ids(user, Resource.SYNC, Action.TRIGGER))
    return {
        "data": {"message": "Item requeued", "queue_item": _queue_item_data(item) if item else None},
        "meta": _meta(),
    }


@app.delete("/api/v1/sync/queue/{item_id}", tags=["Sync"])
def clear_sync_item(
    item_id: int,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    engine.queue.clear_failed(db, item_id, _scoped_store_ids(user, Resource.SYNC, Action.TRIGGER))
    return {"data": {"queue_item_id": item_id, "cleared": True}, "meta": _meta()}


@app.post("/api/v1/sync/stores/{store_id}/pull", tags=["Sync"])
def pull_store(
    store_id: int,
    entities: Optional[list[EntityName]] = Query(default=None),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, store_id, Resource.SYNC, Action.TRIGGER)
    stats = engine.pull(db, store_id, entities)
    return {"data": {"message": "Pull completed", "stats": stats}, "meta": _meta()}


@app.post("/api/v1/sync/stores/{store_id}/push", tags=["Sync"])
def push_store(
    store_id: int,
    entities: Optional[list[EntityName]] = Query(default=None),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, store_id, Resource.SYNC, Action.TRIGGER)
    stats = engine.push(db, store_id, entities)
    message = "Push completed" if stats["processed"] else "No pending changes to push"
    return {"data": {"message": message, "stats": stats}, "meta": _meta()}


@app.get("/api/v1/sync/stores/{store_id}/status", tags=["Sync"])
def get_store_sync_status(
    store_id: int,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, store_id, Resource.SYNC, Action.VIEW)
    store = _get_store(db, store_id)
    aims_connected = engine.is_connected(db, store_id)
    return {"data": store_status(db, engine.queue, store, aims_connected), "meta": _meta()}


@app.post("/api/v1/sync/stores/{store_id}/retry/{item_id}", tags=["Sync"])
def retry_store_item(
    store_id: int,
    item_id: int,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    _authorize(user, store_id, Resource.SYNC, Action.TRIGGER)
    item = engine.queue.retry_failed(db, item_id, [store_id])
    return {
        "data": {"message": "Item requeued", "queue_item": _queue_item_data(item) if item else None},
        "meta": _meta(),
    }
