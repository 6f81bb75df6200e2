"""
Reconciliation between local entities and AIMS.

``pull`` copies remote article state into local spaces and conference rooms,
``push`` drains the store's queue into AIMS. Both stop cooperatively between
records when the caller's cancel event fires or the deadline passes.
"""

import logging
import os
import socket
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shelfsync.aims_client import AimsClient, StoreConfig
from shelfsync.articles import (
    CONFERENCE_PREFIX,
    build_conference_article,
    build_person_article,
    build_space_article,
    conference_article_id,
    field_mapping,
    person_article_id,
    remote_fields,
    remote_id,
)
from shelfsync.db import Database, now_utc
from shelfsync.errors import (
    ConflictError,
    ExternalSystemError,
    NotConfiguredError,
    NotFoundError,
    SyncDisabledError,
    SyncError,
    ValidationError,
)
from shelfsync.models import (
    ENTITY_SYNC_FAILED,
    ENTITY_SYNC_PENDING,
    ENTITY_SYNC_SYNCED,
    ENTITY_TYPES,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RUNNING,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    Company,
    ConferenceRoom,
    Person,
    Space,
    Store,
    SyncJob,
    SyncQueueItem,
)
from shelfsync.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

ENTITY_MODELS = {"spaces": Space, "people": Person, "conference": ConferenceRoom}

SYNC_TYPES = ("full", "push", "pull")


def _entity_types(entities: Optional[Iterable[str]]) -> list[str]:
    if not entities:
        return list(ENTITY_TYPES)
    wanted = list(dict.fromkeys(entities))
    unknown = [name for name in wanted if name not in ENTITY_TYPES]
    if unknown:
        raise ValidationError(f"unknown entity type: {', '.join(unknown)}")
    return wanted


class ReconciliationEngine:
    def __init__(
        self,
        client: AimsClient,
        queue: Optional[SyncQueue] = None,
        clock: Callable[[], datetime] = now_utc,
        worker_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.queue = queue or SyncQueue(clock=clock)
        self.clock = clock
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"

    # -- store resolution ---------------------------------------------------

    def store_config(self, db: Session, store_id: int) -> tuple[Store, StoreConfig]:
        store = db.get(Store, store_id)
        if store is None:
            raise NotFoundError("store not found")
        company = db.get(Company, store.company_id)
        if (
            company is None
            or not company.aims_base_url
            or not company.aims_username
            or not company.aims_password
        ):
            raise NotConfiguredError("AIMS configuration missing or incomplete for this store")
        config = StoreConfig(
            store_id=store.id,
            company_id=company.id,
            base_url=company.aims_base_url,
            company_code=company.code,
            store_code=store.code,
            username=company.aims_username,
            password=company.aims_password,
            cluster=company.aims_cluster,
        )
        return store, config

    def enabled_store_config(self, db: Session, store_id: int) -> tuple[Store, StoreConfig]:
        store, config = self.store_config(db, store_id)
        if not store.sync_enabled:
            raise SyncDisabledError("sync is disabled for this store")
        return store, config

    def is_connected(self, db: Session, store_id: int) -> bool:
        try:
            _, config = self.store_config(db, store_id)
        except (NotFoundError, NotConfiguredError):
            return False
        return self.client.check_health(config)

    def _should_stop(self, cancel: Optional[threading.Event], deadline: Optional[float]) -> bool:
        if cancel is not None and cancel.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    # -- producers ----------------------------------------------------------

    def enqueue(
        self,
        db: Session,
        store_id: int,
        entity_type: str,
        entity_id,
        action: str,
        payload: Optional[dict] = None,
    ) -> Optional[SyncQueueItem]:
        item = self.queue.enqueue(db, store_id, entity_type, entity_id, action, payload)
        if item is None:
            self._settle_entity(db, store_id, entity_type, entity_id)
        elif action != "delete":
            self._mark_entity(db, entity_type, entity_id, ENTITY_SYNC_PENDING)
        return item

    def _settle_entity(self, db: Session, store_id: int, entity_type: str, entity_id) -> None:
        """Recompute an entity's status after its queued work cancelled out."""
        entity = self._load_entity(db, entity_type, str(entity_id))
        if entity is None:
            return
        counts = self.queue.entity_counts(db, store_id, entity_type, entity_id)
        if counts[QUEUE_PENDING] or counts[QUEUE_PROCESSING]:
            status = ENTITY_SYNC_PENDING
        elif counts[QUEUE_FAILED]:
            status = ENTITY_SYNC_FAILED
        elif entity.last_synced_at is not None:
            status = ENTITY_SYNC_SYNCED
        else:
            return
        entity.sync_status = status
        db.commit()

    # -- pull ---------------------------------------------------------------

    def pull(
        self,
        db: Session,
        store_id: int,
        entities: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> dict:
        wanted = _entity_types(entities)
        store, config = self.enabled_store_config(db, store_id)
        mapping = field_mapping(store.settings)
        records = self.client.fetch_articles(config)
        stats = {"total": len(records), "created": 0, "updated": 0, "unchanged": 0, "skipped": 0}

        for record in records:
            if self._should_stop(cancel, deadline):
                stats["cancelled"] = True
                break
            article_id = remote_id(record, mapping)
            if not article_id:
                logger.warning("store %s: article without %s", store_id, mapping["unique_id_field"])
                stats["skipped"] += 1
                continue
            if (
                "conference" in wanted
                and article_id.startswith(CONFERENCE_PREFIX)
                and len(article_id) > len(CONFERENCE_PREFIX)
            ):
                model, external_id = ConferenceRoom, article_id[len(CONFERENCE_PREFIX) :]
            elif "spaces" in wanted:
                model, external_id = Space, article_id
            else:
                stats["skipped"] += 1
                continue
            label_code, data = remote_fields(record, mapping)
            try:
                outcome = self._apply_record(db, model, store_id, external_id, label_code, data)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("store %s: could not apply article %s", store_id, article_id)
                stats["skipped"] += 1
                continue
            stats[outcome] += 1

        store = db.get(Store, store_id)
        store.last_aims_sync_at = self.clock()
        db.commit()
        logger.info(
            "pull store %s: %s total, %s created, %s updated, %s unchanged",
            store_id,
            stats["total"],
            stats["created"],
            stats["updated"],
            stats["unchanged"],
        )
        return stats

    def _apply_record(
        self,
        db: Session,
        model,
        store_id: int,
        external_id: str,
        label_code: Optional[str],
        data: dict,
    ) -> str:
        row = (
            db.query(model)
            .filter(model.store_id == store_id, model.external_id == external_id)
            .first()
        )
        now = self.clock()
        if row is None:
            db.add(
                model(
                    store_id=store_id,
                    external_id=external_id,
                    label_code=label_code or None,
                    data=data,
                    sync_status=ENTITY_SYNC_SYNCED,
                    last_synced_at=now,
                    created_at=now,
                )
            )
            return "created"
        current = dict(row.data or {})
        merged = {**current, **data}
        # None leaves the local label alone; "" means AIMS unassigned it.
        new_label = row.label_code if label_code is None else (label_code or None)
        if merged == current and new_label == row.label_code:
            return "unchanged"
        row.data = merged
        row.label_code = new_label
        row.sync_status = ENTITY_SYNC_SYNCED
        row.last_synced_at = now
        return "updated"

    # -- push ---------------------------------------------------------------

    def push(
        self,
        db: Session,
        store_id: int,
        entities: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> dict:
        wanted = _entity_types(entities)
        _, config = self.enabled_store_config(db, store_id)
        owner = f"{self.worker_id}:{uuid4().hex[:8]}"
        stats = {"processed": 0, "succeeded": 0, "failed": 0, "retried": 0, "skipped": 0}

        self.queue.reclaim_expired(db, store_id)
        # A completed row can release the next row queued for the same entity.
        progressed = True
        while progressed and not stats.get("cancelled"):
            progressed = False
            for item in self.queue.due_items(db, store_id, wanted):
                if self._should_stop(cancel, deadline):
                    stats["cancelled"] = True
                    break
                item_id = item.id
                if not self.queue.claim(db, item_id, owner):
                    logger.debug("item %s already leased elsewhere", item_id)
                    stats["skipped"] += 1
                    continue
                stats["processed"] += 1
                try:
                    outcome = self._process(db, config, item, owner)
                except ConflictError as exc:
                    logger.warning("store %s: %s", store_id, exc)
                    outcome = "skipped"
                stats[outcome] += 1
                progressed = progressed or outcome == "succeeded"

        if stats["processed"]:
            store = db.get(Store, store_id)
            store.last_aims_sync_at = self.clock()
            db.commit()
            logger.info(
                "push store %s: %s processed, %s succeeded, %s retried, %s failed",
                store_id,
                stats["processed"],
                stats["succeeded"],
                stats["retried"],
                stats["failed"],
            )
        return stats

    def _process(self, db: Session, config: StoreConfig, item: SyncQueueItem, owner: str) -> str:
        entity_type, entity_id = item.entity_type, item.entity_id
        try:
            request = self._build_request(db, item)
            if request is not None:
                self.client.push_mutation(config, *request)
        except ExternalSystemError as exc:
            if exc.transient:
                status = self.queue.retry_later(db, item, owner, exc.message)
                if status != QUEUE_FAILED:
                    logger.warning("item %s will be retried: %s", item.id, exc.message)
                    return "retried"
            else:
                self.queue.fail_permanently(db, item, owner, exc.message)
            logger.warning("item %s failed: %s", item.id, exc.message)
            self._mark_entity(db, entity_type, entity_id, ENTITY_SYNC_FAILED)
            return "failed"
        except ValidationError as exc:
            self.queue.fail_permanently(db, item, owner, exc.message)
            logger.warning("item %s rejected: %s", item.id, exc.message)
            self._mark_entity(db, entity_type, entity_id, ENTITY_SYNC_FAILED)
            return "failed"

        self.queue.complete(db, item, owner)
        if item.action != "delete":
            self._mark_entity(db, entity_type, entity_id, ENTITY_SYNC_SYNCED)
        return "succeeded"

    def _load_entity(self, db: Session, entity_type: str, entity_id: str):
        model = ENTITY_MODELS[entity_type]
        try:
            return db.get(model, int(entity_id))
        except ValueError:
            return None

    def _build_request(self, db: Session, item: SyncQueueItem) -> Optional[tuple[str, dict]]:
        payload = dict(item.payload or {})
        if item.action in ("link", "unlink"):
            return item.action, payload

        if item.action == "delete":
            article_id = payload.get("articleId")
            if not article_id:
                entity = self._load_entity(db, item.entity_type, item.entity_id)
                article_id = self.article_id(item.entity_type, entity) if entity else None
            if not article_id:
                logger.info(
                    "no article id for %s/%s, nothing to delete", item.entity_type, item.entity_id
                )
                return None
            return "delete", {"articleId": article_id}

        entity = self._load_entity(db, item.entity_type, item.entity_id)
        if entity is None:
            raise ValidationError(f"{item.entity_type}/{item.entity_id} no longer exists")
        if item.entity_type == "spaces":
            article = build_space_article(entity)
        elif item.entity_type == "conference":
            article = build_conference_article(entity)
        else:
            article = build_person_article(entity)
        if article is None:
            logger.info("person %s has no assigned space, nothing to push", item.entity_id)
            return None
        return item.action, {"article": article}

    def article_id(self, entity_type: str, entity) -> Optional[str]:
        if entity_type == "spaces":
            return entity.external_id
        if entity_type == "conference":
            return conference_article_id(entity.external_id)
        return person_article_id(entity)

    def _mark_entity(self, db: Session, entity_type: str, entity_id, status: str) -> None:
        entity = self._load_entity(db, entity_type, str(entity_id))
        if entity is None:
            return
        entity.sync_status = status
        if status == ENTITY_SYNC_SYNCED:
            entity.last_synced_at = self.clock()
        db.commit()

    # -- full / jobs --------------------------------------------------------

    def full(
        self,
        db: Session,
        store_id: int,
        entities: Optional[Iterable[str]] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> dict:
        return {
            "pull": self.pull(db, store_id, entities, cancel, deadline),
            "push": self.push(db, store_id, entities, cancel, deadline),
        }

    def run_job(
        self,
        database: Database,
        job_id: int,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Execute a queued sync job in its own session and record the outcome."""
        deadline = time.monotonic() + timeout if timeout else None
        with database.session_scope() as db:
            job = db.get(SyncJob, job_id)
            if job is None:
                logger.warning("sync job %s vanished before it ran", job_id)
                return
            job.status = JOB_RUNNING
            job.started_at = self.clock()
            db.commit()

            stats: dict = {}
            error: Optional[str] = None
            try:
                if job.job_type in ("pull", "full"):
                    stats["pull"] = self.pull(db, job.store_id, job.entities, cancel, deadline)
                if job.job_type in ("push", "full"):
                    stats["push"] = self.push(db, job.store_id, job.entities, cancel, deadline)
            except SyncError as exc:
                db.rollback()
                error = exc.message
                logger.warning("sync job %s failed: %s", job_id, exc.message)
            except Exception as exc:
                db.rollback()
                error = f"unexpected error: {exc}"
                logger.exception("sync job %s crashed", job_id)

            job = db.get(SyncJob, job_id)
            job.status = JOB_FAILED if error else JOB_COMPLETED
            job.error_message = error
            job.stats = stats
            job.completed_at = self.clock()
            db.commit()
