"""
Persisted queue of outbound AIMS mutations.

Rows only move forward: pending -> processing -> completed | pending (retry) |
failed. The pending -> processing step is a conditional UPDATE, so exactly one
worker can win the lease on a row; every later transition is conditional on
that worker still owning the lease.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Query, Session, aliased

from shelfsync.config import Settings
from shelfsync.db import now_utc
from shelfsync.errors import ConflictError, NotFoundError, ValidationError
from shelfsync.models import (
    ENTITY_TYPES,
    QUEUE_ACTIONS,
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    QUEUE_STATUSES,
    SyncQueueItem,
)

logger = logging.getLogger(__name__)

# (pending action, new action) pairs that cancel out when the pending row never reached AIMS.
CANCELLING_PAIRS = {("create", "delete"), ("link", "unlink")}

# (pending action, new action) -> action the merged row carries. Label actions never
# fold into article actions; any pair not listed here is queued behind the pending row.
FOLDS = {
    ("create", "update"): "create",
    ("create", "delete"): "delete",
    ("update", "update"): "update",
    ("update", "delete"): "delete",
}

OPEN_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING)


@dataclass(frozen=True)
class QueuePolicy:
    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    lease_seconds: float = 120.0
    batch_size: int = 50
    retention_days: int = 7

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueuePolicy":
        return cls(
            max_retries=settings.sync_max_retries,
            backoff_base_seconds=settings.sync_backoff_base_seconds,
            backoff_max_seconds=settings.sync_backoff_max_seconds,
            lease_seconds=settings.sync_lease_seconds,
            batch_size=settings.sync_batch_size,
            retention_days=settings.sync_completed_retention_days,
        )

    def backoff(self, retry_count: int) -> timedelta:
        seconds = min(self.backoff_base_seconds * (2 ** retry_count), self.backoff_max_seconds)
        return timedelta(seconds=seconds)


class SyncQueue:
    def __init__(
        self, policy: Optional[QueuePolicy] = None, clock: Callable[[], datetime] = now_utc
    ) -> None:
        self.policy = policy or QueuePolicy()
        self.clock = clock

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
        """Queue a mutation, folding it into an unprocessed row for the same entity.

        Returns the row that now carries the mutation, or None when the new
        action cancelled a pending one and nothing is left to send.
        """
        if entity_type not in ENTITY_TYPES:
            raise ValidationError(f"unknown entity type: {entity_type}")
        if action not in QUEUE_ACTIONS:
            raise ValidationError(f"unknown action: {action}")
        entity_id = str(entity_id)
        payload = dict(payload or {})

        # Only the newest open row may absorb the new action, so per-entity order holds.
        latest = (
            db.query(SyncQueueItem)
            .filter(
                SyncQueueItem.store_id == store_id,
                SyncQueueItem.entity_type == entity_type,
                SyncQueueItem.entity_id == entity_id,
                SyncQueueItem.status.in_(OPEN_STATUSES),
            )
            .order_by(SyncQueueItem.id.desc())
            .first()
        )
        if latest is not None and latest.status == QUEUE_PENDING:
            superseded = self._supersede(db, latest, action, payload)
            if superseded is not False:
                return superseded

        now = self.clock()
        item = SyncQueueItem(
            store_id=store_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            status=QUEUE_PENDING,
            payload=payload,
            retry_count=0,
            scheduled_at=now,
            created_at=now,
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        logger.debug("queued %s %s/%s as item %s", action, entity_type, entity_id, item.id)
        return item

    def _supersede(self, db: Session, existing: SyncQueueItem, action: str, payload: dict):
        """Fold ``action`` into ``existing``.

        Returns None when the two cancel out, the merged row, or False when the
        new action has to be queued as a row of its own (no fold applies, or the
        pending row was claimed meanwhile).
        """
        item_id, pending_action = existing.id, existing.action
        pair = (pending_action, action)
        if pair in CANCELLING_PAIRS and existing.retry_count == 0:
            result = db.execute(
                delete(SyncQueueItem)
                .where(SyncQueueItem.id == item_id, SyncQueueItem.status == QUEUE_PENDING)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount == 1:
                logger.debug("%s cancelled pending %s item %s", action, pending_action, item_id)
                return None
            return False

        new_action = FOLDS.get(pair)
        if new_action is None:
            return False
        result = db.execute(
            update(SyncQueueItem)
            .where(SyncQueueItem.id == item_id, SyncQueueItem.status == QUEUE_PENDING)
            .values(action=new_action, payload=payload)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            return False
        db.expire(existing)
        logger.debug("item %s (%s) absorbed %s as %s", item_id, pending_action, action, new_action)
        return existing

    # -- consumers ----------------------------------------------------------

    def due_items(
        self,
        db: Session,
        store_id: int,
        entity_types: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> list[SyncQueueItem]:
        query = db.query(SyncQueueItem).filter(
            SyncQueueItem.store_id == store_id,
            SyncQueueItem.status == QUEUE_PENDING,
            SyncQueueItem.scheduled_at <= self.clock(),
        )
        if entity_types:
            query = query.filter(SyncQueueItem.entity_type.in_(list(entity_types)))
        # An entity's rows go out in the order they were queued.
        earlier = aliased(SyncQueueItem)
        blocked = (
            db.query(earlier.id)
            .filter(
                earlier.store_id == SyncQueueItem.store_id,
                earlier.entity_type == SyncQueueItem.entity_type,
                earlier.entity_id == SyncQueueItem.entity_id,
                earlier.status.in_(OPEN_STATUSES),
                earlier.id < SyncQueueItem.id,
            )
            .exists()
        )
        return (
            query.filter(~blocked)
            .order_by(SyncQueueItem.scheduled_at, SyncQueueItem.id)
            .limit(limit or self.policy.batch_size)
            .all()
        )

    def claim(self, db: Session, item_id: int, owner: str) -> bool:
        now = self.clock()
        result = db.execute(
            update(SyncQueueItem)
            .where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status == QUEUE_PENDING,
                SyncQueueItem.scheduled_at <= now,
            )
            .values(
                status=QUEUE_PROCESSING,
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=self.policy.lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _finish(self, db: Session, item_id: int, owner: str, **values) -> None:
        result = db.execute(
            update(SyncQueueItem)
            .where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status == QUEUE_PROCESSING,
                SyncQueueItem.lease_owner == owner,
            )
            .values(lease_owner=None, lease_expires_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            raise ConflictError(f"lease on queue item {item_id} was lost")

    def complete(self, db: Session, item: SyncQueueItem, owner: str) -> None:
        self._finish(
            db,
            item.id,
            owner,
            status=QUEUE_COMPLETED,
            processed_at=self.clock(),
            error_message=None,
        )

    def fail_permanently(
        self, db: Session, item: SyncQueueItem, owner: str, message: str
    ) -> None:
        self._finish(
            db,
            item.id,
            owner,
            status=QUEUE_FAILED,
            processed_at=self.clock(),
            error_message=message[:1000],
        )

    def retry_later(self, db: Session, item: SyncQueueItem, owner: str, message: str) -> str:
        """Count a transient failure; returns the status the row ended in."""
        retry_count = item.retry_count + 1
        now = self.clock()
        if retry_count > self.policy.max_retries:
            self._finish(
                db,
                item.id,
                owner,
                status=QUEUE_FAILED,
                retry_count=retry_count,
                processed_at=now,
                error_message=message[:1000],
            )
            return QUEUE_FAILED
        self._finish(
            db,
            item.id,
            owner,
            status=QUEUE_PENDING,
            retry_count=retry_count,
            scheduled_at=now + self.policy.backoff(retry_count),
            error_message=message[:1000],
        )
        return QUEUE_PENDING

    def reclaim_expired(self, db: Session, store_id: Optional[int] = None) -> int:
        """Treat rows whose lease ran out as a failed transient attempt."""
        query = db.query(SyncQueueItem).filter(
            SyncQueueItem.status == QUEUE_PROCESSING,
            SyncQueueItem.lease_expires_at < self.clock(),
        )
        if store_id is not None:
            query = query.filter(SyncQueueItem.store_id == store_id)
        reclaimed = 0
        for item in query.all():
            try:
                status = self.retry_later(db, item, item.lease_owner, "lease expired")
            except ConflictError:
                continue
            reclaimed += 1
            logger.warning("reclaimed expired lease on item %s (now %s)", item.id, status)
        return reclaimed

    # -- maintenance --------------------------------------------------------

    def cleanup(self, db: Session) -> dict:
        cutoff = self.clock() - timedelta(days=self.policy.retention_days)
        result = db.execute(
            delete(SyncQueueItem)
            .where(
                SyncQueueItem.status == QUEUE_COMPLETED,
                SyncQueueItem.processed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return {"completed_removed": result.rowcount}

    def get_failed(
        self, db: Session, item_id: int, store_ids: Optional[Iterable[int]] = None
    ) -> SyncQueueItem:
        query = db.query(SyncQueueItem).filter(
            SyncQueueItem.id == item_id, SyncQueueItem.status == QUEUE_FAILED
        )
        if store_ids is not None:
            query = query.filter(SyncQueueItem.store_id.in_(list(store_ids)))
        item = query.first()
        if item is None:
            raise NotFoundError("item not found or not failed")
        return item

    def retry_failed(
        self, db: Session, item_id: int, store_ids: Optional[Iterable[int]] = None
    ) -> Optional[SyncQueueItem]:
        """Replace a failed row with a fresh pending copy."""
        item = self.get_failed(db, item_id, store_ids)
        store_id, entity_type, entity_id = item.store_id, item.entity_type, item.entity_id
        action, payload = item.action, dict(item.payload or {})
        db.delete(item)
        db.flush()
        return self.enqueue(db, store_id, entity_type, entity_id, action, payload)

    def clear_failed(
        self, db: Session, item_id: int, store_ids: Optional[Iterable[int]] = None
    ) -> None:
        item = self.get_failed(db, item_id, store_ids)
        db.delete(item)
        db.commit()

    # -- reads --------------------------------------------------------------

    def query(
        self,
        db: Session,
        store_ids: Optional[Iterable[int]] = None,
        status: Optional[str] = None,
    ) -> Query:
        if status is not None and status not in QUEUE_STATUSES:
            raise ValidationError(f"unknown queue status: {status}")
        query = db.query(SyncQueueItem)
        if store_ids is not None:
            query = query.filter(SyncQueueItem.store_id.in_(list(store_ids)))
        if status is not None:
            query = query.filter(SyncQueueItem.status == status)
        return query

    def counts(self, db: Session, store_ids: Iterable[int]) -> dict:
        store_ids = list(store_ids)
        counts = {status: 0 for status in QUEUE_STATUSES}
        if not store_ids:
            return counts
        rows = (
            db.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
            .filter(SyncQueueItem.store_id.in_(store_ids))
            .group_by(SyncQueueItem.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        return counts

    def entity_counts(self, db: Session, store_id: int, entity_type: str, entity_id) -> dict:
        counts = {status: 0 for status in QUEUE_STATUSES}
        rows = (
            db.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
            .filter(
                SyncQueueItem.store_id == store_id,
                SyncQueueItem.entity_type == entity_type,
                SyncQueueItem.entity_id == str(entity_id),
            )
            .group_by(SyncQueueItem.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        return counts

    def last_completed_at(self, db: Session, store_ids: Iterable[int]) -> Optional[datetime]:
        store_ids = list(store_ids)
        if not store_ids:
            return None
        return (
            db.query(func.max(SyncQueueItem.processed_at))
            .filter(
                SyncQueueItem.store_id.in_(store_ids),
                SyncQueueItem.status == QUEUE_COMPLETED,
            )
            .scalar()
        )
