from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shelfsync.db import as_utc, isoformat
from shelfsync.models import (
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    Store,
)
from shelfsync.sync_queue import SyncQueue


def derive_state(counts: dict) -> str:
    # Failed rows need an operator; keep that visible even while other work drains.
    if counts.get(QUEUE_FAILED, 0) > 0:
        return "degraded"
    if counts.get(QUEUE_PENDING, 0) > 0 or counts.get(QUEUE_PROCESSING, 0) > 0:
        return "syncing"
    return "idle"


def _latest(*values):
    present = [as_utc(value) for value in values if value is not None]
    return max(present) if present else None


def store_status(db: Session, queue: SyncQueue, store: Store, aims_connected: bool) -> dict:
    counts = queue.counts(db, [store.id])
    last_sync = _latest(queue.last_completed_at(db, [store.id]), store.last_aims_sync_at)
    return {
        "store": {"id": store.id, "name": store.name, "code": store.code},
        "sync_enabled": store.sync_enabled,
        "last_sync_at": isoformat(last_sync),
        "queue": {
            "pending": counts[QUEUE_PENDING],
            "processing": counts[QUEUE_PROCESSING],
            "failed": counts[QUEUE_FAILED],
            "completed": counts[QUEUE_COMPLETED],
        },
        "aims_connected": aims_connected,
        "state": derive_state(counts),
    }


def overall_status(
    db: Session, queue: SyncQueue, store_ids: Iterable[int], aims_connected: bool
) -> dict:
    store_ids = list(store_ids)
    counts = queue.counts(db, store_ids)
    last_store_sync: Optional[object] = None
    if store_ids:
        last_store_sync = (
            db.query(func.max(Store.last_aims_sync_at)).filter(Store.id.in_(store_ids)).scalar()
        )
    last_sync = _latest(queue.last_completed_at(db, store_ids), last_store_sync)
    busy = counts[QUEUE_PENDING] + counts[QUEUE_PROCESSING]
    return {
        "status": "syncing" if busy > 0 else "idle",
        "state": derive_state(counts),
        "last_sync": isoformat(last_sync),
        "pending_items": busy,
        "failed_items": counts[QUEUE_FAILED],
        "aims_connected": aims_connected,
    }
