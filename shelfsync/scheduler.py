import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from shelfsync.db import Database
from shelfsync.errors import SyncError
from shelfsync.models import Company, Store
from shelfsync.reconcile import ReconciliationEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs push cycles for every sync-enabled store on a fixed interval.

    Stores are pushed concurrently, one worker per store; a tick that is still
    running when the next one is due is not overlapped.
    """

    def __init__(
        self,
        database: Database,
        engine: ReconciliationEngine,
        interval_seconds: float = 60.0,
        max_workers: int = 4,
        cycle_timeout: Optional[float] = None,
    ) -> None:
        self.database = database
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.max_workers = max_workers
        self.cycle_timeout = cycle_timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.info("sync scheduler already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("sync scheduler started with %ss interval", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("sync scheduler stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("sync scheduler tick failed")
            self._stop.wait(self.interval_seconds)

    def due_store_ids(self) -> list[int]:
        with self.database.session_scope() as db:
            rows = (
                db.query(Store.id)
                .join(Company, Company.id == Store.company_id)
                .filter(
                    Store.sync_enabled.is_(True),
                    Store.is_active.is_(True),
                    Company.is_active.is_(True),
                    Company.aims_base_url.is_not(None),
                    Company.aims_username.is_not(None),
                    Company.aims_password.is_not(None),
                )
                .order_by(Store.id)
                .all()
            )
        return [row[0] for row in rows]

    def push_store(self, store_id: int) -> dict:
        deadline = time.monotonic() + self.cycle_timeout if self.cycle_timeout else None
        with self.database.session_scope() as db:
            try:
                return self.engine.push(db, store_id, cancel=self._stop, deadline=deadline)
            except SyncError as exc:
                logger.warning("scheduled push for store %s skipped: %s", store_id, exc.message)
                return {"error": exc.message}

    def tick(self) -> dict:
        results: dict = {}
        store_ids = self.due_store_ids()
        if store_ids:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                for store_id, result in zip(store_ids, executor.map(self.push_store, store_ids)):
                    results[store_id] = result
        with self.database.session_scope() as db:
            cleaned = self.engine.queue.cleanup(db)
        if cleaned["completed_removed"]:
            logger.info("removed %s completed queue items", cleaned["completed_removed"])
        return results
