import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("CREATE_TABLES", "false")

from datetime import datetime, timedelta, timezone

import pytest

from shelfsync.db import Database
from shelfsync.models import Company, Store, StoreMembership, User
from shelfsync.reconcile import ReconciliationEngine
from shelfsync.sync_queue import QueuePolicy, SyncQueue


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeAimsClient:
    """Stands in for AimsClient at the engine boundary."""

    def __init__(self) -> None:
        self.records: list[dict] = []
        self.errors: dict = {}
        self.calls: list[tuple[str, dict]] = []
        self.healthy = True
        self.on_push = None

    def fetch_articles(self, config) -> list[dict]:
        return [dict(record) for record in self.records]

    def push_mutation(self, config, action: str, payload: dict) -> None:
        self.calls.append((action, payload))
        if self.on_push is not None:
            self.on_push(action, payload)
        error = self.errors.get(action)
        if error is not None:
            raise error

    def check_health(self, config) -> bool:
        return self.healthy

    def close(self) -> None:
        pass


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def database():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def session(database):
    with database.session_scope() as db:
        yield db


@pytest.fixture
def fake_client() -> FakeAimsClient:
    return FakeAimsClient()


@pytest.fixture
def queue(clock) -> SyncQueue:
    policy = QueuePolicy(
        max_retries=3,
        backoff_base_seconds=1.0,
        backoff_max_seconds=4.0,
        lease_seconds=30.0,
        batch_size=50,
        retention_days=7,
    )
    return SyncQueue(policy, clock=clock)


@pytest.fixture
def engine(fake_client, queue, clock) -> ReconciliationEngine:
    return ReconciliationEngine(fake_client, queue, clock=clock, worker_id="test-worker")


@pytest.fixture
def make_store(session, clock):
    counter = {"n": 0}

    def _make_store(sync_enabled: bool = True, configured: bool = True, settings=None) -> Store:
        counter["n"] += 1
        n = counter["n"]
        company = Company(
            code=f"CO{n}",
            name=f"Company {n}",
            aims_base_url="https://aims.example.test" if configured else None,
            aims_username="sync@example.test" if configured else None,
            aims_password="secret" if configured else None,
            created_at=clock(),
        )
        session.add(company)
        session.commit()
        store = Store(
            company_id=company.id,
            code=f"{n:03d}",
            name=f"Store {n}",
            sync_enabled=sync_enabled,
            settings=settings,
            created_at=clock(),
        )
        session.add(store)
        session.commit()
        session.refresh(store)
        return store

    return _make_store


@pytest.fixture
def make_user(session):
    counter = {"n": 0}

    def _make_user(global_role=None, memberships=None) -> User:
        counter["n"] += 1
        user = User(email=f"user{counter['n']}@example.test", global_role=global_role)
        session.add(user)
        session.commit()
        for store_id, role in (memberships or {}).items():
            session.add(StoreMembership(user_id=user.id, store_id=store_id, role=role))
        session.commit()
        session.refresh(user)
        return user

    return _make_user
