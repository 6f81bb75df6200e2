import threading

import pytest

from shelfsync.db import now_utc
from shelfsync.errors import ExternalSystemError, NotConfiguredError, SyncDisabledError
from shelfsync.models import ConferenceRoom, Person, Space, Store, SyncJob, SyncQueueItem
from shelfsync.reconcile import ReconciliationEngine
from shelfsync.status import store_status


def _space(session, store, external_id: str, label_code=None, **data) -> Space:
    space = Space(
        store_id=store.id,
        external_id=external_id,
        label_code=label_code,
        data=data,
        created_at=now_utc(),
    )
    session.add(space)
    session.commit()
    session.refresh(space)
    return space


def _items(session):
    session.expire_all()
    return session.query(SyncQueueItem).order_by(SyncQueueItem.id).all()


def test_pull_creates_and_updates_local_spaces(session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    _space(session, store, "A1", name="Old name")
    fake_client.records = [
        {"articleId": "A1", "articleName": "New name"},
        {"articleId": "A2", "articleName": "Second"},
        {"articleId": "A3", "articleName": "Third", "labelCode": "L-3"},
    ]

    stats = engine.pull(session, store.id)

    assert stats == {"total": 3, "created": 2, "updated": 1, "unchanged": 0, "skipped": 0}
    session.expire_all()
    spaces = {space.external_id: space for space in session.query(Space).all()}
    assert spaces["A1"].data["name"] == "New name"
    assert spaces["A1"].sync_status == "synced"
    assert spaces["A3"].label_code == "L-3"
    assert set(spaces) == {"A1", "A2", "A3"}
    assert session.get(Store, store.id).last_aims_sync_at is not None


def test_second_pull_without_remote_changes_is_a_no_op(session, engine, fake_client, make_store) -> None:
    store = make_store()
    fake_client.records = [
        {"articleId": "A1", "articleName": "One", "labelCode": "L-1"},
        {"articleId": "A2", "articleName": "Two", "data": {"floor": "2"}},
    ]

    engine.pull(session, store.id)
    again = engine.pull(session, store.id)

    assert again["created"] == 0
    assert again["updated"] == 0
    assert again["unchanged"] == 2


def test_pull_routes_prefixed_articles_to_conference_rooms(session, engine, fake_client, make_store) -> None:
    store = make_store()
    fake_client.records = [
        {"articleId": "C12", "articleName": "Board room"},
        {"articleId": "12", "articleName": "Desk 12"},
        {"articleName": "no id"},
    ]

    stats = engine.pull(session, store.id)

    assert stats["created"] == 2
    assert stats["skipped"] == 1
    room = session.query(ConferenceRoom).one()
    assert room.external_id == "12"
    assert room.data == {"name": "Board room"}
    assert session.query(Space).one().external_id == "12"


def test_pull_honours_store_field_mapping(session, engine, fake_client, make_store) -> None:
    store = make_store(settings={"field_mapping": {"unique_id_field": "ITEM_ID", "name_field": "ITEM_NAME"}})
    fake_client.records = [{"ITEM_ID": "77", "ITEM_NAME": "Mapped"}]

    engine.pull(session, store.id)

    space = session.query(Space).one()
    assert space.external_id == "77"
    assert space.data["name"] == "Mapped"


def test_pull_clears_label_unassigned_in_aims(session, engine, fake_client, make_store) -> None:
    store = make_store()
    _space(session, store, "A1", label_code="L-1", name="One")
    _space(session, store, "A2", label_code="L-2", name="Two")
    fake_client.records = [
        {"articleId": "A1", "articleName": "One", "labelCode": ""},
        {"articleId": "A2", "articleName": "Two"},
    ]

    stats = engine.pull(session, store.id)

    assert stats["updated"] == 1
    assert stats["unchanged"] == 1
    session.expire_all()
    labels = {space.external_id: space.label_code for space in session.query(Space).all()}
    assert labels == {"A1": None, "A2": "L-2"}


def test_pull_stops_when_cancelled(session, engine, fake_client, make_store) -> None:
    store = make_store()
    fake_client.records = [{"articleId": str(n)} for n in range(3)]
    cancel = threading.Event()
    cancel.set()

    stats = engine.pull(session, store.id, cancel=cancel)

    assert stats["cancelled"] is True
    assert stats["created"] == 0
    assert session.query(Space).count() == 0


def test_pull_requires_enabled_and_configured_store(session, engine, make_store) -> None:
    disabled = make_store(sync_enabled=False)
    unconfigured = make_store(configured=False)

    with pytest.raises(SyncDisabledError):
        engine.pull(session, disabled.id)
    with pytest.raises(NotConfiguredError):
        engine.push(session, unconfigured.id)
    assert engine.is_connected(session, unconfigured.id) is False


def test_push_sends_article_and_marks_entity_synced(session, engine, fake_client, make_store) -> None:
    store = make_store()
    space = _space(session, store, "A1", name="Front desk", nfcUrl="https://nfc.example.test/a1")
    engine.enqueue(session, store.id, "spaces", space.id, "create")
    assert session.get(Space, space.id).sync_status == "pending"

    stats = engine.push(session, store.id)

    assert stats == {"processed": 1, "succeeded": 1, "failed": 0, "retried": 0, "skipped": 0}
    action, payload = fake_client.calls[0]
    assert action == "create"
    assert payload["article"]["articleId"] == "A1"
    assert payload["article"]["articleName"] == "Front desk"
    assert payload["article"]["nfcUrl"] == "https://nfc.example.test/a1"
    assert _items(session)[0].status == "completed"
    assert session.get(Space, space.id).sync_status == "synced"


def test_link_queued_after_create_goes_out_after_it(session, engine, fake_client, make_store) -> None:
    store = make_store()
    space = _space(session, store, "A1", name="Front desk")
    engine.enqueue(session, store.id, "spaces", space.id, "create")
    engine.enqueue(session, store.id, "spaces", space.id, "link", {"labelCode": "L-1", "articleId": "A1"})

    stats = engine.push(session, store.id)

    assert stats["succeeded"] == 2
    assert [action for action, _ in fake_client.calls] == ["create", "link"]
    assert fake_client.calls[1][1] == {"labelCode": "L-1", "articleId": "A1"}
    assert [item.status for item in _items(session)] == ["completed", "completed"]


def test_link_waits_while_create_backs_off(session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    space = _space(session, store, "A1")
    engine.enqueue(session, store.id, "spaces", space.id, "create")
    engine.enqueue(session, store.id, "spaces", space.id, "link", {"labelCode": "L-1", "articleId": "A1"})
    fake_client.errors["create"] = ExternalSystemError("AIMS returned 503", http_status=503)

    stats = engine.push(session, store.id)

    assert stats["processed"] == 1
    assert stats["retried"] == 1
    assert [action for action, _ in fake_client.calls] == ["create"]

    del fake_client.errors["create"]
    clock.advance(60)
    stats = engine.push(session, store.id)

    assert stats["succeeded"] == 2
    assert [action for action, _ in fake_client.calls] == ["create", "create", "link"]


def test_cancelled_label_change_leaves_entity_synced(session, engine, make_store, clock) -> None:
    store = make_store()
    space = _space(session, store, "A1", label_code="L-1")
    space.sync_status = "synced"
    space.last_synced_at = clock()
    session.commit()

    engine.enqueue(session, store.id, "spaces", space.id, "unlink", {"labelCode": "L-1"})
    assert session.get(Space, space.id).sync_status == "pending"
    engine.enqueue(session, store.id, "spaces", space.id, "link", {"labelCode": "L-1", "articleId": "A1"})

    assert [item.action for item in _items(session)] == ["unlink", "link"]

    other = _space(session, store, "A2", label_code=None)
    other.sync_status = "synced"
    other.last_synced_at = clock()
    session.commit()
    engine.enqueue(session, store.id, "spaces", other.id, "link", {"labelCode": "L-2", "articleId": "A2"})
    result = engine.enqueue(session, store.id, "spaces", other.id, "unlink", {"labelCode": "L-2"})

    assert result is None
    session.expire_all()
    assert session.get(Space, other.id).sync_status == "synced"
    assert session.get(Space, space.id).sync_status == "pending"


def test_push_delete_uses_article_id_from_payload(session, engine, fake_client, make_store) -> None:
    store = make_store()
    engine.enqueue(session, store.id, "conference", 99, "delete", {"articleId": "C5"})

    engine.push(session, store.id)

    assert fake_client.calls == [("delete", {"articleId": "C5"})]


def test_unassigned_person_completes_without_external_call(session, engine, fake_client, make_store) -> None:
    store = make_store()
    person = Person(store_id=store.id, data={"name": "Dana"}, created_at=now_utc())
    session.add(person)
    session.commit()
    engine.enqueue(session, store.id, "people", person.id, "update")

    stats = engine.push(session, store.id)

    assert stats["succeeded"] == 1
    assert fake_client.calls == []


def test_update_for_missing_entity_fails_permanently(session, engine, fake_client, make_store) -> None:
    store = make_store()
    engine.enqueue(session, store.id, "spaces", 404, "update")

    stats = engine.push(session, store.id)

    assert stats["failed"] == 1
    item = _items(session)[0]
    assert item.status == "failed"
    assert item.retry_count == 0
    assert fake_client.calls == []


def test_rejected_link_fails_without_retry(session, engine, fake_client, make_store) -> None:
    store = make_store()
    space = _space(session, store, "A1")
    engine.enqueue(session, store.id, "spaces", space.id, "link", {"labelCode": "L-1", "articleId": "bogus"})
    fake_client.errors["link"] = ExternalSystemError("invalid article id", transient=False, http_status=400)
    before = store_status(session, engine.queue, session.get(Store, store.id), True)

    stats = engine.push(session, store.id)

    assert stats["failed"] == 1
    item = _items(session)[0]
    assert item.status == "failed"
    assert item.retry_count == 0
    assert item.error_message == "invalid article id"
    after = store_status(session, engine.queue, session.get(Store, store.id), True)
    assert after["queue"]["failed"] == before["queue"]["failed"] + 1
    assert after["state"] == "degraded"
    assert session.get(Space, space.id).sync_status == "failed"


def test_transient_failure_is_retried_after_backoff(session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    space = _space(session, store, "A1")
    engine.enqueue(session, store.id, "spaces", space.id, "update")
    fake_client.errors["update"] = ExternalSystemError("AIMS returned 503", http_status=503)

    assert engine.push(session, store.id)["retried"] == 1
    assert engine.push(session, store.id)["processed"] == 0

    del fake_client.errors["update"]
    clock.advance(60)
    stats = engine.push(session, store.id)

    assert stats["succeeded"] == 1
    item = _items(session)[0]
    assert item.status == "completed"
    assert item.retry_count == 1
    assert len(fake_client.calls) == 2


def test_transient_failures_end_in_failed(session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    space = _space(session, store, "A1")
    engine.enqueue(session, store.id, "spaces", space.id, "update")
    fake_client.errors["update"] = ExternalSystemError("timed out")

    outcomes = []
    for _ in range(engine.queue.policy.max_retries + 1):
        stats = engine.push(session, store.id)
        outcomes.append("failed" if stats["failed"] else "retried")
        clock.advance(60)

    assert outcomes[-1] == "failed"
    assert outcomes[:-1] == ["retried"] * engine.queue.policy.max_retries
    assert engine.push(session, store.id)["processed"] == 0
    assert _items(session)[0].status == "failed"


def test_concurrent_push_never_sends_an_item_twice(
    database, session, engine, fake_client, make_store, clock
) -> None:
    store = make_store()
    first = _space(session, store, "A1")
    second = _space(session, store, "A2")
    engine.enqueue(session, store.id, "spaces", first.id, "update")
    engine.enqueue(session, store.id, "spaces", second.id, "update")
    other = ReconciliationEngine(fake_client, engine.queue, clock=clock, worker_id="other-worker")
    nested = []

    def push_from_other_worker(action, payload) -> None:
        fake_client.on_push = None
        with database.session_scope() as other_db:
            nested.append(other.push(other_db, store.id))

    fake_client.on_push = push_from_other_worker

    stats = engine.push(session, store.id)

    sent = sorted(payload["article"]["articleId"] for _, payload in fake_client.calls)
    assert sent == ["A1", "A2"]
    assert stats["processed"] == 1
    assert stats["skipped"] == 1
    assert nested[0]["processed"] == 1
    assert all(item.status == "completed" for item in _items(session))


def test_push_reclaims_expired_lease(session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    space = _space(session, store, "A1")
    item = engine.enqueue(session, store.id, "spaces", space.id, "update")
    assert engine.queue.claim(session, item.id, "dead-worker")

    assert engine.push(session, store.id)["processed"] == 0
    clock.advance(engine.queue.policy.lease_seconds + 1)
    assert engine.push(session, store.id)["processed"] == 0
    reclaimed = _items(session)[0]
    assert reclaimed.status == "pending"
    assert reclaimed.lease_owner is None

    clock.advance(60)
    stats = engine.push(session, store.id)

    assert stats["succeeded"] == 1
    assert _items(session)[0].retry_count == 1


def test_run_job_records_outcome(database, session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    fake_client.records = [{"articleId": "A1", "articleName": "One"}]
    job = SyncJob(store_id=store.id, job_type="full", entities=["spaces"], created_at=clock())
    session.add(job)
    session.commit()

    engine.run_job(database, job.id)

    session.expire_all()
    job = session.get(SyncJob, job.id)
    assert job.status == "completed"
    assert job.stats["pull"]["created"] == 1
    assert job.stats["push"]["processed"] == 0
    assert job.started_at is not None
    assert job.completed_at is not None


def test_run_job_marks_failure(database, session, engine, fake_client, make_store, clock) -> None:
    store = make_store()
    def unreachable(config):
        raise ExternalSystemError("AIMS request timed out")

    fake_client.fetch_articles = unreachable
    job = SyncJob(store_id=store.id, job_type="pull", created_at=clock())
    session.add(job)
    session.commit()

    engine.run_job(database, job.id)

    session.expire_all()
    job = session.get(SyncJob, job.id)
    assert job.status == "failed"
    assert job.error_message == "AIMS request timed out"
