from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from core.settings import SyncSettings
from datetime_utils import ensure_utc, utc_now
from models.sync_op import SyncQueueItem
from models.task import SYNC_ERROR, SYNC_PENDING, SYNC_SYNCED, Task, TaskSnapshot
from services.errors import PersistenceError, SerializationError
from services.sync_queue import SyncQueue


def _task(session_factory, task_id):
    with session_factory() as session:
        return session.get(Task, task_id)


def _corrupt(session_factory, op_id, data="{not json"):
    with session_factory() as session:
        row = session.get(SyncQueueItem, op_id)
        row.task_data = data
        session.add(row)
        session.commit()


def test_enqueue_rejects_unknown_operation(queue, session_factory, tasks):
    task = tasks.add("A")
    with session_factory() as session:
        with pytest.raises(ValueError):
            queue.enqueue(session, task.id, "upsert", task.snapshot())


def test_enqueue_for_missing_task_is_persistence_error(queue, session_factory):
    now = utc_now()
    snapshot = TaskSnapshot(id="ghost", title="x", created_at=now, updated_at=now)
    with session_factory() as session:
        with pytest.raises(PersistenceError):
            queue.enqueue(session, "ghost", "create", snapshot)


def test_store_rejects_unknown_operation_type(session_factory, tasks):
    task = tasks.add("A")
    with session_factory() as session:
        session.add(SyncQueueItem(task_id=task.id, operation_type="upsert", task_data="{}"))
        with pytest.raises(IntegrityError):
            session.commit()


def test_dequeue_batch_follows_insertion_order_and_batch_size(queue, tasks):
    first = tasks.add("first")
    second = tasks.add("second")
    tasks.update(first.id, title="first again")
    tasks.add("third")

    ids = queue.dequeue_batch(max_retries=3, batch_size=3)

    entries = {e.id: e for e in queue.contents()}
    assert [(entries[i].task_id, entries[i].operation_type) for i in ids] == [
        (first.id, "create"),
        (second.id, "create"),
        (first.id, "update"),
    ]


def test_dequeue_batch_skips_exhausted_entries(settings, session_factory, tasks):
    queue = SyncQueue(settings, session_factory)
    task = tasks.add("A")
    [op_id] = queue.dequeue_batch(3, 10)
    for _ in range(3):
        queue.record_failure(op_id, "boom")

    assert queue.dequeue_batch(3, 10) == []
    assert queue.dequeue_batch(4, 10) == [op_id]
    assert queue.pending_count(3) == 0
    assert _task(session_factory, task.id).sync_status == SYNC_ERROR


def test_claimed_entries_are_not_handed_out_twice(settings, session_factory, tasks):
    tasks.add("A")
    tasks.add("B")
    first = SyncQueue(settings, session_factory, owner="pass-1")
    second = SyncQueue(settings, session_factory, owner="pass-2")

    got_first = first.dequeue_batch(3, 1)
    got_second = second.dequeue_batch(3, 10)

    assert len(got_first) == 1
    assert len(got_second) == 1
    assert set(got_first).isdisjoint(got_second)
    assert second.dequeue_batch(3, 10) == []
    assert first.active_claims() == 2


def test_later_entries_of_a_claimed_task_wait(queue, tasks):
    task = tasks.add("A")
    tasks.update(task.id, title="B")

    [create_id] = queue.dequeue_batch(3, 1)
    assert queue.dequeue_batch(3, 10) == []

    queue.release(create_id)
    assert queue.dequeue_batch(3, 10) == [create_id, create_id + 1]


def test_stale_claims_can_be_taken_over(session_factory, tasks):
    settings = SyncSettings(max_retries=3, batch_size=10, claim_timeout_sec=60)
    queue = SyncQueue(settings, session_factory)
    tasks.add("A")
    [op_id] = queue.dequeue_batch(3, 10)

    with session_factory() as session:
        row = session.get(SyncQueueItem, op_id)
        row.claimed_at = utc_now() - timedelta(minutes=5)
        session.add(row)
        session.commit()

    assert queue.active_claims() == 0
    assert queue.dequeue_batch(3, 10) == [op_id]


def test_record_success_removes_entry_and_marks_synced(queue, tasks, session_factory):
    task = tasks.add("A")
    [op_id] = queue.dequeue_batch(3, 10)

    assert queue.record_success(op_id, "srv-1") is True

    assert queue.contents() == []
    row = _task(session_factory, task.id)
    assert row.sync_status == SYNC_SYNCED
    assert row.server_id == "srv-1"
    assert row.last_synced_at is not None
    assert queue.record_success(op_id, "srv-1") is False


def test_record_success_waits_for_remaining_entries(queue, tasks, session_factory):
    task = tasks.add("A")
    tasks.update(task.id, title="B")
    create_id, update_id = queue.dequeue_batch(3, 10)

    queue.record_success(create_id, "srv-1")
    row = _task(session_factory, task.id)
    assert row.sync_status == SYNC_PENDING
    assert row.server_id == "srv-1"

    queue.record_success(update_id, "srv-1")
    assert _task(session_factory, task.id).sync_status == SYNC_SYNCED


def test_record_success_adopts_newer_remote_state(queue, tasks, session_factory):
    task = tasks.add("local")
    [op_id] = queue.dequeue_batch(3, 10)
    remote = task.snapshot().model_copy(
        update={"title": "remote", "completed": True, "updated_at": utc_now() + timedelta(hours=1)}
    )

    queue.record_success(op_id, "srv-1", remote)

    row = _task(session_factory, task.id)
    assert row.title == "remote"
    assert row.completed is True
    assert ensure_utc(row.updated_at) == remote.updated_at
    assert row.sync_status == SYNC_SYNCED


def test_record_success_ignores_older_remote_state(queue, tasks, session_factory):
    task = tasks.add("local")
    [op_id] = queue.dequeue_batch(3, 10)
    remote = task.snapshot().model_copy(
        update={"title": "stale", "updated_at": ensure_utc(task.updated_at) - timedelta(hours=1)}
    )

    queue.record_success(op_id, "srv-1", remote)

    assert _task(session_factory, task.id).title == "local"


def test_retry_count_reaching_limit_marks_task_error(queue, tasks, session_factory):
    task = tasks.add("A")
    [op_id] = queue.dequeue_batch(3, 10)

    assert queue.record_failure(op_id, "timeout") is False
    assert queue.record_failure(op_id, "timeout") is False
    assert _task(session_factory, task.id).sync_status == SYNC_PENDING

    assert queue.record_failure(op_id, "timeout") is True
    assert _task(session_factory, task.id).sync_status == SYNC_ERROR

    [entry] = queue.contents()
    assert entry.retry_count == 3
    assert entry.error_message == "timeout"
    assert entry.last_attempt is not None
    assert entry.claimed_by is None


def test_record_failure_truncates_long_messages(queue, tasks):
    tasks.add("A")
    [op_id] = queue.dequeue_batch(3, 10)
    queue.record_failure(op_id, "x" * 5000)
    assert len(queue.get(op_id).error_message) == 1000


def test_backoff_delays_next_attempt(session_factory, tasks):
    settings = SyncSettings(max_retries=5, batch_size=10, retry_backoff_sec=30)
    queue = SyncQueue(settings, session_factory)
    tasks.add("A")
    [op_id] = queue.dequeue_batch(5, 10)

    queue.record_failure(op_id, "offline")

    assert queue.dequeue_batch(5, 10) == []
    assert queue.pending_count() == 1
    entry = queue.get(op_id)
    assert entry.next_try_at - entry.last_attempt == timedelta(seconds=30)


def test_decode_snapshot_failure_raises_serialization_error(queue, tasks, session_factory):
    tasks.add("A")
    [entry] = queue.contents()
    _corrupt(session_factory, entry.id)

    broken = queue.get(entry.id)
    with pytest.raises(SerializationError) as excinfo:
        broken.decode_snapshot()
    assert excinfo.value.operation_id == entry.id
    assert [e.id for e in queue.contents()] == [entry.id]


def test_contents_is_read_only_and_ordered(queue, tasks):
    a = tasks.add("A")
    b = tasks.add("B")
    tasks.delete(a.id)

    before = queue.contents()
    again = queue.contents()

    assert [(e.task_id, e.operation_type) for e in before] == [
        (a.id, "create"),
        (b.id, "create"),
        (a.id, "delete"),
    ]
    assert [e.id for e in before] == [e.id for e in again]
    assert before[0].to_dict()["operation_type"] == "create"


def test_exhausted_entries_do_not_hold_back_later_ones(queue, tasks, session_factory):
    task = tasks.add("A")
    [create_id] = queue.dequeue_batch(3, 10)
    for _ in range(3):
        queue.record_failure(create_id, "offline")
    assert _task(session_factory, task.id).sync_status == SYNC_ERROR

    tasks.update(task.id, title="B")
    [update_id] = queue.dequeue_batch(3, 10)
    assert update_id != create_id

    queue.record_success(update_id, "srv-1")

    assert _task(session_factory, task.id).sync_status == SYNC_SYNCED
    assert [e.id for e in queue.contents()] == [create_id]


def test_explicit_retry_limit_overrides_queue_settings(queue, tasks, session_factory):
    task = tasks.add("A")
    [op_id] = queue.dequeue_batch(5, 10)

    results = [queue.record_failure(op_id, "offline", max_retries=5) for _ in range(5)]

    assert results == [False, False, False, False, True]
    assert _task(session_factory, task.id).sync_status == SYNC_ERROR
    assert queue.pending_count(5) == 0
