import time

from core.settings import SyncSettings
from models.task import SYNC_SYNCED
from services.errors import PersistenceError
from services.remote import InMemoryRemoteAuthority
from services.sync_engine import SyncEngine
from services.sync_queue import SyncQueue
from services.sync_worker import SyncWorker
from services.tasks import TaskService
from storage.db import init_db, make_engine, session_factory as make_session_factory


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_run_once_drains_queue(tasks, authority, make_sync_engine):
    worker = SyncWorker(make_sync_engine(authority), interval_sec=60)
    tasks.add("A")

    report = worker.run_once()

    assert report.synced == 1
    assert worker.passes == 1
    assert worker.last_report is report


def test_run_once_survives_store_errors(settings, session_factory, authority, make_sync_engine):
    class BrokenQueue(SyncQueue):
        def dequeue_batch(self, max_retries, batch_size):
            raise PersistenceError("disk I/O error")

    engine = make_sync_engine(authority, engine_queue=BrokenQueue(settings, session_factory))
    worker = SyncWorker(engine, interval_sec=60)

    assert worker.run_once() is None
    assert worker.passes == 0


def test_interval_defaults_to_settings(authority, make_sync_engine):
    engine = make_sync_engine(authority, SyncSettings(auto_sync_interval_sec=12))
    assert SyncWorker(engine).interval_sec == 12


def test_worker_thread_syncs_edits_on_notify(tmp_path, sync_logger):
    db = init_db(make_engine(f"sqlite:///{(tmp_path / 'tasks.db').as_posix()}"))
    factory = make_session_factory(db)
    settings = SyncSettings(max_retries=3, batch_size=10)
    queue = SyncQueue(settings, factory, owner="worker-test")
    tasks = TaskService(queue, factory)
    authority = InMemoryRemoteAuthority()
    engine = SyncEngine(settings, queue, authority, factory, logger=sync_logger)
    worker = SyncWorker(engine, interval_sec=60)
    worker.attach(tasks)
    worker.start()
    try:
        assert worker.running
        task = tasks.add("edited while online")
        assert _wait_for(lambda: tasks.get(task.id).sync_status == SYNC_SYNCED)
        assert queue.contents() == []
    finally:
        worker.stop()
        worker.detach(tasks)
        db.dispose()

    assert not worker.running
    assert worker.passes >= 1
