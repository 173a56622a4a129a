import logging
from typing import List, Optional

import pytest

from core.settings import SyncSettings
from models.task import TaskSnapshot
from services.errors import DeliveryError
from services.remote import DeliveryResult, InMemoryRemoteAuthority
from services.sync_engine import SyncEngine
from services.sync_queue import SyncQueue
from services.tasks import TaskService
from storage.db import init_db, make_engine, session_factory as make_session_factory


class FailingAuthority:
    """Authority that never accepts anything."""

    def __init__(self, message: str = "network down"):
        self.message = message
        self.calls: List[tuple] = []

    def deliver(self, operation_type: str, snapshot: TaskSnapshot) -> DeliveryResult:
        self.calls.append((operation_type, snapshot.id))
        raise DeliveryError(self.message)


class SelectiveAuthority(InMemoryRemoteAuthority):
    """Fails deliveries for the given task ids, accepts the rest."""

    def __init__(self, failing_ids=()):
        super().__init__()
        self.failing_ids = set(failing_ids)

    def deliver(self, operation_type: str, snapshot: TaskSnapshot) -> DeliveryResult:
        if snapshot.id in self.failing_ids:
            raise DeliveryError(f"refused {snapshot.id}")
        return super().deliver(operation_type, snapshot)


@pytest.fixture()
def db_engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture()
def settings():
    return SyncSettings(max_retries=3, batch_size=10)


@pytest.fixture()
def queue(settings, session_factory):
    return SyncQueue(settings, session_factory, owner="test")


@pytest.fixture()
def tasks(queue, session_factory):
    return TaskService(queue, session_factory)


@pytest.fixture()
def authority():
    return InMemoryRemoteAuthority()


@pytest.fixture()
def sync_logger():
    logger = logging.getLogger("tasksync.sync.test")
    logger.setLevel(logging.DEBUG)
    return logger


@pytest.fixture()
def make_sync_engine(settings, queue, session_factory, sync_logger):
    def factory(authority, engine_settings: Optional[SyncSettings] = None, engine_queue=None):
        engine_settings = engine_settings or settings
        if engine_queue is None:
            engine_queue = queue if engine_settings is settings else SyncQueue(
                engine_settings, session_factory, owner="test"
            )
        return SyncEngine(
            engine_settings,
            engine_queue,
            authority,
            session_factory,
            logger=sync_logger,
        )

    return factory
