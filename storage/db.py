# tasksync/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.task  # noqa: F401
import models.sync_op  # noqa: F401
from storage import migrations


_engine: Optional[Engine] = None


def _is_memory(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def make_engine(url: Optional[str] = None) -> Engine:
    """Create an engine for ``url`` (defaults to the on-disk ``DB_PATH``)."""

    if url is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{Path(DB_PATH).as_posix()}"

    memory = _is_memory(url)
    kwargs = {"echo": False, "connect_args": {"check_same_thread": False}}
    if memory:
        # one shared connection, otherwise every session sees its own empty db
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        if not memory:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.close()

    return engine


def init_db(engine: Optional[Engine] = None) -> Engine:
    target = engine or get_engine()
    SQLModel.metadata.create_all(target)
    migrations.run_all(target)
    return target


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine()
    return _engine


def get_session() -> Session:
    return Session(get_engine())


def session_factory(engine: Engine) -> Callable[[], Session]:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = ["get_engine", "get_session", "init_db", "make_engine", "session_factory"]
