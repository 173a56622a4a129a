# tasksync/services/tasks.py
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from datetime_utils import later_of, utc_now
from models.sync_op import OP_CREATE, OP_DELETE, OP_UPDATE
from models.task import SYNC_PENDING, Task
from services.errors import PersistenceError, TaskNotFoundError
from services.sync_queue import SyncQueue
from storage.db import get_session


logger = logging.getLogger("tasksync.tasks")

EVENTS = ("after_create", "after_update", "after_delete")


class TaskService:
    """Task registry. Every mutation is queued for sync in the same transaction."""

    def __init__(
        self,
        queue: Optional[SyncQueue] = None,
        session_factory: Callable[[], Session] = get_session,
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue or SyncQueue(session_factory=session_factory)
        self._listeners: Dict[str, Set[Callable[[str], None]]] = {name: set() for name in EVENTS}

    def subscribe(self, event: str, callback: Callable[[str], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        self._listeners[event].add(callback)

    def unsubscribe(self, event: str, callback: Callable[[str], None]) -> None:
        if event not in self._listeners:
            return
        self._listeners[event].discard(callback)

    def _emit(self, event: str, task_id: str) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(task_id)
            except Exception:
                logger.exception("Listener for %s failed on task %s", event, task_id)

    # ------------------------------------------------------------------
    def add(self, title: str, description: Optional[str] = None) -> Task:
        title = (title or "").strip()
        if not title:
            raise ValueError("title is required")
        try:
            with self._session_factory() as s:
                t = Task(title=title, description=description or None, sync_status=SYNC_PENDING)
                s.add(t)
                s.flush()
                self.queue.enqueue(s, t.id, OP_CREATE, t.snapshot())
                s.commit()
                s.refresh(t)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to create task: {exc}") from exc
        self._emit("after_create", t.id)
        return t

    def get(self, task_id: str) -> Optional[Task]:
        with self._session_factory() as s:
            t = s.get(Task, task_id)
            if t is None or t.is_deleted:
                return None
            return t

    def require(self, task_id: str) -> Task:
        t = self.get(task_id)
        if t is None:
            raise TaskNotFoundError(task_id)
        return t

    def list_tasks(self) -> List[Task]:
        with self._session_factory() as s:
            stmt = (
                select(Task)
                .where(Task.is_deleted == False)  # noqa: E712
                .order_by(Task.updated_at.desc(), Task.created_at.desc())
            )
            return list(s.exec(stmt))

    def update(
        self,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> Task:
        if title is not None and not title.strip():
            raise ValueError("title must not be blank")
        try:
            with self._session_factory() as s:
                t = self._live(s, task_id)
                if title is not None:
                    t.title = title.strip()
                if description is not None:
                    t.description = description or None
                if completed is not None:
                    t.completed = bool(completed)
                self._touch(t)
                s.add(t)
                s.flush()
                self.queue.enqueue(s, t.id, OP_UPDATE, t.snapshot())
                s.commit()
                s.refresh(t)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to update task {task_id}: {exc}") from exc
        self._emit("after_update", t.id)
        return t

    def delete(self, task_id: str) -> Task:
        """Soft-delete: the row stays so the delete can be delivered."""

        try:
            with self._session_factory() as s:
                t = self._live(s, task_id)
                t.is_deleted = True
                self._touch(t)
                s.add(t)
                s.flush()
                self.queue.enqueue(s, t.id, OP_DELETE, t.snapshot())
                s.commit()
                s.refresh(t)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to delete task {task_id}: {exc}") from exc
        self._emit("after_delete", t.id)
        return t

    # ------------------------------------------------------------------
    @staticmethod
    def _live(s: Session, task_id: str) -> Task:
        t = s.get(Task, task_id)
        if t is None or t.is_deleted:
            raise TaskNotFoundError(task_id)
        return t

    @staticmethod
    def _touch(t: Task) -> None:
        t.updated_at = later_of(t.updated_at, utc_now())
        t.sync_status = SYNC_PENDING


__all__ = ["EVENTS", "TaskService"]
