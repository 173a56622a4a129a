from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.settings import SYNC, SyncSettings
from datetime_utils import ensure_utc, later_of, utc_now
from models.sync_op import SyncQueueItem, VALID_OPS
from models.task import SYNC_ERROR, SYNC_SYNCED, Task, TaskSnapshot
from services.errors import PersistenceError, SerializationError
from storage.db import get_session


logger = logging.getLogger("tasksync.queue")

ERROR_MESSAGE_LIMIT = 1000


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class QueuedOperation:
    id: int
    task_id: str
    operation_type: str
    task_data: str
    retry_count: int
    created_at: datetime
    last_attempt: Optional[datetime]
    error_message: Optional[str]
    next_try_at: Optional[datetime]
    claimed_by: Optional[str]

    @classmethod
    def from_row(cls, row: SyncQueueItem) -> "QueuedOperation":
        return cls(
            id=row.id,
            task_id=row.task_id,
            operation_type=row.operation_type,
            task_data=row.task_data,
            retry_count=row.retry_count,
            created_at=ensure_utc(row.created_at),
            last_attempt=ensure_utc(row.last_attempt),
            error_message=row.error_message,
            next_try_at=ensure_utc(row.next_try_at),
            claimed_by=row.claimed_by,
        )

    def decode_snapshot(self) -> TaskSnapshot:
        try:
            return TaskSnapshot.model_validate_json(self.task_data)
        except (ValidationError, ValueError) as exc:
            raise SerializationError(
                f"queue entry {self.id} has an unreadable snapshot: {exc}",
                operation_id=self.id,
            ) from exc

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "operation_type": self.operation_type,
            "task_data": self.task_data,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "error_message": self.error_message,
        }


class SyncQueue:
    """Durable FIFO of task operations waiting for delivery."""

    def __init__(
        self,
        settings: SyncSettings = SYNC,
        session_factory: Callable[[], Session] = get_session,
        *,
        owner: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self.owner = owner or _default_owner()

    # ------------------------------------------------------------------
    # Writes
    def enqueue(
        self,
        session: Session,
        task_id: str,
        operation_type: str,
        snapshot: TaskSnapshot,
    ) -> int:
        """Append an operation inside the caller's transaction.

        Nothing is committed here: the row becomes durable together with the
        task mutation when the caller commits ``session``.
        """

        if operation_type not in VALID_OPS:
            raise ValueError(f"Unsupported op: {operation_type}")
        now = utc_now()
        record = SyncQueueItem(
            task_id=task_id,
            operation_type=operation_type,
            task_data=snapshot.model_dump_json(),
            retry_count=0,
            created_at=now,
            next_try_at=now,
        )
        try:
            session.add(record)
            session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to insert into sync queue: {exc}") from exc
        logger.debug("Queued %s for task %s as #%s", operation_type, task_id, record.id)
        return record.id

    def dequeue_batch(self, max_retries: int, batch_size: int) -> List[int]:
        """Claim up to ``batch_size`` eligible entries in delivery order.

        An entry is eligible while ``retry_count < max_retries`` and its
        backoff has elapsed. Entries behind a busy or waiting entry of the
        same task are left alone so a task's operations are never reordered.
        An exhausted entry is retained for inspection only and does not hold
        back the entries queued after it.
        """

        if batch_size <= 0:
            return []
        now = utc_now()
        stale_before = now - timedelta(seconds=self.settings.claim_timeout_sec)
        token = f"{self.owner}:{uuid.uuid4().hex[:8]}"
        claimed: List[int] = []
        blocked: set[str] = set()

        try:
            with self._session_factory() as session:
                stmt = (
                    select(
                        SyncQueueItem.id,
                        SyncQueueItem.task_id,
                        SyncQueueItem.next_try_at,
                        SyncQueueItem.claimed_by,
                        SyncQueueItem.claimed_at,
                    )
                    .where(SyncQueueItem.retry_count < max_retries)
                    .order_by(SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc())
                )
                rows = list(session.exec(stmt))

                for row in rows:
                    if len(claimed) >= batch_size:
                        break
                    if row.task_id in blocked:
                        continue
                    claimed_at = ensure_utc(row.claimed_at)
                    if row.claimed_by and claimed_at and claimed_at >= stale_before:
                        blocked.add(row.task_id)
                        continue
                    next_try = ensure_utc(row.next_try_at)
                    if next_try and next_try > now:
                        blocked.add(row.task_id)
                        continue
                    result = session.connection().execute(
                        update(SyncQueueItem)
                        .where(SyncQueueItem.id == row.id)
                        .where(
                            or_(
                                SyncQueueItem.claimed_by.is_(None),
                                SyncQueueItem.claimed_at < stale_before,
                            )
                        )
                        .values(claimed_by=token, claimed_at=now)
                    )
                    if result.rowcount == 1:
                        claimed.append(row.id)
                    else:
                        blocked.add(row.task_id)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to query sync queue: {exc}") from exc

        return claimed

    def record_success(
        self,
        operation_id: int,
        server_id: Optional[str],
        remote_state: Optional[TaskSnapshot] = None,
        max_retries: Optional[int] = None,
    ) -> bool:
        """Drop a delivered entry and settle its task, atomically.

        The task only becomes ``synced`` once no other deliverable entry of it
        is left. Entries that already spent ``max_retries`` are kept for
        inspection but no longer hold the task back. When the authority kept
        a newer state than ours, that state is adopted locally. Returns
        ``False`` if the entry was already gone.
        """

        limit = self._limit(max_retries)
        try:
            with self._session_factory() as session:
                item = session.get(SyncQueueItem, operation_id)
                if item is None:
                    return False
                task = session.get(Task, item.task_id)
                session.delete(item)
                session.flush()

                if task is not None:
                    task.server_id = server_id or task.server_id
                    task.last_synced_at = utc_now()
                    remaining = session.exec(
                        select(func.count())
                        .select_from(SyncQueueItem)
                        .where(SyncQueueItem.task_id == task.id)
                        .where(SyncQueueItem.retry_count < limit)
                    ).one()
                    if int(remaining) == 0:
                        if remote_state is not None:
                            self._adopt_if_newer(task, remote_state)
                        task.sync_status = SYNC_SYNCED
                    session.add(task)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to mark operation {operation_id} synced: {exc}") from exc
        return True

    def record_failure(
        self,
        operation_id: int,
        error_message: Optional[str],
        max_retries: Optional[int] = None,
    ) -> bool:
        """Spend one retry credit. Returns ``True`` when retries are exhausted."""

        limit = self._limit(max_retries)
        message = (error_message or "unknown error")[:ERROR_MESSAGE_LIMIT]
        try:
            with self._session_factory() as session:
                item = session.get(SyncQueueItem, operation_id)
                if item is None:
                    return False
                now = utc_now()
                item.retry_count += 1
                item.last_attempt = now
                item.error_message = message
                item.next_try_at = now + self._backoff(item.retry_count)
                item.claimed_by = None
                item.claimed_at = None
                session.add(item)

                exhausted = item.retry_count >= limit
                if exhausted:
                    task = session.get(Task, item.task_id)
                    if task is not None:
                        task.sync_status = SYNC_ERROR
                        session.add(task)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to update sync queue item {operation_id}: {exc}") from exc
        return exhausted

    def release(self, operation_id: int) -> None:
        try:
            with self._session_factory() as session:
                item = session.get(SyncQueueItem, operation_id)
                if item is None:
                    return
                item.claimed_by = None
                item.claimed_at = None
                session.add(item)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to release queue item {operation_id}: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    def get(self, operation_id: int) -> Optional[QueuedOperation]:
        try:
            with self._session_factory() as session:
                row = session.get(SyncQueueItem, operation_id)
                return QueuedOperation.from_row(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read queue item {operation_id}: {exc}") from exc

    def contents(self) -> List[QueuedOperation]:
        try:
            with self._session_factory() as session:
                stmt = select(SyncQueueItem).order_by(
                    SyncQueueItem.created_at.asc(), SyncQueueItem.id.asc()
                )
                return [QueuedOperation.from_row(row) for row in session.exec(stmt)]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to query sync queue: {exc}") from exc

    def pending_count(self, max_retries: Optional[int] = None) -> int:
        limit = self._limit(max_retries)
        with self._session_factory() as session:
            stmt = (
                select(func.count())
                .select_from(SyncQueueItem)
                .where(SyncQueueItem.retry_count < limit)
            )
            return int(session.exec(stmt).one())

    def count_for_task(self, task_id: str) -> int:
        with self._session_factory() as session:
            stmt = (
                select(func.count())
                .select_from(SyncQueueItem)
                .where(SyncQueueItem.task_id == task_id)
            )
            return int(session.exec(stmt).one())

    def active_claims(self) -> int:
        stale_before = utc_now() - timedelta(seconds=self.settings.claim_timeout_sec)
        with self._session_factory() as session:
            stmt = (
                select(func.count())
                .select_from(SyncQueueItem)
                .where(SyncQueueItem.claimed_by.is_not(None))
                .where(SyncQueueItem.claimed_at >= stale_before)
            )
            return int(session.exec(stmt).one())

    # ------------------------------------------------------------------
    def _limit(self, max_retries: Optional[int]) -> int:
        return self.settings.max_retries if max_retries is None else max_retries

    def _backoff(self, attempts: int) -> timedelta:
        base = self.settings.retry_backoff_sec
        if base <= 0:
            return timedelta(0)
        delay = min(self.settings.retry_backoff_max_sec, base * 2 ** max(attempts - 1, 0))
        return timedelta(seconds=delay)

    @staticmethod
    def _adopt_if_newer(task: Task, remote_state: TaskSnapshot) -> None:
        local_updated = ensure_utc(task.updated_at)
        remote_updated = ensure_utc(remote_state.updated_at)
        if remote_updated <= local_updated:
            return
        logger.info("Remote state of task %s is newer, adopting it", task.id)
        task.title = remote_state.title
        task.description = remote_state.description
        task.completed = remote_state.completed
        task.is_deleted = remote_state.is_deleted
        task.updated_at = later_of(task.updated_at, remote_updated)


__all__ = ["QueuedOperation", "SyncQueue"]
