from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Callable, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from core.settings import SYNC_LOG_PATH, SyncSettings
from datetime_utils import ensure_utc, utc_now
from models.task import SYNC_ERROR, Task
from services.errors import DeliveryError, PersistenceError, SerializationError
from services.remote import RemoteAuthority
from services.sync_queue import QueuedOperation, SyncQueue
from storage.db import get_session


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("tasksync.sync")
    if not logger.handlers:
        SYNC_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SyncReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    selected: int = 0
    synced: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    errors: List[Tuple[int, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "selected": self.selected,
            "synced": self.synced,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "skipped": self.skipped,
            "errors": [{"operation_id": op_id, "error": message} for op_id, message in self.errors],
        }


@dataclass(frozen=True)
class SyncStatus:
    pending_count: int
    error_count: int
    last_sync_time: Optional[datetime]
    in_progress: bool

    def to_dict(self) -> dict:
        return {
            "pending_count": self.pending_count,
            "error_count": self.error_count,
            "last_sync_time": _iso(self.last_sync_time),
            "in_progress": self.in_progress,
        }


class SyncEngine:
    def __init__(
        self,
        settings: SyncSettings,
        queue: SyncQueue,
        authority: RemoteAuthority,
        session_factory: Callable[[], Session] = get_session,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.queue = queue
        self.authority = authority
        self._session_factory = session_factory
        self.logger = logger or _ensure_logger()
        self._state_lock = threading.Lock()
        self._running = 0

    # ------------------------------------------------------------------
    # Public API
    def process_queue(self) -> SyncReport:
        """Run one bounded pass over the queue.

        Individual operation failures are counted in the report; only an
        unreadable queue raises (:class:`PersistenceError`).
        """

        report = SyncReport(started_at=utc_now())
        with self._state_lock:
            self._running += 1
        try:
            try:
                batch = self.queue.dequeue_batch(self.settings.max_retries, self.settings.batch_size)
            except PersistenceError as exc:
                self.logger.error("Sync pass aborted: %s", exc)
                raise
            report.selected = len(batch)
            self.logger.debug("Sync pass selected %d operations", len(batch))

            held_back: Set[str] = set()
            for op_id in batch:
                try:
                    self._process_one(op_id, held_back, report)
                except PersistenceError as exc:
                    self.logger.error("Sync op %s left queued: %s", op_id, exc)
                    report.errors.append((op_id, str(exc)))
        finally:
            with self._state_lock:
                self._running -= 1
            report.finished_at = utc_now()

        if report.selected:
            self.logger.info(
                "Sync pass: %d synced, %d failed, %d exhausted, %d skipped",
                report.synced,
                report.failed,
                report.exhausted,
                report.skipped,
            )
        return report

    def trigger_sync(self) -> SyncReport:
        return self.process_queue()

    def get_status(self) -> SyncStatus:
        try:
            pending = self.queue.pending_count(self.settings.max_retries)
            claims = self.queue.active_claims()
            with self._session_factory() as session:
                errors = session.exec(
                    select(func.count()).select_from(Task).where(Task.sync_status == SYNC_ERROR)
                ).one()
                last_sync = session.exec(select(func.max(Task.last_synced_at))).one()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read sync status: {exc}") from exc
        with self._state_lock:
            running = self._running > 0
        return SyncStatus(
            pending_count=int(pending),
            error_count=int(errors),
            last_sync_time=ensure_utc(last_sync),
            in_progress=running or claims > 0,
        )

    def list_queue(self) -> List[QueuedOperation]:
        return self.queue.contents()

    # ------------------------------------------------------------------
    def _process_one(self, op_id: int, held_back: Set[str], report: SyncReport) -> None:
        entry = self.queue.get(op_id)
        if entry is None:
            # delivered by an earlier, interrupted pass and already removed
            report.skipped += 1
            return

        if entry.task_id in held_back:
            self.queue.release(op_id)
            report.skipped += 1
            return

        try:
            snapshot = entry.decode_snapshot()
        except SerializationError as exc:
            self.logger.error("Skipping sync op %s: %s", op_id, exc)
            self.queue.release(op_id)
            held_back.add(entry.task_id)
            report.skipped += 1
            report.errors.append((op_id, str(exc)))
            return

        try:
            result = self.authority.deliver(entry.operation_type, snapshot)
        except DeliveryError as exc:
            self.logger.warning("Push op %s for task %s failed: %s", entry.operation_type, entry.task_id, exc)
            self._fail(entry, str(exc), held_back, report)
            return
        except Exception as exc:
            self.logger.error("Push op %s for task %s crashed: %s", entry.operation_type, entry.task_id, exc)
            self._fail(entry, str(exc) or exc.__class__.__name__, held_back, report)
            return

        if not result.accepted:
            self.logger.warning(
                "Push op %s for task %s rejected: %s", entry.operation_type, entry.task_id, result.message
            )
            self._fail(entry, result.message or "rejected by remote authority", held_back, report)
            return

        try:
            self.queue.record_success(
                op_id, result.server_id, result.state, max_retries=self.settings.max_retries
            )
        except PersistenceError as exc:
            # stays queued; the authority treats the replay as a no-op
            self.logger.error("Could not mark op %s synced: %s", op_id, exc)
            held_back.add(entry.task_id)
            report.errors.append((op_id, str(exc)))
            self._release_quietly(op_id)
            return
        report.synced += 1

    def _release_quietly(self, op_id: int) -> None:
        try:
            self.queue.release(op_id)
        except PersistenceError as exc:
            self.logger.warning("Claim on op %s kept until it expires: %s", op_id, exc)

    def _fail(self, entry: QueuedOperation, message: str, held_back: Set[str], report: SyncReport) -> None:
        held_back.add(entry.task_id)
        report.errors.append((entry.id, message))
        try:
            exhausted = self.queue.record_failure(entry.id, message, max_retries=self.settings.max_retries)
        except PersistenceError as exc:
            self.logger.error("Could not record failure of op %s: %s", entry.id, exc)
            report.failed += 1
            return
        if exhausted:
            self.logger.error(
                "Op %s for task %s exhausted %d retries, task marked as error",
                entry.id,
                entry.task_id,
                self.settings.max_retries,
            )
            report.exhausted += 1
        else:
            report.failed += 1


__all__ = ["SyncEngine", "SyncReport", "SyncStatus"]
