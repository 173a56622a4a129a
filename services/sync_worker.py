"""Background trigger that drains the sync queue periodically."""
from __future__ import annotations

import logging
import threading
from typing import Optional

from services.errors import PersistenceError
from services.sync_engine import SyncEngine, SyncReport
from services.tasks import EVENTS, TaskService


logger = logging.getLogger("tasksync.worker")


class SyncWorker:
    def __init__(self, engine: SyncEngine, interval_sec: Optional[float] = None) -> None:
        self.engine = engine
        self.interval_sec = (
            interval_sec if interval_sec is not None else engine.settings.auto_sync_interval_sec
        )
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.passes = 0
        self.last_report: Optional[SyncReport] = None

    def attach(self, tasks: TaskService) -> None:
        """Wake the worker whenever the registry changes a task."""

        for event in EVENTS:
            tasks.subscribe(event, self._on_task_changed)

    def detach(self, tasks: TaskService) -> None:
        for event in EVENTS:
            tasks.unsubscribe(event, self._on_task_changed)

    def notify(self) -> None:
        self._wake.set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="tasksync-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Optional[SyncReport]:
        try:
            report = self.engine.process_queue()
        except PersistenceError as exc:
            logger.error("Sync pass failed: %s", exc)
            return None
        self.passes += 1
        self.last_report = report
        return report

    def _on_task_changed(self, _task_id: str) -> None:
        self.notify()

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._wake.wait(self.interval_sec)
            self._wake.clear()


__all__ = ["SyncWorker"]
