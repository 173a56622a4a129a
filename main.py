# tasksync/main.py
"""Console entry point: manage tasks offline and push them to the remote."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from core.settings import APP_NAME, SIMULATION, SYNC, SimulationSettings, SyncSettings
from datetime_utils import to_rfc3339_utc
from models.task import Task
from services.errors import PersistenceError, TaskNotFoundError
from services.remote import RemoteAuthority, SimulatedRemoteAuthority
from services.sync_engine import SyncEngine
from services.sync_queue import SyncQueue
from services.sync_worker import SyncWorker
from services.tasks import TaskService
from storage.db import init_db, make_engine, session_factory


logger = logging.getLogger("tasksync")


class App:
    """Wires the store, registry, queue and engine together."""

    def __init__(
        self,
        *,
        database_url: Optional[str] = None,
        settings: SyncSettings = SYNC,
        simulation: SimulationSettings = SIMULATION,
        authority: Optional[RemoteAuthority] = None,
        sync_logger: Optional[logging.Logger] = None,
    ) -> None:
        self.db = init_db(make_engine(database_url))
        factory = session_factory(self.db)
        self.settings = settings
        self.queue = SyncQueue(settings, factory)
        self.tasks = TaskService(self.queue, factory)
        self.authority = authority or SimulatedRemoteAuthority(
            failure_rate=simulation.failure_rate,
            delay_sec=simulation.delay_ms / 1000.0,
            rng_seed=simulation.seed,
        )
        self.engine = SyncEngine(settings, self.queue, self.authority, factory, logger=sync_logger)


def _task_dict(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "completed": task.completed,
        "is_deleted": task.is_deleted,
        "sync_status": task.sync_status,
        "server_id": task.server_id,
        "last_synced_at": to_rfc3339_utc(task.last_synced_at),
        "created_at": to_rfc3339_utc(task.created_at),
        "updated_at": to_rfc3339_utc(task.updated_at),
    }


def _print(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tasksync", description=f"{APP_NAME}: offline task list with sync")
    parser.add_argument("--database", help="SQLAlchemy URL (defaults to the data dir database)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="create a task")
    add.add_argument("title")
    add.add_argument("--description")

    upd = sub.add_parser("update", help="update a task")
    upd.add_argument("task_id")
    upd.add_argument("--title")
    upd.add_argument("--description")
    done = upd.add_mutually_exclusive_group()
    done.add_argument("--completed", dest="completed", action="store_true", default=None)
    done.add_argument("--not-completed", dest="completed", action="store_false")

    rm = sub.add_parser("delete", help="soft-delete a task")
    rm.add_argument("task_id")

    sub.add_parser("list", help="list live tasks")
    sub.add_parser("sync", help="run one sync pass")
    sub.add_parser("status", help="show sync status")
    sub.add_parser("queue", help="show the sync queue")

    watch = sub.add_parser("watch", help="keep syncing in the background until interrupted")
    watch.add_argument("--interval", type=float, default=None)
    return parser


def run(argv: Optional[List[str]] = None, app: Optional[App] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = app or App(database_url=args.database)

    try:
        if args.command == "add":
            _print(_task_dict(app.tasks.add(args.title, args.description)))
        elif args.command == "update":
            task = app.tasks.update(
                args.task_id,
                title=args.title,
                description=args.description,
                completed=args.completed,
            )
            _print(_task_dict(task))
        elif args.command == "delete":
            _print(_task_dict(app.tasks.delete(args.task_id)))
        elif args.command == "list":
            _print([_task_dict(t) for t in app.tasks.list_tasks()])
        elif args.command == "sync":
            _print(app.engine.trigger_sync().to_dict())
        elif args.command == "status":
            _print(app.engine.get_status().to_dict())
        elif args.command == "queue":
            _print([entry.to_dict() for entry in app.engine.list_queue()])
        elif args.command == "watch":
            _watch(app, args.interval)
    except TaskNotFoundError as exc:
        logger.error("%s", exc)
        return 2
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    except PersistenceError as exc:
        logger.error("Store unavailable: %s", exc)
        return 1
    return 0


def _watch(app: App, interval: Optional[float]) -> None:
    worker = SyncWorker(app.engine, interval)
    if app.settings.auto_push_on_edit:
        worker.attach(app.tasks)
    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Signal %s received, shutting down...", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    worker.start()
    logger.info("Syncing every %ss. Press Ctrl+C to stop.", worker.interval_sec)
    try:
        stop.wait()
    finally:
        worker.stop()
        worker.detach(app.tasks)


if __name__ == "__main__":
    sys.exit(run())
