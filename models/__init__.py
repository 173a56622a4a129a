"""ORM models exposed by the task sync application."""
from .task import Task, TaskSnapshot
from .sync_op import SyncQueueItem

__all__ = ["Task", "TaskSnapshot", "SyncQueueItem"]
