"""Exceptions raised by the task registry and the sync machinery."""
from __future__ import annotations

from typing import Optional


class TaskSyncError(Exception):
    """Base class for task sync errors."""


class TaskNotFoundError(TaskSyncError):
    def __init__(self, task_id: str):
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class PersistenceError(TaskSyncError):
    """A store transaction failed; the surrounding operation must be aborted."""


class SerializationError(TaskSyncError):
    def __init__(self, message: str, operation_id: Optional[int] = None):
        super().__init__(message)
        self.operation_id = operation_id


class DeliveryError(TaskSyncError):
    """The remote authority could not accept an operation (retryable)."""


__all__ = [
    "DeliveryError",
    "PersistenceError",
    "SerializationError",
    "TaskNotFoundError",
    "TaskSyncError",
]
