# tasksync/models/task.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from datetime_utils import ensure_utc, utc_now


SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_ERROR = "error"

SYNC_STATUSES = (SYNC_PENDING, SYNC_SYNCED, SYNC_ERROR)


def _new_task_id() -> str:
    return str(uuid.uuid4())


class TaskSnapshot(SQLModel):
    """Serializable view of a task as it was when an operation was queued."""

    id: str
    title: str
    description: Optional[str] = None
    completed: bool = False
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint(
            "sync_status IN ('pending', 'synced', 'error')",
            name="chk_sync_status",
        ),
    )

    id: str = Field(default_factory=_new_task_id, primary_key=True)
    title: str
    description: Optional[str] = None
    completed: bool = False
    is_deleted: bool = Field(default=False, index=True)
    sync_status: str = Field(default=SYNC_PENDING, index=True)
    server_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now, index=True)

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            title=self.title,
            description=self.description,
            completed=bool(self.completed),
            is_deleted=bool(self.is_deleted),
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
        )


__all__ = [
    "SYNC_ERROR",
    "SYNC_PENDING",
    "SYNC_STATUSES",
    "SYNC_SYNCED",
    "Task",
    "TaskSnapshot",
]
