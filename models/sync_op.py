"""SQLModel table for queued synchronization operations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


OP_CREATE = "create"
OP_UPDATE = "update"
OP_DELETE = "delete"

VALID_OPS = (OP_CREATE, OP_UPDATE, OP_DELETE)


class SyncQueueItem(SQLModel, table=True):
    __tablename__ = "sync_queue"
    __table_args__ = (
        CheckConstraint(
            "operation_type IN ('create', 'update', 'delete')",
            name="chk_operation_type",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    operation_type: str
    task_data: str
    retry_count: int = Field(default=0, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    last_attempt: Optional[datetime] = None
    error_message: Optional[str] = None
    next_try_at: datetime = Field(default_factory=utc_now)
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None


__all__ = ["OP_CREATE", "OP_DELETE", "OP_UPDATE", "SyncQueueItem", "VALID_OPS"]
