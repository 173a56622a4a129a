"""Last-write-wins conflict resolution for task operations.

Two writes for the same task are compared by the ``updated_at`` carried in
their snapshots. The later one wins. Equal timestamps are broken by operation
kind, ``delete > update > create``. A write identical in timestamp and kind
to the stored one loses, so replaying an already applied operation is a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from datetime_utils import ensure_utc
from models.sync_op import OP_CREATE, OP_DELETE, OP_UPDATE
from models.task import TaskSnapshot


OPERATION_PRECEDENCE = {
    OP_CREATE: 0,
    OP_UPDATE: 1,
    OP_DELETE: 2,
}

WINNER_INCOMING = "incoming"
WINNER_CURRENT = "current"


@dataclass(frozen=True)
class VersionedWrite:
    operation_type: str
    snapshot: TaskSnapshot


@dataclass(frozen=True)
class Resolution:
    winner: str
    kept: VersionedWrite
    reason: str

    @property
    def incoming_wins(self) -> bool:
        return self.winner == WINNER_INCOMING


def _precedence(operation_type: str) -> int:
    try:
        return OPERATION_PRECEDENCE[operation_type]
    except KeyError:
        raise ValueError(f"Unsupported operation: {operation_type}") from None


def resolve(incoming: VersionedWrite, current: Optional[VersionedWrite]) -> Resolution:
    if current is None:
        return Resolution(WINNER_INCOMING, incoming, "no prior state")

    incoming_ts = ensure_utc(incoming.snapshot.updated_at)
    current_ts = ensure_utc(current.snapshot.updated_at)
    if incoming_ts > current_ts:
        return Resolution(WINNER_INCOMING, incoming, "newer timestamp")
    if incoming_ts < current_ts:
        return Resolution(WINNER_CURRENT, current, "older timestamp")

    incoming_rank = _precedence(incoming.operation_type)
    current_rank = _precedence(current.operation_type)
    if incoming_rank > current_rank:
        return Resolution(WINNER_INCOMING, incoming, "tie broken by operation kind")
    if incoming_rank < current_rank:
        return Resolution(WINNER_CURRENT, current, "tie broken by operation kind")
    return Resolution(WINNER_CURRENT, current, "identical write")


__all__ = [
    "OPERATION_PRECEDENCE",
    "Resolution",
    "VersionedWrite",
    "WINNER_CURRENT",
    "WINNER_INCOMING",
    "resolve",
]
