"""Remote authority capability and its in-process implementations.

The sync engine only depends on :class:`RemoteAuthority`. A production
deployment plugs a network client in behind the same contract; the classes
below keep state in memory and are what the CLI and the tests use.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

from models.sync_op import VALID_OPS
from models.task import TaskSnapshot
from services.conflicts import VersionedWrite, resolve
from services.errors import DeliveryError


logger = logging.getLogger("tasksync.remote")


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing one operation to the authority.

    ``state`` is the authority's effective state for the task after the
    operation was considered; ``applied`` is ``False`` when a newer write
    already held there (or the operation was a replay).
    """

    accepted: bool
    server_id: Optional[str] = None
    state: Optional[TaskSnapshot] = None
    applied: bool = False
    message: Optional[str] = None


class RemoteAuthority(Protocol):
    def deliver(self, operation_type: str, snapshot: TaskSnapshot) -> DeliveryResult:
        """Deliver one operation. Raises :class:`DeliveryError` on transient failure."""
        ...  # pragma: no cover


@dataclass
class _StoredWrite:
    server_id: str
    write: VersionedWrite


class InMemoryRemoteAuthority:
    """Authority that keeps the latest write per task and applies if newer.

    Replays of an operation are accepted without changing anything, so
    at-least-once delivery from the engine is safe.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, _StoredWrite] = {}
        self.deliveries: List[Tuple[str, str]] = []

    def deliver(self, operation_type: str, snapshot: TaskSnapshot) -> DeliveryResult:
        if operation_type not in VALID_OPS:
            return DeliveryResult(accepted=False, message=f"unsupported operation {operation_type}")
        with self._lock:
            self.deliveries.append((operation_type, snapshot.id))
            return self._apply(VersionedWrite(operation_type, snapshot))

    def seed(self, operation_type: str, snapshot: TaskSnapshot) -> DeliveryResult:
        """Record a write coming from another client."""

        with self._lock:
            return self._apply(VersionedWrite(operation_type, snapshot))

    def state_of(self, task_id: str) -> Optional[TaskSnapshot]:
        with self._lock:
            record = self._records.get(task_id)
            return record.write.snapshot if record else None

    def operation_of(self, task_id: str) -> Optional[str]:
        with self._lock:
            record = self._records.get(task_id)
            return record.write.operation_type if record else None

    def _apply(self, incoming: VersionedWrite) -> DeliveryResult:
        task_id = incoming.snapshot.id
        record = self._records.get(task_id)
        resolution = resolve(incoming, record.write if record else None)
        if record is None:
            record = _StoredWrite(server_id=f"srv-{uuid.uuid4().hex}", write=incoming)
            self._records[task_id] = record
        elif resolution.incoming_wins:
            record.write = incoming
        else:
            logger.debug(
                "Kept stored %s for task %s (%s)",
                record.write.operation_type,
                task_id,
                resolution.reason,
            )
        return DeliveryResult(
            accepted=True,
            server_id=record.server_id,
            state=record.write.snapshot,
            applied=resolution.incoming_wins,
            message=resolution.reason,
        )


class SimulatedRemoteAuthority(InMemoryRemoteAuthority):
    """In-memory authority with a fixed delay and random failure injection."""

    def __init__(
        self,
        failure_rate: float = 0.1,
        delay_sec: float = 0.01,
        *,
        rng_seed: Optional[int] = None,
    ) -> None:
        super().__init__()
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be within [0, 1], got {failure_rate}")
        self.failure_rate = failure_rate
        self.delay_sec = delay_sec
        self._rng = random.Random(rng_seed)

    def deliver(self, operation_type: str, snapshot: TaskSnapshot) -> DeliveryResult:
        if self.delay_sec > 0:
            time.sleep(self.delay_sec)
        if self._rng.random() < self.failure_rate:
            raise DeliveryError("simulated network error")
        result = super().deliver(operation_type, snapshot)
        logger.info("Successfully synced task %s with operation %s", snapshot.id, operation_type)
        return result


__all__ = [
    "DeliveryResult",
    "InMemoryRemoteAuthority",
    "RemoteAuthority",
    "SimulatedRemoteAuthority",
]
