from __future__ import annotations

# Record store adapters.
#
# The store is the single source of truth for the queue and the only place
# where concurrent callers synchronize. Two implementations exist:
#
# 1) `InMemoryRecordStore` (this module): a lock-guarded table, used by tests
#    and by single-process demos.
# 2) `SqlRecordStore` (`sql_store.py`): SQLAlchemy on SQLite or any SQL
#    database, for durable deployments.
#
# Both must give the same guarantees: `insert_entry_atomic` computes the next
# position and inserts in one indivisible step, `apply_positions` rewrites
# positions inside the same write serialization, and no call blocks longer
# than the configured timeout.

import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Iterator

from .errors import (
    AlreadyServing,
    AtomicInsertUnsupported,
    DuplicateActiveCustomer,
    InvalidState,
    NotFound,
    StoreTimeout,
)
from .models import ACTIVE_STATUSES, EntryStatus, QueueEntry, utcnow

# Receives the active entries and returns `{entry_id: new_position}`.
PositionPlan = Callable[[list[QueueEntry]], dict[str, int]]

UPDATABLE_FIELDS = frozenset({"service_duration_minutes", "position"})


class RecordStore:
    """Interface every record store adapter implements."""

    def insert_entry_atomic(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int
    ) -> QueueEntry:
        raise NotImplementedError

    def max_active_position(self) -> int:
        raise NotImplementedError

    def insert_entry(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int, position: int
    ) -> QueueEntry:
        raise NotImplementedError

    def select_active(self) -> list[QueueEntry]:
        raise NotImplementedError

    def get(self, entry_id: str) -> QueueEntry | None:
        raise NotImplementedError

    def find_active_by_customer(self, customer_id: str) -> QueueEntry | None:
        raise NotImplementedError

    def find_latest_by_customer(self, customer_id: str) -> QueueEntry | None:
        raise NotImplementedError

    def update_status(
        self,
        entry_id: str,
        new_status: EntryStatus,
        *,
        expected_status: EntryStatus,
        fields: dict[str, Any] | None = None,
        exclusive: bool = False,
    ) -> QueueEntry:
        raise NotImplementedError

    def apply_positions(self, plan: PositionPlan) -> list[QueueEntry]:
        raise NotImplementedError

    def delete_entry(self, entry_id: str) -> bool:
        raise NotImplementedError

    def completed_since(self, since: datetime) -> list[QueueEntry]:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources held by the store."""


def active_order(entries: list[QueueEntry]) -> list[QueueEntry]:
    return sorted(entries, key=QueueEntry.sort_key)


class InMemoryRecordStore(RecordStore):
    """Lock-guarded in-process table of queue entries.

    `supports_atomic_insert=False` makes `insert_entry_atomic` raise
    `AtomicInsertUnsupported`, mimicking a backend without transactional
    procedures so the degraded two-step path can be exercised.
    """

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        supports_atomic_insert: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.timeout = timeout
        self.supports_atomic_insert = supports_atomic_insert
        self._clock = clock
        self._lock = threading.RLock()
        self._rows: dict[str, QueueEntry] = {}
        self._seq = 0

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            raise StoreTimeout(f"record store busy for more than {self.timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    # -------------------- inserts --------------------

    def insert_entry_atomic(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int
    ) -> QueueEntry:
        if not self.supports_atomic_insert:
            raise AtomicInsertUnsupported("atomic insert is not available on this store")
        with self._locked():
            self._reject_duplicate(customer_id)
            return self._insert(customer_id, name, phone, estimated_minutes, self._max_active() + 1)

    def max_active_position(self) -> int:
        with self._locked():
            return self._max_active()

    def insert_entry(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int, position: int
    ) -> QueueEntry:
        with self._locked():
            self._reject_duplicate(customer_id)
            return self._insert(customer_id, name, phone, estimated_minutes, position)

    def _max_active(self) -> int:
        return max((r.position for r in self._rows.values() if r.is_active), default=0)

    def _reject_duplicate(self, customer_id: str) -> None:
        if any(r.customer_id == customer_id and r.is_active for r in self._rows.values()):
            raise DuplicateActiveCustomer("customer is already in the queue")

    def _insert(
        self, customer_id: str, name: str, phone: str, estimated_minutes: int, position: int
    ) -> QueueEntry:
        now = self._clock()
        self._seq += 1
        entry = QueueEntry(
            id=uuid.uuid4().hex,
            customer_id=customer_id,
            name=name,
            phone=phone,
            position=position,
            status=EntryStatus.WAITING,
            entry_time=now,
            estimated_service_minutes=estimated_minutes,
            created_at=now,
            updated_at=now,
            seq=self._seq,
        )
        self._rows[entry.id] = entry
        return replace(entry)

    # -------------------- reads --------------------

    def select_active(self) -> list[QueueEntry]:
        with self._locked():
            return [replace(r) for r in active_order([r for r in self._rows.values() if r.is_active])]

    def get(self, entry_id: str) -> QueueEntry | None:
        with self._locked():
            row = self._rows.get(entry_id)
            return replace(row) if row else None

    def find_active_by_customer(self, customer_id: str) -> QueueEntry | None:
        with self._locked():
            for row in self._rows.values():
                if row.customer_id == customer_id and row.is_active:
                    return replace(row)
            return None

    def find_latest_by_customer(self, customer_id: str) -> QueueEntry | None:
        with self._locked():
            rows = [r for r in self._rows.values() if r.customer_id == customer_id]
            if not rows:
                return None
            return replace(max(rows, key=lambda r: r.seq))

    def completed_since(self, since: datetime) -> list[QueueEntry]:
        with self._locked():
            return [
                replace(r)
                for r in self._rows.values()
                if r.status is EntryStatus.COMPLETED and r.updated_at >= since
            ]

    # -------------------- writes --------------------

    def update_status(
        self,
        entry_id: str,
        new_status: EntryStatus,
        *,
        expected_status: EntryStatus,
        fields: dict[str, Any] | None = None,
        exclusive: bool = False,
    ) -> QueueEntry:
        extra = dict(fields or {})
        unknown = set(extra) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._locked():
            row = self._rows.get(entry_id)
            if row is None:
                raise NotFound(f"queue entry {entry_id} not found")
            if row.status is not expected_status:
                raise InvalidState(
                    f"queue entry {entry_id} is {row.status.value}, expected {expected_status.value}"
                )
            if exclusive and any(
                r.status is new_status for r in self._rows.values() if r.id != entry_id
            ):
                raise AlreadyServing(f"another entry is already {new_status.value}")
            updated = replace(row, status=new_status, updated_at=self._clock(), **extra)
            self._rows[entry_id] = updated
            return replace(updated)

    def apply_positions(self, plan: PositionPlan) -> list[QueueEntry]:
        with self._locked():
            active = [replace(r) for r in active_order([r for r in self._rows.values() if r.is_active])]
            changes = plan(active)
            now = self._clock()
            for entry_id, position in changes.items():
                row = self._rows[entry_id]
                if row.position != position:
                    self._rows[entry_id] = replace(row, position=position, updated_at=now)
            return [replace(r) for r in active_order([r for r in self._rows.values() if r.is_active])]

    def delete_entry(self, entry_id: str) -> bool:
        with self._locked():
            return self._rows.pop(entry_id, None) is not None


def open_store(url: str, *, timeout: float = 5.0) -> RecordStore:
    """Build a record store from a URL.

    `memory://` gives an `InMemoryRecordStore`; anything else is handed to
    SQLAlchemy (e.g. `sqlite:///queue.db`).
    """
    if url == "memory://":
        return InMemoryRecordStore(timeout=timeout)

    # Local import keeps SQLAlchemy off the in-memory path.
    from .sql_store import SqlRecordStore

    return SqlRecordStore(url, timeout=timeout)
