from __future__ import annotations

# Queue entry model and the status lifecycle.
#
# An entry moves through:
#
#     waiting -> in_service -> completed
#     waiting -> cancelled
#
# `completed` and `cancelled` are terminal. A customer who wants to come back
# joins again and gets a brand new entry.

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import IllegalTransition

DEFAULT_SERVICE_MINUTES = 15
MAX_ESTIMATED_SERVICE_MINUTES = 120
MAX_SERVICE_DURATION_MINUTES = 300

CUSTOMER_ID_PREFIX = "customer_"
WALK_IN_ID_PREFIX = "walkin_"
WALK_IN_PHONE = "walk-in"


class EntryStatus(str, Enum):
    WAITING = "waiting"
    IN_SERVICE = "in_service"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({EntryStatus.WAITING, EntryStatus.IN_SERVICE})
TERMINAL_STATUSES = frozenset({EntryStatus.COMPLETED, EntryStatus.CANCELLED})

LEGAL_TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.WAITING: frozenset({EntryStatus.IN_SERVICE, EntryStatus.CANCELLED}),
    EntryStatus.IN_SERVICE: frozenset({EntryStatus.COMPLETED}),
    EntryStatus.COMPLETED: frozenset(),
    EntryStatus.CANCELLED: frozenset(),
}


def check_transition(current: EntryStatus, new: EntryStatus) -> None:
    """Raise `IllegalTransition` unless `current -> new` is in the lifecycle."""
    if new not in LEGAL_TRANSITIONS[current]:
        raise IllegalTransition(f"cannot move entry from {current.value} to {new.value}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueueEntry:
    """One customer's place in the queue."""

    id: str
    customer_id: str
    name: str
    phone: str
    position: int
    status: EntryStatus
    entry_time: datetime
    estimated_service_minutes: int = DEFAULT_SERVICE_MINUTES
    service_duration_minutes: int | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Store insertion sequence; the last-resort tie-breaker for ordering.
    seq: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_walk_in(self) -> bool:
        return self.customer_id.startswith(WALK_IN_ID_PREFIX)

    def sort_key(self) -> tuple[int, datetime, int]:
        return (self.position, self.entry_time, self.seq)

    def to_message(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("entry_time", "created_at", "updated_at"):
            data[key] = data[key].isoformat()
        return data
