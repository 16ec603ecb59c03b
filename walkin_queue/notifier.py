from __future__ import annotations

# Change notification and derived queue metrics.
#
# After every committed change the notifier publishes one `QueueEvent` on the
# event bus. Events are hints, not the source of truth: delivery is
# at-least-once and may be reordered, so subscribers that care re-read the
# store (e.g. with a `queue_position` request).
#
# Two wait metrics live here and are deliberately different:
# - personal wait: people ahead * that entry's own estimate (customer view)
# - aggregate wait: queue length * today's average service time (staff view)

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Callable, Protocol

from .errors import NotFound, StoreUnavailable
from .models import DEFAULT_SERVICE_MINUTES, EntryStatus, QueueEntry, utcnow
from .store import RecordStore

logger = logging.getLogger(__name__)

CUSTOMER_JOINED = "customer_joined"
SERVICE_STARTED = "service_started"
SERVICE_COMPLETED = "service_completed"
ENTRY_CANCELLED = "entry_cancelled"


@dataclass(frozen=True)
class QueueEvent:
    event_type: str
    entry_id: str
    customer_id: str
    new_status: str
    position: int
    queue_length: int
    people_ahead: int | None = None
    estimated_wait_minutes: int | None = None
    ts: str = field(default_factory=lambda: utcnow().isoformat())

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["type"] = "queue_event"
        return msg


class EventBus(Protocol):
    def publish(self, event: QueueEvent) -> None: ...


class InMemoryEventBus:
    """Keeps published events in a list and fans them out to callbacks."""

    def __init__(self) -> None:
        self.events: list[QueueEvent] = []
        self._subscribers: list[Callable[[QueueEvent], None]] = []

    def subscribe(self, callback: Callable[[QueueEvent], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, event: QueueEvent) -> None:
        self.events.append(event)
        for cb in list(self._subscribers):
            cb(event)


@dataclass(frozen=True)
class PositionReport:
    """What a customer sees when checking their place in the queue."""

    status: str
    customer_id: str
    position: int | None = None
    people_ahead: int | None = None
    estimated_wait_minutes: int | None = None

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["type"] = "queue_position"
        return msg


@dataclass(frozen=True)
class AdminStats:
    total_in_queue: int
    total_served_today: int
    avg_service_minutes: int
    estimated_wait_minutes: int

    def to_message(self) -> dict[str, Any]:
        msg = asdict(self)
        msg["type"] = "admin_stats"
        return msg


def people_ahead(entry: QueueEntry) -> int:
    return max(entry.position - 1, 0)


def personal_wait_minutes(entry: QueueEntry) -> int:
    if entry.status is not EntryStatus.WAITING:
        return 0
    return people_ahead(entry) * entry.estimated_service_minutes


def average_service_minutes(completed: list[QueueEntry], default: int = DEFAULT_SERVICE_MINUTES) -> int:
    """Rounded mean service duration; unrecorded durations count as `default`."""
    if not completed:
        return default
    total = sum(e.service_duration_minutes or default for e in completed)
    return math.floor(total / len(completed) + 0.5)


class ChangeNotifier:
    """Publishes queue events and computes the metrics subscribers display."""

    def __init__(
        self,
        store: RecordStore,
        bus: EventBus | None = None,
        *,
        default_service_minutes: int = DEFAULT_SERVICE_MINUTES,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.default_service_minutes = default_service_minutes
        self._clock = clock
        # None means the host's local timezone decides where "today" starts.
        self._tz = tz

    # -------------------- events --------------------

    def publish(
        self,
        event_type: str,
        entry: QueueEntry,
        active: list[QueueEntry] | None = None,
    ) -> QueueEvent | None:
        """Build and publish the event for a committed change to `entry`.

        `active` is the post-change active queue when the caller already has
        it (e.g. straight from renumbering); otherwise it is read from the store.
        Returns `None` when the store cannot be read to build the event.
        """
        if active is None:
            try:
                active = self.store.select_active()
            except StoreUnavailable as exc:
                logger.warning("skipping %s event for entry %s: %s", event_type, entry.id, exc)
                return None
        current = next((e for e in active if e.id == entry.id), entry)
        event = QueueEvent(
            event_type=event_type,
            entry_id=current.id,
            customer_id=current.customer_id,
            new_status=current.status.value,
            position=current.position,
            queue_length=len(active),
            people_ahead=people_ahead(current) if current.is_active else None,
            estimated_wait_minutes=personal_wait_minutes(current) if current.is_active else None,
        )
        if self.bus is None:
            return event
        try:
            self.bus.publish(event)
        except Exception:
            # The store change is committed; a lost event only delays displays.
            logger.exception("failed to publish %s for entry %s", event_type, entry.id)
        return event

    # -------------------- metrics --------------------

    def day_start(self) -> datetime:
        now = self._clock()
        local = now.astimezone(self._tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def average_service_minutes(self) -> int:
        completed = self.store.completed_since(self.day_start())
        return average_service_minutes(completed, self.default_service_minutes)

    def admin_stats(self) -> AdminStats:
        active = self.store.select_active()
        completed = self.store.completed_since(self.day_start())
        avg = average_service_minutes(completed, self.default_service_minutes)
        return AdminStats(
            total_in_queue=len(active),
            total_served_today=len(completed),
            avg_service_minutes=avg,
            estimated_wait_minutes=len(active) * avg,
        )

    def position_report(self, customer_id: str) -> PositionReport:
        entry = self.store.find_active_by_customer(customer_id)
        if entry is None:
            entry = self.store.find_latest_by_customer(customer_id)
        if entry is None:
            raise NotFound("customer not found in the queue")
        if entry.status is EntryStatus.WAITING:
            return PositionReport(
                status=entry.status.value,
                customer_id=customer_id,
                position=entry.position,
                people_ahead=people_ahead(entry),
                estimated_wait_minutes=personal_wait_minutes(entry),
            )
        if entry.status is EntryStatus.IN_SERVICE:
            return PositionReport(
                status=entry.status.value,
                customer_id=customer_id,
                position=entry.position,
                people_ahead=0,
                estimated_wait_minutes=0,
            )
        return PositionReport(status=entry.status.value, customer_id=customer_id)

    def snapshot(self) -> dict[str, Any]:
        """Active queue plus staff statistics, for periodic broadcasts."""
        active = self.store.select_active()
        return {
            "type": "queue_snapshot",
            "queue": [e.to_message() for e in active],
            "stats": self.admin_stats().to_message(),
        }
