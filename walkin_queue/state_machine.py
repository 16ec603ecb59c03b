from __future__ import annotations

# Queue state machine: operator actions on existing entries.
#
# Every action is one conditional store update (the status flip) followed by
# renumbering and a published event. The status flip is the authoritative
# fact. If renumbering fails afterwards, the action still succeeds and the
# retrier repairs positions in the background.

import logging

from .errors import AlreadyServing, InvalidState, NotFound, QueueEmpty, StoreUnavailable
from .models import EntryStatus, QueueEntry, check_transition
from .notifier import ENTRY_CANCELLED, SERVICE_COMPLETED, SERVICE_STARTED, ChangeNotifier
from .sequencer import PositionSequencer, RenumberRetrier
from .store import RecordStore, active_order
from .validation import validate_service_duration

logger = logging.getLogger(__name__)

# How many times call_next re-selects when its candidate changes under it.
CALL_NEXT_ATTEMPTS = 5


class QueueStateMachine:
    """Drives entries through waiting -> in_service -> completed / cancelled."""

    def __init__(
        self,
        store: RecordStore,
        sequencer: PositionSequencer,
        notifier: ChangeNotifier,
        *,
        retrier: RenumberRetrier | None = None,
        hard_delete_cancellations: bool = False,
    ) -> None:
        self.store = store
        self.sequencer = sequencer
        self.notifier = notifier
        self.retrier = retrier
        # Legacy behaviour: cancelled rows are deleted instead of kept for audit.
        self.hard_delete_cancellations = hard_delete_cancellations

    def call_next(self) -> QueueEntry:
        """Move the first waiting entry to `in_service`."""
        for _ in range(CALL_NEXT_ATTEMPTS):
            active = self.store.select_active()
            if any(e.status is EntryStatus.IN_SERVICE for e in active):
                raise AlreadyServing("finish the current customer before calling the next one")
            waiting = active_order([e for e in active if e.status is EntryStatus.WAITING])
            if not waiting:
                raise QueueEmpty("no customers waiting")
            candidate = waiting[0]
            check_transition(candidate.status, EntryStatus.IN_SERVICE)
            try:
                entry = self.store.update_status(
                    candidate.id,
                    EntryStatus.IN_SERVICE,
                    expected_status=EntryStatus.WAITING,
                    exclusive=True,
                )
            except (NotFound, InvalidState):
                # Cancelled or deleted between the read and the flip; pick again.
                logger.info("call_next candidate %s changed concurrently, retrying", candidate.id)
                continue
            logger.info("serving %s (position %d)", entry.customer_id, entry.position)
            self.notifier.publish(SERVICE_STARTED, entry)
            return entry
        raise StoreUnavailable("queue changed too often while calling next; try again")

    def complete_service(self, entry_id: str, duration_minutes: int | None = None) -> QueueEntry:
        duration = validate_service_duration(duration_minutes)
        entry = self._require(entry_id)
        if entry.status is EntryStatus.COMPLETED:
            logger.info("entry %s already completed; re-running renumbering only", entry_id)
            self._renumber()
            return entry
        check_transition(entry.status, EntryStatus.COMPLETED)
        entry = self.store.update_status(
            entry_id,
            EntryStatus.COMPLETED,
            expected_status=EntryStatus.IN_SERVICE,
            fields={"service_duration_minutes": duration},
        )
        logger.info("completed %s after %d minutes", entry.customer_id, duration)
        self._after_removal(SERVICE_COMPLETED, entry)
        return entry

    def cancel_entry(self, entry_id: str) -> QueueEntry:
        entry = self._require(entry_id)
        if entry.status is EntryStatus.CANCELLED:
            logger.info("entry %s already cancelled; re-running renumbering only", entry_id)
            self._renumber()
            return entry
        return self._cancel(entry)

    def cancel_by_customer(self, customer_id: str) -> QueueEntry | None:
        """Cancel the customer's active entry; `None` if there is nothing to cancel."""
        entry = self.store.find_active_by_customer(customer_id)
        if entry is None:
            logger.debug("cancel_by_customer: nothing active for %s", customer_id)
            return None
        return self._cancel(entry)

    def _cancel(self, entry: QueueEntry) -> QueueEntry:
        check_transition(entry.status, EntryStatus.CANCELLED)
        cancelled = self.store.update_status(
            entry.id, EntryStatus.CANCELLED, expected_status=EntryStatus.WAITING
        )
        if self.hard_delete_cancellations:
            self.store.delete_entry(entry.id)
        logger.info("cancelled %s (was position %d)", cancelled.customer_id, cancelled.position)
        self._after_removal(ENTRY_CANCELLED, cancelled)
        return cancelled

    def _require(self, entry_id: str) -> QueueEntry:
        entry = self.store.get(entry_id)
        if entry is None:
            raise NotFound(f"queue entry {entry_id} not found")
        return entry

    def _renumber(self) -> list[QueueEntry] | None:
        try:
            return self.sequencer.renumber()
        except StoreUnavailable as exc:
            if self.retrier is None:
                raise
            logger.warning("renumbering failed (%s); scheduling background retry", exc)
            self.retrier.schedule()
            return None

    def _after_removal(self, event_type: str, entry: QueueEntry) -> None:
        active = self._renumber()
        self.notifier.publish(event_type, entry, active)
