from __future__ import annotations

# Position sequencing.
#
# Active entries (waiting + in_service) always carry positions 1..N with no
# gaps and no duplicates. New entries get `max + 1`; removals are followed by
# a renumbering pass that closes the gap.
#
# Positions are a derived projection of (position, entry_time, seq) order. If
# a renumbering pass fails after a status change has been committed, the
# status change stands and `RenumberRetrier` keeps retrying in the background.

import logging
import threading

from .errors import AtomicInsertUnsupported, StoreUnavailable
from .models import QueueEntry
from .store import RecordStore, active_order

logger = logging.getLogger(__name__)


def dense_positions(entries: list[QueueEntry]) -> dict[str, int]:
    """Map each active entry id to its rank (1-based) in queue order."""
    return {e.id: i for i, e in enumerate(active_order(entries), start=1)}


def check_positions(entries: list[QueueEntry]) -> list[str]:
    """Return human-readable violations of the uniqueness/density invariant."""
    problems: list[str] = []
    seen: dict[int, str] = {}
    for e in entries:
        if e.position in seen:
            problems.append(f"position {e.position} shared by {seen[e.position]} and {e.id}")
        seen[e.position] = e.id
    expected = set(range(1, len(entries) + 1))
    missing = sorted(expected - set(seen))
    if missing:
        problems.append(f"missing positions {missing}")
    return problems


class PositionSequencer:
    """Assigns positions to new entries and renumbers after removals."""

    def __init__(self, store: RecordStore, *, allow_fallback: bool = True) -> None:
        self.store = store
        self.allow_fallback = allow_fallback

    def assign_next(
        self, *, customer_id: str, name: str, phone: str, estimated_service_minutes: int
    ) -> QueueEntry:
        """Insert a new waiting entry at the end of the queue.

        The store's atomic insert is the normal path. When the store cannot do
        it, the read-max-then-insert fallback is used; that path can hand two
        concurrent joiners the same number and is logged on every use.
        """
        try:
            return self.store.insert_entry_atomic(customer_id, name, phone, estimated_service_minutes)
        except AtomicInsertUnsupported:
            if not self.allow_fallback:
                raise StoreUnavailable("atomic position assignment unavailable") from None
            logger.warning(
                "atomic insert unsupported by %s; using degraded read-then-insert path",
                type(self.store).__name__,
            )
        position = self.store.max_active_position() + 1
        return self.store.insert_entry(customer_id, name, phone, estimated_service_minutes, position)

    def renumber(self) -> list[QueueEntry]:
        """Rewrite active positions to 1..N; returns the active queue in order."""
        entries = self.store.apply_positions(dense_positions)
        logger.debug("renumbered %d active entries", len(entries))
        return entries


class RenumberRetrier:
    """Background worker that retries a failed renumbering until it succeeds.

    `schedule()` is cheap and may be called many times; at most one worker
    thread runs and a single successful pass satisfies every pending request.
    """

    def __init__(
        self,
        sequencer: PositionSequencer,
        *,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
    ) -> None:
        self.sequencer = sequencer
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._pending = False

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending

    def schedule(self) -> None:
        with self._lock:
            self._pending = True
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="renumber-retry", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=1.0)

    def _run(self) -> None:
        backoff = self.initial_backoff
        while not self._stop_event.wait(backoff):
            with self._lock:
                self._pending = False
            try:
                self.sequencer.renumber()
            except StoreUnavailable as exc:
                with self._lock:
                    self._pending = True
                backoff = min(backoff * 2, self.max_backoff)
                logger.warning("renumber retry failed (%s); next attempt in %.1fs", exc, backoff)
                continue
            with self._lock:
                if not self._pending:
                    self._thread = None
                    logger.info("renumbering recovered")
                    return
            backoff = self.initial_backoff
