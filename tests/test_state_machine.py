import time

import pytest

from walkin_queue.errors import (
    AlreadyServing,
    IllegalTransition,
    InvalidState,
    NotFound,
    QueueEmpty,
    StoreUnavailable,
)
from walkin_queue.models import EntryStatus, check_transition
from walkin_queue.sequencer import RenumberRetrier
from walkin_queue.store import InMemoryRecordStore

from conftest import Clock, build_engine


class FlakyRenumberStore(InMemoryRecordStore):
    """Fails the first `failures` renumbering passes."""

    def __init__(self, failures: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures

    def apply_positions(self, plan):
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("simulated outage")
        return super().apply_positions(plan)


def _fill(engine, *names):
    return [engine.admission.admit(name, "555-0001").entry for name in names]


def test_lifecycle_table():
    check_transition(EntryStatus.WAITING, EntryStatus.IN_SERVICE)
    check_transition(EntryStatus.WAITING, EntryStatus.CANCELLED)
    check_transition(EntryStatus.IN_SERVICE, EntryStatus.COMPLETED)
    for current, new in [
        (EntryStatus.WAITING, EntryStatus.COMPLETED),
        (EntryStatus.IN_SERVICE, EntryStatus.CANCELLED),
        (EntryStatus.COMPLETED, EntryStatus.WAITING),
        (EntryStatus.CANCELLED, EntryStatus.IN_SERVICE),
    ]:
        with pytest.raises(IllegalTransition):
            check_transition(current, new)


def test_call_next_serves_lowest_position_then_refuses_second_call(engine):
    first, _second = _fill(engine, "Ana", "Bo")

    served = engine.machine.call_next()
    assert served.id == first.id
    assert served.status is EntryStatus.IN_SERVICE
    assert served.position == 1

    with pytest.raises(AlreadyServing):
        engine.machine.call_next()


def test_call_next_on_empty_queue(engine):
    with pytest.raises(QueueEmpty):
        engine.machine.call_next()


def test_cancel_middle_entry_renumbers(engine):
    a, b, c = _fill(engine, "Ana", "Bo", "Cy")

    engine.machine.cancel_entry(b.id)

    active = engine.store.select_active()
    assert [(e.id, e.position) for e in active] == [(a.id, 1), (c.id, 2)]
    assert engine.store.get(b.id).status is EntryStatus.CANCELLED
    # History keeps the last known position.
    assert engine.store.get(b.id).position == 2


def test_complete_requires_in_service(engine):
    (a,) = _fill(engine, "Ana")
    with pytest.raises(InvalidState):
        engine.machine.complete_service(a.id, 10)
    assert engine.store.get(a.id).status is EntryStatus.WAITING


def test_complete_records_duration_and_renumbers(engine):
    a, b = _fill(engine, "Ana", "Bo")
    engine.machine.call_next()

    done = engine.machine.complete_service(a.id, 22)

    assert done.status is EntryStatus.COMPLETED
    assert done.service_duration_minutes == 22
    assert [(e.id, e.position) for e in engine.store.select_active()] == [(b.id, 1)]
    assert engine.bus.events[-1].event_type == "service_completed"
    assert engine.bus.events[-1].queue_length == 1


def test_complete_is_safe_to_retry(engine):
    a, _b = _fill(engine, "Ana", "Bo")
    engine.machine.call_next()
    engine.machine.complete_service(a.id, 10)
    published = len(engine.bus.events)

    again = engine.machine.complete_service(a.id, 99)

    assert again.service_duration_minutes == 10
    assert len(engine.bus.events) == published
    assert engine.positions() == [1]


def test_unknown_entry(engine):
    with pytest.raises(NotFound):
        engine.machine.complete_service("nope")
    with pytest.raises(NotFound):
        engine.machine.cancel_entry("nope")


def test_cannot_cancel_entry_in_service(engine):
    a, _b = _fill(engine, "Ana", "Bo")
    engine.machine.call_next()
    with pytest.raises(InvalidState):
        engine.machine.cancel_entry(a.id)
    with pytest.raises(InvalidState):
        engine.machine.cancel_by_customer(a.customer_id)


def test_cancel_entry_twice_is_idempotent(engine):
    a, b = _fill(engine, "Ana", "Bo")
    engine.machine.cancel_entry(a.id)
    published = len(engine.bus.events)
    assert engine.machine.cancel_entry(a.id).status is EntryStatus.CANCELLED
    assert len(engine.bus.events) == published
    assert engine.store.get(b.id).position == 1


def test_cancel_by_customer(engine):
    a, b = _fill(engine, "Ana", "Bo")
    cancelled = engine.machine.cancel_by_customer(a.customer_id)
    assert cancelled.id == a.id
    assert engine.store.get(b.id).position == 1


def test_cancel_by_unknown_customer_is_a_silent_no_op(engine):
    _fill(engine, "Ana", "Bo")
    before = engine.store.select_active()
    published = len(engine.bus.events)

    assert engine.machine.cancel_by_customer("customer_does_not_exist") is None

    assert engine.store.select_active() == before
    assert len(engine.bus.events) == published


def test_single_server_holds_through_full_cycle(engine):
    entries = _fill(engine, "Ana", "Bo", "Cy")
    for expected in entries:
        served = engine.machine.call_next()
        assert served.id == expected.id
        in_service = [e for e in engine.store.select_active() if e.status is EntryStatus.IN_SERVICE]
        assert len(in_service) == 1
        engine.machine.complete_service(served.id, 5)
    assert engine.store.select_active() == []


def test_hard_delete_cancellations():
    clock = Clock()
    engine = build_engine(InMemoryRecordStore(clock=clock), clock, hard_delete_cancellations=True)
    a, _b = _fill(engine, "Ana", "Bo")
    engine.machine.cancel_entry(a.id)
    assert engine.store.get(a.id) is None
    assert engine.positions() == [1]


def test_renumber_failure_without_retrier_surfaces_but_keeps_status():
    clock = Clock()
    engine = build_engine(FlakyRenumberStore(1, clock=clock), clock)
    a, _b = _fill(engine, "Ana", "Bo")

    with pytest.raises(StoreUnavailable):
        engine.machine.cancel_entry(a.id)
    assert engine.store.get(a.id).status is EntryStatus.CANCELLED
    assert engine.positions() == [2]

    # Retrying only re-runs renumbering.
    engine.machine.cancel_entry(a.id)
    assert engine.positions() == [1]


def test_renumber_failure_is_retried_in_background():
    clock = Clock()
    store = FlakyRenumberStore(2, clock=clock)
    engine = build_engine(store, clock)
    retrier = RenumberRetrier(engine.sequencer, initial_backoff=0.01, max_backoff=0.05)
    engine.machine.retrier = retrier
    a, _b, _c = _fill(engine, "Ana", "Bo", "Cy")

    engine.machine.cancel_entry(a.id)
    assert engine.store.get(a.id).status is EntryStatus.CANCELLED

    deadline = time.time() + 5.0
    while engine.positions() != [1, 2] and time.time() < deadline:
        time.sleep(0.01)
    retrier.stop()
    assert engine.positions() == [1, 2]
    assert store.failures == 0
