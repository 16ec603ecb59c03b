import logging

import pytest

from walkin_queue.errors import StoreUnavailable
from walkin_queue.models import EntryStatus
from walkin_queue.sequencer import PositionSequencer, check_positions, dense_positions
from walkin_queue.store import InMemoryRecordStore

from conftest import Clock, build_engine


def _join(seq, name):
    return seq.assign_next(customer_id=f"customer_{name}", name=name, phone="555-0001", estimated_service_minutes=15)


def test_assign_next_starts_at_one_and_appends():
    seq = PositionSequencer(InMemoryRecordStore())
    assert _join(seq, "Ana").position == 1
    assert _join(seq, "Bo").position == 2
    assert _join(seq, "Cy").position == 3


def test_renumber_closes_gaps_and_is_idempotent(engine):
    for name in ("Ana", "Bo", "Cy", "Di"):
        engine.admission.admit(name, "555-0001")
    second = engine.store.select_active()[1]
    engine.store.update_status(second.id, EntryStatus.CANCELLED, expected_status=EntryStatus.WAITING)

    assert engine.positions() == [1, 3, 4]
    first = [(e.id, e.position) for e in engine.sequencer.renumber()]
    again = [(e.id, e.position) for e in engine.sequencer.renumber()]
    assert [p for _, p in first] == [1, 2, 3]
    assert first == again


def test_degraded_insert_path_is_used_and_logged(caplog):
    seq = PositionSequencer(InMemoryRecordStore(supports_atomic_insert=False))
    with caplog.at_level(logging.WARNING, logger="walkin_queue.sequencer"):
        assert _join(seq, "Ana").position == 1
        assert _join(seq, "Bo").position == 2
    assert "degraded" in caplog.text


def test_degraded_insert_path_can_be_disabled():
    seq = PositionSequencer(InMemoryRecordStore(supports_atomic_insert=False), allow_fallback=False)
    with pytest.raises(StoreUnavailable):
        _join(seq, "Ana")


def test_renumber_repairs_duplicate_positions_in_admission_order():
    clock = Clock()
    store = InMemoryRecordStore(clock=clock)
    # Two fallback joiners that raced and both read max=0.
    a = store.insert_entry("customer_a", "Ana", "555-0001", 15, 1)
    b = store.insert_entry("customer_b", "Bo", "555-0002", 15, 1)
    assert check_positions(store.select_active())

    engine = build_engine(store, clock)
    engine.sequencer.renumber()
    active = store.select_active()
    assert [(e.id, e.position) for e in active] == [(a.id, 1), (b.id, 2)]
    assert check_positions(active) == []


def test_dense_positions_orders_by_position_then_entry_time(engine):
    for name in ("Ana", "Bo", "Cy"):
        engine.admission.admit(name, "555-0001")
    entries = list(reversed(engine.store.select_active()))
    plan = dense_positions(entries)
    assert sorted(plan.values()) == [1, 2, 3]
    assert plan[entries[-1].id] == 1


def test_check_positions_reports_gaps_and_duplicates(engine):
    for name in ("Ana", "Bo"):
        engine.admission.admit(name, "555-0001")
    entries = engine.store.select_active()
    assert check_positions(entries) == []
    entries[1].position = 5
    assert any("missing" in p for p in check_positions(entries))
    entries[1].position = 1
    assert any("shared" in p for p in check_positions(entries))
