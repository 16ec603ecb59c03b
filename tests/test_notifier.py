import logging
from datetime import datetime, timezone

import pytest

from walkin_queue.errors import NotFound, StoreUnavailable
from walkin_queue.models import EntryStatus, QueueEntry
from walkin_queue.notifier import ChangeNotifier, average_service_minutes, personal_wait_minutes
from walkin_queue.store import InMemoryRecordStore

from conftest import Clock, build_engine


def _entry(duration, status=EntryStatus.COMPLETED):
    now = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)
    return QueueEntry(
        id="e",
        customer_id="customer_x",
        name="Ana",
        phone="555-0001",
        position=1,
        status=status,
        entry_time=now,
        service_duration_minutes=duration,
    )


def _serve(engine, duration):
    served = engine.machine.call_next()
    return engine.machine.complete_service(served.id, duration)


class BrokenBus:
    def publish(self, event):
        raise RuntimeError("broker down")


class UnreadableStore(InMemoryRecordStore):
    def select_active(self):
        raise StoreUnavailable("read replica lost")


def test_average_service_minutes_defaults_and_rounding():
    assert average_service_minutes([]) == 15
    assert average_service_minutes([_entry(10), _entry(11)]) == 11
    # Zero and missing durations count as the default.
    assert average_service_minutes([_entry(10), _entry(0), _entry(None)]) == 13
    assert average_service_minutes([_entry(0)], default=20) == 20


def test_personal_wait_uses_own_estimate():
    entry = _entry(None, status=EntryStatus.WAITING)
    entry.position = 4
    entry.estimated_service_minutes = 25
    assert personal_wait_minutes(entry) == 75
    entry.status = EntryStatus.IN_SERVICE
    assert personal_wait_minutes(entry) == 0


def test_position_report_for_each_status(engine):
    a = engine.admission.admit("Ana", "555-0001", 10)
    b = engine.admission.admit("Bo", "555-0002", 20)
    c = engine.admission.admit("Cy", "555-0003", 30)

    report = engine.notifier.position_report(c.customer_id)
    assert (report.status, report.position, report.people_ahead, report.estimated_wait_minutes) == (
        "waiting",
        3,
        2,
        60,
    )

    engine.machine.call_next()
    report = engine.notifier.position_report(a.customer_id)
    assert (report.status, report.people_ahead, report.estimated_wait_minutes) == ("in_service", 0, 0)

    engine.machine.complete_service(a.entry.id, 12)
    report = engine.notifier.position_report(a.customer_id)
    assert report.status == "completed"
    assert report.position is None

    engine.machine.cancel_entry(b.entry.id)
    assert engine.notifier.position_report(b.customer_id).status == "cancelled"
    assert engine.notifier.position_report(c.customer_id).position == 1

    with pytest.raises(NotFound):
        engine.notifier.position_report("customer_unknown")


def test_admin_stats(engine):
    for name in ("Ana", "Bo", "Cy"):
        engine.admission.admit(name, "555-0001")
    _serve(engine, 20)

    stats = engine.notifier.admin_stats()
    assert stats.total_in_queue == 2
    assert stats.total_served_today == 1
    assert stats.avg_service_minutes == 20
    assert stats.estimated_wait_minutes == 40
    assert stats.to_message()["type"] == "admin_stats"


def test_admin_stats_on_empty_day(engine):
    stats = engine.notifier.admin_stats()
    assert (stats.total_in_queue, stats.total_served_today) == (0, 0)
    assert stats.avg_service_minutes == 15
    assert stats.estimated_wait_minutes == 0


def test_yesterdays_completions_do_not_count():
    clock = Clock(datetime(2024, 5, 9, 23, 0, tzinfo=timezone.utc))
    engine = build_engine(InMemoryRecordStore(clock=clock), clock)
    engine.admission.admit("Ana", "555-0001")
    engine.admission.admit("Bo", "555-0002")
    _serve(engine, 50)

    clock.now = datetime(2024, 5, 10, 8, 0, tzinfo=timezone.utc)
    _serve(engine, 10)

    stats = engine.notifier.admin_stats()
    assert stats.total_served_today == 1
    assert stats.avg_service_minutes == 10


def test_bus_failure_does_not_fail_the_operation(clock, caplog):
    store = InMemoryRecordStore(clock=clock)
    engine = build_engine(store, clock)
    engine.notifier.bus = BrokenBus()

    with caplog.at_level(logging.ERROR, logger="walkin_queue.notifier"):
        result = engine.admission.admit("Ana", "555-0001")

    assert result.position == 1
    assert "failed to publish customer_joined" in caplog.text


def test_publish_is_skipped_when_store_cannot_be_read(clock):
    store = UnreadableStore(clock=clock)
    notifier = ChangeNotifier(store, clock=clock, tz=timezone.utc)
    entry = store.insert_entry_atomic("customer_a", "Ana", "555-0001", 15)
    assert notifier.publish("customer_joined", entry) is None


def test_snapshot(engine):
    engine.admission.admit("Ana", "555-0001")
    snap = engine.notifier.snapshot()
    assert snap["type"] == "queue_snapshot"
    assert [e["name"] for e in snap["queue"]] == ["Ana"]
    assert snap["stats"]["total_in_queue"] == 1
