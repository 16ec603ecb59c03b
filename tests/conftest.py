from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from walkin_queue.admission import AdmissionController
from walkin_queue.notifier import ChangeNotifier, InMemoryEventBus
from walkin_queue.sequencer import PositionSequencer
from walkin_queue.state_machine import QueueStateMachine
from walkin_queue.store import InMemoryRecordStore, RecordStore


class Clock:
    """Manually advanced UTC clock; each call ticks one second."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@dataclass
class Engine:
    store: RecordStore
    bus: InMemoryEventBus
    sequencer: PositionSequencer
    notifier: ChangeNotifier
    machine: QueueStateMachine
    admission: AdmissionController

    def positions(self) -> list[int]:
        return [e.position for e in self.store.select_active()]


def build_engine(store: RecordStore, clock: Clock | None = None, **machine_kwargs) -> Engine:
    bus = InMemoryEventBus()
    sequencer = PositionSequencer(store)
    notifier = ChangeNotifier(store, bus, clock=clock or Clock(), tz=timezone.utc)
    machine = QueueStateMachine(store, sequencer, notifier, **machine_kwargs)
    admission = AdmissionController(sequencer, notifier)
    return Engine(store, bus, sequencer, notifier, machine, admission)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(clock: Clock) -> Engine:
    return build_engine(InMemoryRecordStore(clock=clock), clock)
