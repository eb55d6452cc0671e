"""Shared fixtures: in-memory bus, in-memory audit DB, manual timers."""

from datetime import datetime, timedelta, timezone
from typing import Callable, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.automata.alerts import AlertDispatcher
from app.automata.audit import AuditLog
from app.automata.context import ExecutionContext
from app.automata.functions import FunctionLibrary
from app.automata.timers import TimerManager
from app.bus.memory import MemoryBus
from app.core.devices import load_devices
from app.db.models import Base


class ManualTimer:
    """Timer stand-in: fires only when the test says so."""

    def __init__(self, delay: float, fn: Callable[[], None]) -> None:
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.fn()


class ManualTimers:
    """Timer factory collecting every timer it creates."""

    def __init__(self) -> None:
        self.created: List[ManualTimer] = []

    def __call__(self, delay: float, fn: Callable[[], None]) -> ManualTimer:
        t = ManualTimer(delay, fn)
        self.created.append(t)
        return t

    @property
    def last(self) -> ManualTimer:
        return self.created[-1]


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


class DictContext(ExecutionContext):
    """Execution context backed by a plain dict."""

    def __init__(self, **values) -> None:
        self.values = values

    def lookup(self, name):
        if name in self.values:
            return self.values[name], True
        return None, False


DEVICES = {
    "door.front": {"name": "Front door", "caps": ["door"], "group": "downstairs"},
    "light.hall": {"name": "Hall light", "caps": ["switch", "dimmer"], "group": "downstairs"},
    "light.porch": {"name": "Porch light", "caps": ["switch"], "group": "outside"},
    "sensor.temp": {"name": "Temperature", "caps": ["temperature"]},
    "switch.kettle": {"name": "Kettle", "caps": ["switch", "power"], "group": "kitchen"},
}


@pytest.fixture
def devices():
    return load_devices(DEVICES)


@pytest.fixture
def bus():
    return MemoryBus()


@pytest.fixture
def sessions():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture
def audit(sessions, bus):
    return AuditLog(sessions, bus.emit)


@pytest.fixture
def manual_timers():
    return ManualTimers()


@pytest.fixture
def timers(bus, manual_timers):
    return TimerManager(bus.emit, timer_factory=manual_timers)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def library(bus, timers, audit):
    """Function library without any automata attached."""
    holder = {"automata": None}
    lib = FunctionLibrary(
        bus=bus,
        timers=timers,
        audit=audit,
        alerts=AlertDispatcher(bus.emit),
        automata=lambda: holder["automata"],
    )
    lib.holder = holder
    return lib
