"""Shared fixtures: an event bus with a recorder attached and a no-wait error handler."""

import pytest

from pipeline_core.events import EventBus, EventRecorder
from pipeline_core.resilience import ErrorHandler


class FakeClock:
    """Monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    recorder = EventRecorder(max_size=1000)
    bus.subscribe_all(recorder)
    return recorder


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Delays requested by the error handler, in order."""
    return []


@pytest.fixture
def error_handler(bus, sleeps, clock):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return ErrorHandler(bus, sleep=fake_sleep, clock=clock)
