from __future__ import annotations

import pytest

from helpers import FakeClock, MemoryStore
from powerguard.drivers.notifier_log import LoggingNotifier
from powerguard.drivers.transport_sim import SimulatedTransport


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> SimulatedTransport:
    return SimulatedTransport(["1", "2", "3"])


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()
