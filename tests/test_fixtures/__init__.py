"""
Test Fixtures Package

Shared test doubles for consistent testing across all modules: a scripted
data service, an in-memory push transport, a controllable clock and sleep.
"""

from .data_service_factory import FakeDataService, QueryFactory
from .realtime_factory import EventFactory, InMemoryPushConnection, InMemoryPushTransport
from .timing_factory import FakeClock, RecordingSleep

__all__ = [
    "EventFactory",
    "FakeClock",
    "FakeDataService",
    "InMemoryPushConnection",
    "InMemoryPushTransport",
    "QueryFactory",
    "RecordingSleep",
]
