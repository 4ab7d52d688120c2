"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.

Time is always injected: services receive a FakeClock (epoch milliseconds)
and, where they sleep, a RecordingSleep, so no test waits on wall time
unless it says so explicitly.
"""

import os
import sys

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tests.test_fixtures import (  # noqa: E402
    FakeClock,
    FakeDataService,
    InMemoryPushTransport,
    RecordingSleep,
)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def make_settings():
    """
    Settings factory that ignores any .env file.

    Usage:
        settings = make_settings(CACHE_MAX_ENTRIES=5)
    """
    from querysync.core.config.settings import Settings

    def _make(**overrides):
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def settings(make_settings):
    """Default settings for unit tests."""
    return make_settings(ENVIRONMENT="development", LOG_FORMAT="console")


# ============================================================================
# Time Fixtures
# ============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_sleep():
    """
    Sleep double that records delays.

    Backoff and debounce delays return immediately; delays of a minute or
    more (sync intervals) block until cancelled.
    """
    return RecordingSleep(park_at=60.0)


# ============================================================================
# Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def metrics():
    """Metrics collector with its own registry."""
    from querysync.infrastructure.monitoring.metrics_collector import MetricsCollector

    return MetricsCollector()


@pytest.fixture
def cache(clock, metrics):
    from querysync.infrastructure.cache.query_cache import QueryCache

    return QueryCache(max_entries=100, default_ttl_ms=300_000, clock=clock, metrics=metrics)


@pytest.fixture
def fake_service():
    return FakeDataService()


@pytest.fixture
def push_transport():
    return InMemoryPushTransport()


@pytest.fixture
def executor(fake_service, cache, settings, fast_sleep, metrics):
    """BatchQueryExecutor over the fake service; retries sleep through fast_sleep."""
    from querysync.sync.batch_executor import BatchQueryExecutor

    return BatchQueryExecutor(fake_service, cache, settings=settings, metrics=metrics, sleep=fast_sleep)


@pytest.fixture
def engine_factory(settings, fake_service, clock, fast_sleep):
    """
    Build SyncEngines over the fake data service and an in-memory store.

    Usage:
        engine = engine_factory()
        engine = engine_factory(transport=push_transport)
    """
    from querysync.engine import SyncEngine
    from querysync.infrastructure.storage.local_store import LocalKeyValueStore

    def _make(**overrides):
        options = {
            "data_service": fake_service,
            "store": LocalKeyValueStore(path=None, clock=clock),
            "clock": clock,
            "sleep": fast_sleep,
        }
        options.update(overrides)
        engine_settings = options.pop("settings", settings)
        return SyncEngine(engine_settings, **options)

    return _make
