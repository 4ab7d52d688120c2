"""
Unit Tests for Constants and Enumerations
"""

import pytest

from querysync.core.config.constants import (
    BACKGROUND,
    CACHE_PRESETS,
    DYNAMIC,
    REALTIME,
    SEMI_STATIC,
    STATIC,
    BreakerState,
    ChannelState,
    HealthStatus,
    Stage,
    SyncPriority,
    SyncState,
)


@pytest.mark.unit
class TestStageEnum:
    def test_read_path_stages_are_numbered(self):
        assert Stage.CACHE_LOOKUP.value.startswith("1.0")
        assert Stage.BATCH_EXECUTION.value.startswith("2.0")
        assert Stage.SHUTDOWN.value.startswith("8.0")

    def test_stage_values_are_unique(self):
        values = [stage.value for stage in Stage]
        assert len(values) == len(set(values))

    def test_stage_is_string_enum(self):
        assert isinstance(Stage.INVALIDATION, str)


@pytest.mark.unit
class TestStateEnums:
    def test_breaker_states(self):
        assert {s.value for s in BreakerState} == {"armed", "halted"}

    def test_sync_states(self):
        assert {s.value for s in SyncState} == {"idle", "running", "backoff_wait", "stopped"}

    def test_priorities_accept_plain_strings(self):
        assert SyncPriority("high") is SyncPriority.HIGH

    def test_channel_and_health_states(self):
        assert ChannelState.FAILED.value == "failed"
        assert HealthStatus.DEGRADED.value == "degraded"


@pytest.mark.unit
class TestCachePresets:
    def test_preset_table(self):
        assert (STATIC.stale_time_ms, STATIC.gc_time_ms) == (900_000, 3_600_000)
        assert (SEMI_STATIC.stale_time_ms, SEMI_STATIC.gc_time_ms) == (300_000, 1_800_000)
        assert (DYNAMIC.stale_time_ms, DYNAMIC.gc_time_ms) == (60_000, 600_000)
        assert (REALTIME.stale_time_ms, REALTIME.refetch_interval_ms) == (0, 30_000)
        assert BACKGROUND.refetch_interval_ms == 300_000

    def test_presets_indexed_by_name(self):
        assert CACHE_PRESETS["dynamic"] is DYNAMIC
        assert set(CACHE_PRESETS) == {"static", "semi_static", "dynamic", "realtime", "background"}

    def test_presets_are_immutable(self):
        with pytest.raises(AttributeError):
            STATIC.stale_time_ms = 1
