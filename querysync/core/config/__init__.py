"""
Configuration Module

Settings (pydantic-settings), enums and cache presets.
"""

from .constants import (
    CACHE_PRESETS,
    BreakerState,
    CachePreset,
    ChannelState,
    HealthStatus,
    Stage,
    SyncPriority,
    SyncState,
)
from .settings import Settings, get_settings, reload_settings

__all__ = [
    "CACHE_PRESETS",
    "BreakerState",
    "CachePreset",
    "ChannelState",
    "HealthStatus",
    "Settings",
    "Stage",
    "SyncPriority",
    "SyncState",
    "get_settings",
    "reload_settings",
]
