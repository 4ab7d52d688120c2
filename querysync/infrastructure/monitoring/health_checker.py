"""
Health Checker Module

Aggregates component health for the sync engine:
- Circuit breakers (render / fetch guards)
- Query cache fill
- Push channel failures
- Local store availability

Any one issue makes the engine degraded; two or more make it unhealthy.

Author: System Architect
Date: 2026-03-02
"""

from datetime import datetime, timezone
from typing import Any

from querysync.core.config.constants import HealthStatus, Stage
from querysync.core.config.settings import Settings, get_settings
from querysync.core.logging.logger import get_logger, log_stage

logger = get_logger(__name__)

CACHE_PRESSURE_RATIO = 1.0


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthChecker:
    """
    Health checks over the engine's components.

    Usage:
        checker = HealthChecker(settings, breakers=[render_guard, fetch_guard],
                                cache=cache, subscriptions=subscriptions, store=store)
        report = checker.detailed_health_report()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        breakers=(),
        cache=None,
        subscriptions=None,
        store=None,
    ):
        self.settings = settings or get_settings()
        self._breakers = list(breakers)
        self._cache = cache
        self._subscriptions = subscriptions
        self._store = store

    def check_health(self) -> dict[str, Any]:
        """Quick status: overall state plus one word per component."""
        report = self.detailed_health_report()
        return {
            "status": report["status"],
            "timestamp": report["timestamp"],
            "version": report["version"],
            "components": {name: info.get("status") for name, info in report["components"].items()},
        }

    def detailed_health_report(self) -> dict[str, Any]:
        report: dict[str, Any] = {
            "status": HealthStatus.HEALTHY.value,
            "timestamp": _timestamp(),
            "version": self.settings.app.APP_VERSION,
            "environment": self.settings.app.ENVIRONMENT,
            "components": {},
        }
        issues: list[str] = []

        for breaker in self._breakers:
            stats = breaker.stats()
            halted = breaker.is_halted or bool(stats.get("halted_subjects"))
            report["components"][f"circuit_breaker:{breaker.name}"] = {
                "status": "halted" if halted else "healthy",
                **stats,
            }
            if halted:
                issues.append(f"circuit_breaker:{breaker.name}")

        if self._cache is not None:
            size = len(self._cache)
            fill = size / self._cache.max_entries if self._cache.max_entries else 0.0
            at_capacity = fill >= CACHE_PRESSURE_RATIO
            report["components"]["cache"] = {
                "status": "at_capacity" if at_capacity else "healthy",
                "size": size,
                "max_entries": self._cache.max_entries,
                "fill_ratio": round(fill, 3),
            }
            if at_capacity:
                issues.append("cache")
        else:
            report["components"]["cache"] = {"status": "not_configured"}

        if self._subscriptions is not None:
            channel_stats = self._subscriptions.stats()
            failed = channel_stats.get("failed_channels", 0)
            report["components"]["push_channels"] = {
                "status": "degraded" if failed else "healthy",
                **channel_stats,
            }
            if failed:
                issues.append("push_channels")
        else:
            report["components"]["push_channels"] = {"status": "not_configured"}

        if self._store is not None:
            available = self._store.available
            report["components"]["local_store"] = {
                "status": "healthy" if available else "unavailable",
                "entries": len(self._store),
            }
            if not available:
                issues.append("local_store")
        else:
            report["components"]["local_store"] = {"status": "not_configured"}

        if len(issues) == 1:
            report["status"] = HealthStatus.DEGRADED.value
            report["degraded_components"] = issues
        elif issues:
            report["status"] = HealthStatus.UNHEALTHY.value
            report["failed_components"] = issues

        if issues:
            log_stage(logger, Stage.PERFORMANCE, "Health check found issues", level="warning", issues=issues)
        return report

    def liveness_check(self) -> dict[str, Any]:
        return {"status": "alive", "timestamp": _timestamp(), "version": self.settings.app.APP_VERSION}

    def readiness_check(self) -> dict[str, Any]:
        """Ready unless the fetch path is halted."""
        halted = [b.name for b in self._breakers if b.is_halted]
        if halted:
            return {
                "status": "not_ready",
                "timestamp": _timestamp(),
                "version": self.settings.app.APP_VERSION,
                "reason": f"Circuit breaker halted: {', '.join(halted)}",
            }
        return {"status": "ready", "timestamp": _timestamp(), "version": self.settings.app.APP_VERSION}
