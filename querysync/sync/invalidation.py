"""
Invalidation Manager

Mutation-driven, pattern-scoped cache invalidation.

    invalidate_by_mutation_type("user_updated", {"org_id": "org1", "user_id": "u1"})

looks the mutation type up in the rule table, resolves every KeyPattern
against the context and evicts exactly the matching keys. A pattern whose
placeholders are missing from the context is skipped, never widened, so a
mutation cannot evict outside its declared scope.

Key conventions used by the default rules (built with build_key):

    ("users", org_id, ...)                     users of an organization
    ("user", user_id, ...)                     one user's profile
    ("dashboard", org_id, user_id, ...)        dashboard data
    ("feedback", org_id, ...)                  feedback of an organization
    ("organization", org_id, ...)              organization detail/settings/stats
    ("stats", kind, org_id)                    dashboard / feedback / files stats
    ("notifications", user_id, ...)            notification list / unread count
    ("memberships", org_id, ...)               organization memberships

Query descriptor keys are [resource_name, projection, filters, options];
patterns such as ("organization_memberships", "*", {"organization_id":
"{org_id}"}) match them by filter subset.

Besides explicit invalidation the manager owns two maintenance operations:
background_refresh() re-primes the critical key set for a user and
cleanup_stale_data() sweeps entries nobody has looked at for a long time.
"""

import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from querysync.core.config.constants import Stage
from querysync.core.config.settings import Settings, get_settings
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.cache.key_builder import WILDCARD, KeyPattern
from querysync.infrastructure.cache.query_cache import QueryCache
from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult

logger = get_logger(__name__)

CriticalQueryFactory = Callable[[str, str], QueryDescriptor]


@dataclass(frozen=True)
class InvalidationRule:
    """mutation_type → patterns evicted when that mutation happens."""

    mutation_type: str
    patterns: tuple[KeyPattern, ...]


_USER_PATTERNS = (
    KeyPattern.of("users", "{org_id}"),
    KeyPattern.of("user", "{user_id}"),
    KeyPattern.of("dashboard", "{org_id}", "{user_id}"),
)
_FEEDBACK_PATTERNS = (
    KeyPattern.of("feedback", "{org_id}"),
    KeyPattern.of("dashboard", "{org_id}"),
)
_NOTIFICATION_PATTERNS = (
    KeyPattern.of("notifications", "{user_id}"),
)

DEFAULT_RULES: tuple[InvalidationRule, ...] = (
    InvalidationRule("user_created", _USER_PATTERNS),
    InvalidationRule("user_updated", _USER_PATTERNS),
    InvalidationRule("user_update", _USER_PATTERNS),
    InvalidationRule("user_deleted", _USER_PATTERNS),
    InvalidationRule("feedback_created", _FEEDBACK_PATTERNS),
    InvalidationRule("feedback_updated", _FEEDBACK_PATTERNS),
    InvalidationRule("feedback_deleted", _FEEDBACK_PATTERNS),
    InvalidationRule(
        "organization_updated",
        (
            KeyPattern.of("organization", "{org_id}"),
            KeyPattern.of("stats", "dashboard", "{org_id}"),
            KeyPattern.of("stats", "feedback", "{org_id}"),
            KeyPattern.of("stats", "files", "{org_id}"),
        ),
    ),
    InvalidationRule("notification_created", _NOTIFICATION_PATTERNS),
    InvalidationRule("notification_read", _NOTIFICATION_PATTERNS),
    InvalidationRule(
        "membership_changed",
        (
            KeyPattern.of("memberships", "{org_id}"),
            KeyPattern.of("organization_memberships", WILDCARD, {"organization_id": "{org_id}"}),
            KeyPattern.of("organization_memberships", WILDCARD, {"user_id": "{user_id}"}),
        ),
    ),
)

# Applied to mutation types without a rule; needs both org_id and user_id.
FALLBACK_PATTERNS: tuple[KeyPattern, ...] = (
    KeyPattern.of("dashboard", "{org_id}", "{user_id}"),
)


def default_critical_queries() -> list[CriticalQueryFactory]:
    """Membership, feature configuration and unread notifications."""
    return [
        lambda org_id, user_id: QueryDescriptor(
            key="critical:membership",
            resource_name="organization_memberships",
            projection="id,role,status,organization_id,user_id",
            filters={"organization_id": org_id, "user_id": user_id, "status": "active"},
        ),
        lambda org_id, user_id: QueryDescriptor(
            key="critical:feature_flags",
            resource_name="organization_feature_configs",
            projection="feature_key,enabled,config",
            filters={"organization_id": org_id},
        ),
        lambda org_id, user_id: QueryDescriptor(
            key="critical:notifications_unread",
            resource_name="notifications",
            projection="id",
            filters={"user_id": user_id, "read": False},
        ),
    ]


class InvalidationManager:
    """
    Evicts cache keys in response to mutations and keeps the cache tidy.

    Usage:
        manager = InvalidationManager(cache, executor)
        manager.register_rule("invoice_paid", KeyPattern.of("invoices", "{org_id}"))
        manager.invalidate_by_mutation_type("invoice_paid", {"org_id": "org1"})
    """

    def __init__(
        self,
        cache: QueryCache,
        executor=None,
        rules: Iterable[InvalidationRule] | None = None,
        *,
        settings: Settings | None = None,
        is_active: Callable[[str], bool] | None = None,
        critical_queries: Iterable[CriticalQueryFactory] | None = None,
        metrics=None,
    ):
        settings = settings or get_settings()
        self._cache = cache
        self._executor = executor
        self._is_active = is_active
        self._metrics = metrics
        self.stale_data_max_age_ms = settings.cache.CACHE_STALE_DATA_MAX_AGE_MS

        self._rules: dict[str, list[KeyPattern]] = {}
        for rule in DEFAULT_RULES if rules is None else rules:
            self.register_rule(rule.mutation_type, *rule.patterns)

        self._critical_queries = list(
            default_critical_queries() if critical_queries is None else critical_queries
        )
        self._invalidations = 0
        self._evicted = 0

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def register_rule(self, mutation_type: str, *patterns: KeyPattern) -> None:
        """Add patterns to the rule for ``mutation_type``."""
        self._rules.setdefault(mutation_type, []).extend(patterns)

    def set_is_active(self, is_active: Callable[[str], bool] | None) -> None:
        self._is_active = is_active

    @property
    def rules(self) -> dict[str, tuple[KeyPattern, ...]]:
        return {mutation_type: tuple(patterns) for mutation_type, patterns in self._rules.items()}

    def resolve_patterns(self, mutation_type: str, context: Mapping[str, Any]) -> list[KeyPattern]:
        """Concrete patterns for a mutation under ``context``."""
        patterns = self._rules.get(mutation_type)
        if patterns is None:
            patterns = FALLBACK_PATTERNS
        resolved = []
        for pattern in patterns:
            concrete = pattern.resolve(context)
            if concrete is None:
                log_stage(
                    logger,
                    Stage.INVALIDATION,
                    "Skipping pattern with unresolved placeholders",
                    level="debug",
                    mutation_type=mutation_type,
                    pattern=str(pattern),
                    missing=sorted(pattern.placeholders - {k for k, v in context.items() if v is not None}),
                )
                continue
            resolved.append(concrete)
        return resolved

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_by_mutation_type(self, mutation_type: str, context: Mapping[str, Any] | None = None) -> list[str]:
        """
        Evict the keys affected by a mutation.

        Returns:
            The evicted cache keys
        """
        context = dict(context or {})
        patterns = self.resolve_patterns(mutation_type, context)
        evicted = self._cache.invalidate_many(patterns)

        self._invalidations += 1
        self._evicted += len(evicted)
        log_stage(
            logger,
            Stage.INVALIDATION,
            "Invalidated by mutation",
            mutation_type=mutation_type,
            known_rule=mutation_type in self._rules,
            patterns=len(patterns),
            evicted=len(evicted),
        )
        if self._metrics:
            self._metrics.record_invalidation(mutation_type, len(evicted))
        return evicted

    def invalidate(self, target: str | KeyPattern) -> list[str]:
        evicted = self._cache.invalidate(target)
        self._evicted += len(evicted)
        return evicted

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def register_critical_query(self, factory: CriticalQueryFactory) -> None:
        self._critical_queries.append(factory)

    async def background_refresh(
        self, org_id: str, user_id: str, timeout: float | None = None
    ) -> dict[str, QueryResult]:
        """
        Revalidate the critical key set for (org_id, user_id).

        Failures are returned per key; a refresh never raises for them.
        """
        if self._executor is None:
            log_stage(logger, Stage.INVALIDATION, "Background refresh skipped: no executor", level="debug")
            return {}

        descriptors = [factory(org_id, user_id) for factory in self._critical_queries]
        start = time.perf_counter()
        results = await self._executor.execute(descriptors, timeout=timeout, refresh=True)
        failed = [key for key, result in results.items() if not result.ok]

        log_stage(
            logger,
            Stage.INVALIDATION,
            "Background refresh completed",
            level="warning" if failed else "info",
            org_id=org_id,
            refreshed=len(results) - len(failed),
            failed=failed,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return results

    def cleanup_stale_data(self, max_age_ms: float | None = None) -> list[str]:
        """
        Evict entries older than the long-horizon bound that no active
        observer is using. Returns the evicted keys.
        """
        max_age = self.stale_data_max_age_ms if max_age_ms is None else max_age_ms
        evicted = self._cache.evict_older_than(max_age, keep=self._is_active)
        if evicted:
            log_stage(
                logger,
                Stage.INVALIDATION,
                "Cleaned up stale cache data",
                evicted=len(evicted),
                max_age_ms=max_age,
            )
        return evicted

    def stats(self) -> dict[str, Any]:
        return {
            "rules": len(self._rules),
            "invalidations": self._invalidations,
            "evicted_keys": self._evicted,
            "critical_queries": len(self._critical_queries),
            "stale_data_max_age_ms": self.stale_data_max_age_ms,
        }
