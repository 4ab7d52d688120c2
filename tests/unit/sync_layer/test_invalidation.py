"""
Unit Tests for InvalidationManager

Covers rule resolution, scoped eviction, the fallback rule, custom rules,
background refresh of critical queries and long-horizon cleanup.
"""

import pytest

from querysync.infrastructure.cache.key_builder import WILDCARD, KeyPattern, build_key
from querysync.infrastructure.data_service.models import QueryResult
from querysync.sync.invalidation import InvalidationManager, InvalidationRule
from tests.test_fixtures import QueryFactory


@pytest.fixture
def manager(cache, settings, metrics):
    return InvalidationManager(cache, settings=settings, metrics=metrics)


def seed(cache, *keys):
    for key in keys:
        cache.set(key, QueryResult(data=[key]))


@pytest.mark.unit
class TestMutationInvalidation:
    def test_user_updated_stays_in_org_scope(self, manager, cache):
        org1_users = build_key("users", "org1")
        org1_users_page = build_key("users", "org1", {"page": 2})
        org2_users = build_key("users", "org2")
        profile = build_key("user", "u1")
        other_profile = build_key("user", "u2")
        seed(cache, org1_users, org1_users_page, org2_users, profile, other_profile)

        evicted = manager.invalidate_by_mutation_type("user_updated", {"org_id": "org1", "user_id": "u1"})

        assert sorted(evicted) == sorted([org1_users, org1_users_page, profile])
        assert sorted(cache.keys()) == sorted([org2_users, other_profile])

    def test_user_update_alias_evicts_only_org_users(self, manager, cache):
        org1_users = build_key("users", "org1")
        org1_feedback = build_key("feedback", "org1")
        org2_users = build_key("users", "org2")
        seed(cache, org1_users, org1_feedback, org2_users)

        evicted = manager.invalidate_by_mutation_type("user_update", {"org_id": "org1"})

        assert evicted == [org1_users]
        assert org1_users not in cache
        assert sorted(cache.keys()) == sorted([org1_feedback, org2_users])

    def test_missing_placeholder_skips_pattern(self, manager, cache):
        seed(cache, build_key("users", "org1"), build_key("user", "u1"))

        evicted = manager.invalidate_by_mutation_type("user_updated", {"org_id": "org1"})

        assert evicted == [build_key("users", "org1")]
        assert build_key("user", "u1") in cache

    def test_unknown_mutation_uses_fallback(self, manager, cache):
        dashboard = build_key("dashboard", "org1", "u1")
        seed(cache, dashboard, build_key("users", "org1"))

        evicted = manager.invalidate_by_mutation_type("invoice_paid", {"org_id": "org1", "user_id": "u1"})

        assert evicted == [dashboard]

    def test_fallback_without_full_context_is_noop(self, manager, cache):
        seed(cache, build_key("dashboard", "org1", "u1"))
        assert manager.invalidate_by_mutation_type("invoice_paid", {"org_id": "org1"}) == []
        assert len(cache) == 1

    def test_membership_patterns_match_descriptor_filters(self, manager, cache):
        in_org = QueryFactory.memberships("org1")
        of_user = QueryFactory.memberships("org9", "u1")
        unrelated = QueryFactory.memberships("org2")
        seed(cache, in_org.cache_key, of_user.cache_key, unrelated.cache_key)

        manager.invalidate_by_mutation_type("membership_changed", {"org_id": "org1", "user_id": "u1"})

        assert cache.keys() == [unrelated.cache_key]

    def test_metrics_recorded(self, manager, cache, metrics):
        seed(cache, build_key("users", "org1"))
        manager.invalidate_by_mutation_type("user_updated", {"org_id": "org1", "user_id": "u1"})

        assert metrics.sample("querysync_invalidations_total", {"mutation_type": "user_updated"}) == 1.0
        assert metrics.sample("querysync_invalidated_keys_total", {"mutation_type": "user_updated"}) == 1.0
        assert manager.stats()["evicted_keys"] == 1


@pytest.mark.unit
class TestRules:
    def test_register_rule_extends_table(self, manager, cache):
        manager.register_rule("invoice_paid", KeyPattern.of("invoices", "{org_id}"))
        seed(cache, build_key("invoices", "org1", "open"), build_key("invoices", "org2"))

        evicted = manager.invalidate_by_mutation_type("invoice_paid", {"org_id": "org1"})

        assert evicted == [build_key("invoices", "org1", "open")]

    def test_custom_rule_table_replaces_defaults(self, cache, settings):
        manager = InvalidationManager(
            cache, rules=[InvalidationRule("reset", (KeyPattern.of(WILDCARD),))], settings=settings
        )
        assert set(manager.rules) == {"reset"}

    def test_resolve_patterns(self, manager):
        resolved = manager.resolve_patterns("user_updated", {"org_id": "org1", "user_id": "u1"})
        assert KeyPattern.of("users", "org1") in resolved
        assert KeyPattern.of("dashboard", "org1", "u1") in resolved

    def test_direct_invalidate(self, manager, cache):
        seed(cache, build_key("users", "org1"), build_key("users", "org2"))
        assert manager.invalidate(KeyPattern.of("users")) != []
        assert len(cache) == 0


@pytest.mark.unit
class TestBackgroundRefresh:
    @pytest.mark.asyncio
    async def test_without_executor_is_noop(self, manager):
        assert await manager.background_refresh("org1", "u1") == {}

    @pytest.mark.asyncio
    async def test_refreshes_critical_queries(self, cache, settings, executor, fake_service):
        manager = InvalidationManager(cache, executor, settings=settings)

        results = await manager.background_refresh("org1", "u1")

        assert set(results) == {"critical:membership", "critical:feature_flags", "critical:notifications_unread"}
        assert all(result.ok for result in results.values())
        assert len(fake_service.calls) == 3

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, cache, settings, executor, fake_service):
        manager = InvalidationManager(cache, executor, settings=settings, critical_queries=[])
        manager.register_critical_query(lambda org_id, user_id: QueryFactory.notifications(user_id))
        cache.set(QueryFactory.notifications("u1").cache_key, QueryResult(data=["old"]))

        await manager.background_refresh("org1", "u1")

        assert fake_service.calls_for("notifications") == 1
        assert cache.peek(QueryFactory.notifications("u1").cache_key).data.data == [{"resource": "notifications"}]


@pytest.mark.unit
class TestCleanup:
    def test_old_inactive_entries_removed(self, cache, settings, clock):
        active = build_key("users", "org1")
        idle = build_key("users", "org2")
        manager = InvalidationManager(cache, settings=settings, is_active=lambda key: key == active)
        seed(cache, active, idle)
        clock.advance(10_000)
        fresh = build_key("users", "org3")
        seed(cache, fresh)

        evicted = manager.cleanup_stale_data(max_age_ms=5_000)

        assert evicted == [idle]
        assert sorted(cache.keys()) == sorted([active, fresh])
