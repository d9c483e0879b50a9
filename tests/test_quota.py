"""Tests for the daily quota ledger."""

from datetime import datetime, timedelta

import pytest

from chatrelay.service.actors import AnonymousActor, AuthenticatedActor
from chatrelay.service.quota import (
    SCOPE_ANON,
    SCOPE_USER,
    SHARED_ANONYMOUS_IDENTIFIER,
    needs_reset,
    resolve_scope,
    serialize_snapshot,
)
from chatrelay.service.runtime import get_runtime


NOON = datetime(2026, 3, 14, 12, 0, 0)


@pytest.fixture
def ledger():
    return get_runtime().quota


@pytest.fixture
def user_actor():
    runtime = get_runtime()
    user = runtime.store.create_user("bob", user_id="user-bob")
    return AuthenticatedActor(user_id=user.id, username=user.username)


# =============================================================================
# Scope resolution
# =============================================================================


class TestResolveScope:
    """Tests for mapping actors onto quota rows."""

    def test_authenticated_actor_gets_own_row(self):
        scope, identifier, user_id = resolve_scope(AuthenticatedActor(user_id="u1"))
        assert scope == SCOPE_USER
        assert identifier == "user:u1"
        assert user_id == "u1"

    def test_anonymous_actors_share_pool(self):
        first = resolve_scope(AnonymousActor(key="a"))
        second = resolve_scope(AnonymousActor(key="b"))
        assert first == second == (SCOPE_ANON, SHARED_ANONYMOUS_IDENTIFIER, None)


class TestNeedsReset:
    """Tests for the daily reset rule."""

    def test_missing_stamp_resets(self):
        assert needs_reset(None, NOON) is True

    def test_same_day_does_not_reset(self):
        assert needs_reset(NOON.replace(hour=0, minute=5), NOON) is False

    def test_previous_day_resets(self):
        assert needs_reset(NOON - timedelta(days=1), NOON) is True

    def test_small_future_drift_tolerated(self):
        assert needs_reset(NOON + timedelta(seconds=30), NOON) is False

    def test_far_future_stamp_resets(self):
        assert needs_reset(NOON + timedelta(hours=2), NOON) is True


# =============================================================================
# Consume / inspect
# =============================================================================


class TestConsume:
    """Tests for QuotaLedger.consume."""

    def test_consume_increments_until_limit(self, ledger, user_actor):
        ledger.set_custom_limit(user_actor, 3)
        results = [ledger.consume(user_actor, now=NOON) for _ in range(4)]

        assert [r.success for r in results] == [True, True, True, False]
        assert results[2].snapshot.used_count == 3
        assert results[2].snapshot.remaining == 0
        assert results[3].reason == "OVER_LIMIT"

    def test_rejection_leaves_snapshot_unchanged(self, ledger, user_actor):
        ledger.set_custom_limit(user_actor, 5)
        for _ in range(4):
            assert ledger.consume(user_actor, now=NOON).success

        accepted = ledger.consume(user_actor, now=NOON)
        rejected = ledger.consume(user_actor, now=NOON)

        assert accepted.success is True
        assert accepted.snapshot.used_count == 5
        assert rejected.success is False
        assert rejected.snapshot.used_count == 5
        assert ledger.inspect(user_actor, now=NOON).used_count == 5

    def test_cost_larger_than_remaining_is_rejected(self, ledger, user_actor):
        ledger.set_custom_limit(user_actor, 2)
        result = ledger.consume(user_actor, cost=3, now=NOON)
        assert result.success is False
        assert result.snapshot.used_count == 0

    def test_negative_cost_is_clamped(self, ledger, user_actor):
        result = ledger.consume(user_actor, cost=-5, now=NOON)
        assert result.success is True
        assert result.snapshot.used_count == 0

    def test_new_day_resets_before_consuming(self, ledger, user_actor):
        ledger.set_custom_limit(user_actor, 2)
        ledger.consume(user_actor, now=NOON)
        ledger.consume(user_actor, now=NOON)
        assert ledger.consume(user_actor, now=NOON).success is False

        tomorrow = NOON + timedelta(days=1)
        result = ledger.consume(user_actor, now=tomorrow)
        assert result.success is True
        assert result.snapshot.used_count == 1
        assert result.snapshot.last_reset_at == tomorrow

    def test_clock_skew_triggers_reset(self, ledger, user_actor):
        ledger.consume(user_actor, now=NOON)
        record = get_runtime().store.get_quota_record(SCOPE_USER, user_actor.identifier)
        record.used_count = 7
        record.last_reset_at = NOON + timedelta(hours=3)

        snapshot = ledger.inspect(user_actor, now=NOON)
        assert snapshot.used_count == 0
        assert snapshot.last_reset_at == NOON

    def test_negative_limit_is_unlimited(self, ledger, user_actor):
        ledger.set_custom_limit(user_actor, -1)
        for _ in range(25):
            result = ledger.consume(user_actor, now=NOON)
            assert result.success is True
        assert result.snapshot.unlimited is True
        assert result.snapshot.remaining is None
        assert result.snapshot.used_count == 25

    def test_anonymous_actors_drain_one_pool(self, ledger):
        runtime = get_runtime()
        runtime.system_settings.update("anonymous_daily_quota", "2")

        assert ledger.consume(AnonymousActor(key="one"), now=NOON).success
        assert ledger.consume(AnonymousActor(key="two"), now=NOON).success
        blocked = ledger.consume(AnonymousActor(key="three"), now=NOON)

        assert blocked.success is False
        assert blocked.snapshot.identifier == SHARED_ANONYMOUS_IDENTIFIER
        assert blocked.snapshot.daily_limit == 2
        assert blocked.snapshot.using_default_limit is True


class TestInspect:
    """Tests for QuotaLedger.inspect."""

    def test_inspect_does_not_consume(self, ledger, user_actor):
        ledger.consume(user_actor, now=NOON)
        first = ledger.inspect(user_actor, now=NOON)
        second = ledger.inspect(user_actor, now=NOON)
        assert first.used_count == second.used_count == 1

    def test_inspect_writes_only_on_reset(self, ledger, user_actor, monkeypatch):
        store = get_runtime().store
        ledger.consume(user_actor, now=NOON)
        saved = []
        original = store.save_quota_record

        def recording_save(record):
            saved.append((record.used_count, record.last_reset_at))
            return original(record)

        monkeypatch.setattr(store, "save_quota_record", recording_save)

        ledger.inspect(user_actor, now=NOON + timedelta(hours=1))
        assert saved == []

        tomorrow = NOON + timedelta(days=1)
        snapshot = ledger.inspect(user_actor, now=tomorrow)
        assert snapshot.used_count == 0
        assert saved == [(0, tomorrow)]

    def test_default_user_limit_applies(self, ledger, user_actor):
        snapshot = ledger.inspect(user_actor, now=NOON)
        assert snapshot.daily_limit == 200
        assert snapshot.using_default_limit is True
        assert snapshot.custom_daily_limit is None

    def test_settings_update_replaces_cached_policy(self, ledger, user_actor):
        assert ledger.inspect(user_actor, now=NOON).daily_limit == 200
        get_runtime().system_settings.update("default_user_daily_quota", "1")
        assert ledger.inspect(user_actor, now=NOON).daily_limit == 1
        assert ledger.consume(user_actor, now=NOON).success is True
        assert ledger.consume(user_actor, now=NOON).success is False

    def test_policy_reads_system_settings(self, ledger, user_actor):
        get_runtime().system_settings.update("default_user_daily_quota", "42")
        assert ledger.inspect(user_actor, now=NOON).daily_limit == 42

    def test_negative_policy_value_floors_at_zero(self, ledger, user_actor):
        get_runtime().system_settings.update("default_user_daily_quota", "-10")
        snapshot = ledger.inspect(user_actor, now=NOON)
        assert snapshot.daily_limit == 0
        assert ledger.consume(user_actor, now=NOON).success is False


class TestSerializeSnapshot:
    """Tests for the external snapshot shape."""

    def test_camel_case_keys(self, ledger, user_actor):
        ledger.set_custom_limit(user_actor, 10)
        payload = serialize_snapshot(ledger.consume(user_actor, now=NOON).snapshot)
        assert payload == {
            "scope": "USER",
            "identifier": "user:user-bob",
            "dailyLimit": 10,
            "usedCount": 1,
            "remaining": 9,
            "lastResetAt": NOON.isoformat(),
            "unlimited": False,
            "customDailyLimit": 10,
            "usingDefaultLimit": False,
        }


class TestSharedAnonymousSync:
    """Tests for sync_shared_anonymous_quota."""

    def test_creates_pool_row(self, ledger):
        snapshot = ledger.sync_shared_anonymous_quota()
        assert snapshot.identifier == SHARED_ANONYMOUS_IDENTIFIER
        assert snapshot.used_count == 0

    def test_reset_used_zeroes_counter(self, ledger):
        anon = AnonymousActor(key="k")
        ledger.consume(anon)
        ledger.consume(anon)
        snapshot = ledger.sync_shared_anonymous_quota(reset_used=True)
        assert snapshot.used_count == 0
