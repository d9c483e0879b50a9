from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from chatrelay.logging import get_logger
from chatrelay.service.actors import Actor, AnonymousActor, AuthenticatedActor
from chatrelay.service.system_settings import SystemSettingsService, parse_int
from chatrelay.storage.models import QuotaRecord, utcnow
from chatrelay.storage.ttl_cache import TTLCache

logger = get_logger(__name__)

SCOPE_USER = "USER"
SCOPE_ANON = "ANON"
SHARED_ANONYMOUS_IDENTIFIER = "anon:shared"

DEFAULT_ANONYMOUS_DAILY_QUOTA = 20
DEFAULT_USER_DAILY_QUOTA = 200
# Stored reset stamps further ahead than this are treated as clock skew
CLOCK_SKEW_TOLERANCE = timedelta(seconds=60)
POLICY_CACHE_KEY = "quota_policy"


@dataclass(frozen=True)
class QuotaPolicy:
    anonymous_daily_quota: int = DEFAULT_ANONYMOUS_DAILY_QUOTA
    default_user_daily_quota: int = DEFAULT_USER_DAILY_QUOTA

    def default_for(self, scope: str) -> int:
        if scope == SCOPE_ANON:
            return self.anonymous_daily_quota
        return self.default_user_daily_quota


@dataclass(frozen=True)
class QuotaSnapshot:
    scope: str
    identifier: str
    daily_limit: int
    used_count: int
    remaining: Optional[int]
    last_reset_at: datetime
    unlimited: bool
    custom_daily_limit: Optional[int]
    using_default_limit: bool


@dataclass(frozen=True)
class QuotaResult:
    success: bool
    snapshot: QuotaSnapshot
    reason: Optional[str] = None


def resolve_scope(actor: Actor) -> tuple[str, str, Optional[str]]:
    """Map an actor to ``(scope, identifier, user_id)``.

    Anonymous visitors all share one pooled identifier, whatever their key.
    """
    if isinstance(actor, AuthenticatedActor):
        return SCOPE_USER, actor.identifier, actor.user_id
    if isinstance(actor, AnonymousActor):
        return SCOPE_ANON, SHARED_ANONYMOUS_IDENTIFIER, None
    raise TypeError(f"unsupported actor type: {type(actor).__name__}")


def start_of_utc_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def needs_reset(last_reset_at: Optional[datetime], now: datetime) -> bool:
    if last_reset_at is None:
        return True
    if last_reset_at < start_of_utc_day(now):
        return True
    return last_reset_at - now > CLOCK_SKEW_TOLERANCE


def serialize_snapshot(snapshot: QuotaSnapshot) -> Dict[str, Any]:
    return {
        "scope": snapshot.scope,
        "identifier": snapshot.identifier,
        "dailyLimit": snapshot.daily_limit,
        "usedCount": snapshot.used_count,
        "remaining": snapshot.remaining,
        "lastResetAt": snapshot.last_reset_at.isoformat(),
        "unlimited": snapshot.unlimited,
        "customDailyLimit": snapshot.custom_daily_limit,
        "usingDefaultLimit": snapshot.using_default_limit,
    }


class QuotaLedger:
    """Per-scope daily usage counter.

    All reads and writes of a quota row happen inside ``store.transaction()``
    so two concurrent requests cannot both pass the limit check.
    """

    def __init__(
        self,
        store,
        system_settings: SystemSettingsService,
        policy_cache: TTLCache,
    ) -> None:
        self.store = store
        self.system_settings = system_settings
        self.policy_cache = policy_cache

    def policy(self) -> QuotaPolicy:
        raw = self.policy_cache.get_or_load(POLICY_CACHE_KEY, self._load_policy)
        return QuotaPolicy(
            anonymous_daily_quota=int(raw["anonymous_daily_quota"]),
            default_user_daily_quota=int(raw["default_user_daily_quota"]),
        )

    def _load_policy(self) -> Dict[str, int]:
        anon = parse_int(self.system_settings.get("anonymous_daily_quota"))
        user = parse_int(self.system_settings.get("default_user_daily_quota"))
        return {
            "anonymous_daily_quota": max(
                0, DEFAULT_ANONYMOUS_DAILY_QUOTA if anon is None else anon
            ),
            "default_user_daily_quota": max(
                0, DEFAULT_USER_DAILY_QUOTA if user is None else user
            ),
        }

    def invalidate_policy(self) -> None:
        self.policy_cache.invalidate()

    def consume(
        self, actor: Actor, *, cost: int = 1, now: Optional[datetime] = None
    ) -> QuotaResult:
        return self._apply(actor, cost=cost, mutate=True, now=now)

    def inspect(self, actor: Actor, *, now: Optional[datetime] = None) -> QuotaSnapshot:
        return self._apply(actor, cost=0, mutate=False, now=now).snapshot

    def _apply(
        self, actor: Actor, *, cost: int, mutate: bool, now: Optional[datetime]
    ) -> QuotaResult:
        scope, identifier, user_id = resolve_scope(actor)
        moment = now or utcnow()
        policy = self.policy()
        cost = max(0, int(cost))

        with self.store.transaction():
            record = self.store.get_quota_record(scope, identifier)
            if record is None:
                record = self.store.save_quota_record(
                    QuotaRecord(
                        scope=scope,
                        identifier=identifier,
                        used_count=0,
                        last_reset_at=moment,
                        user_id=user_id,
                    )
                )

            dirty = False
            if needs_reset(record.last_reset_at, moment):
                logger.info(
                    "quota_reset",
                    scope=scope,
                    identifier=identifier,
                    previous_used=record.used_count,
                )
                record.used_count = 0
                record.last_reset_at = moment
                dirty = True

            using_default = record.custom_daily_limit is None
            limit = policy.default_for(scope) if using_default else record.custom_daily_limit
            unlimited = limit < 0

            if mutate and cost > 0:
                if not unlimited and record.used_count + cost > limit:
                    logger.info(
                        "quota_over_limit",
                        scope=scope,
                        identifier=identifier,
                        used=record.used_count,
                        limit=limit,
                        cost=cost,
                    )
                    if dirty:
                        self.store.save_quota_record(record)
                    return QuotaResult(
                        success=False,
                        reason="OVER_LIMIT",
                        snapshot=self._snapshot(record, limit, unlimited, using_default, moment),
                    )
                record.used_count += cost
                dirty = True

            if dirty:
                self.store.save_quota_record(record)
            return QuotaResult(
                success=True,
                snapshot=self._snapshot(record, limit, unlimited, using_default, moment),
            )

    @staticmethod
    def _snapshot(
        record: QuotaRecord,
        limit: int,
        unlimited: bool,
        using_default: bool,
        now: datetime,
    ) -> QuotaSnapshot:
        return QuotaSnapshot(
            scope=record.scope,
            identifier=record.identifier,
            daily_limit=limit,
            used_count=record.used_count,
            remaining=None if unlimited else max(0, limit - record.used_count),
            last_reset_at=record.last_reset_at or now,
            unlimited=unlimited,
            custom_daily_limit=record.custom_daily_limit,
            using_default_limit=using_default,
        )

    def set_custom_limit(self, actor: Actor, limit: Optional[int]) -> QuotaSnapshot:
        """Override (or with ``None`` clear) the daily limit for the actor's scope."""
        scope, identifier, user_id = resolve_scope(actor)
        with self.store.transaction():
            record = self.store.get_quota_record(scope, identifier) or QuotaRecord(
                scope=scope, identifier=identifier, last_reset_at=utcnow(), user_id=user_id
            )
            record.custom_daily_limit = limit
            self.store.save_quota_record(record)
        return self.inspect(actor)

    def sync_shared_anonymous_quota(self, *, reset_used: bool = False) -> QuotaSnapshot:
        """Ensure the pooled anonymous row exists, optionally zeroing its counter."""
        moment = utcnow()
        with self.store.transaction():
            record = self.store.get_quota_record(SCOPE_ANON, SHARED_ANONYMOUS_IDENTIFIER)
            if record is None:
                record = QuotaRecord(
                    scope=SCOPE_ANON,
                    identifier=SHARED_ANONYMOUS_IDENTIFIER,
                    last_reset_at=moment,
                )
            if reset_used:
                record.used_count = 0
                record.last_reset_at = moment
            self.store.save_quota_record(record)
        return self.inspect(AnonymousActor(key="shared"), now=moment)
