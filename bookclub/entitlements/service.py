"""
Entitlement service wiring.

EntitlementService assembles the classifier, validation gate, calculator,
cache, activity tracker and limit enforcer over one record store. A default
instance can be installed for code that cannot receive one explicitly.
"""

import logging
import time
from typing import Callable, Optional, Union

from sqlalchemy.engine import Engine

from bookclub.config import get_cache_redis_url
from bookclub.entitlements.cache import (
    CacheOptions,
    EntitlementCache,
    EntitlementPersistence,
    RedisEntitlementStore,
    set_default_cache,
)
from bookclub.entitlements.calculator import EntitlementCalculator
from bookclub.entitlements.capabilities import Capability, ContextualCapability
from bookclub.entitlements.classification import RoleClassifier, SubscriptionValidationGate
from bookclub.entitlements.limits import MembershipLimitEnforcer
from bookclub.entitlements.permissions import (
    has_contextual_entitlement,
    has_entitlement,
    has_permission_through_role_hierarchy_async,
)
from bookclub.entitlements.roles import ScopedRole, fetch_user_roles
from bookclub.entitlements.tracking import ActivityTracker
from bookclub.entitlements.validation import require_user_id
from bookclub.integrations.subscriptions import StoreSubscriptionService, SubscriptionService
from bookclub.platform.errors import ServiceUnavailableError
from bookclub.platform.feature_flags import FeatureFlag, FeatureFlags, StoreFeatureFlags
from bookclub.store.records import RecordStore, SqlAlchemyRecordStore

logger = logging.getLogger(__name__)

SUBSCRIPTION_CHANGE_TYPES = ("subscription_created", "subscription_expired", "subscription_renewed", "tier_change")


class EntitlementService:
    def __init__(
        self,
        store: RecordStore,
        *,
        flags: Optional[FeatureFlags] = None,
        subscriptions: Optional[SubscriptionService] = None,
        cache_options: Optional[CacheOptions] = None,
        clock: Callable[[], float] = time.time,
        persistence: Optional[EntitlementPersistence] = None,
        tracker: Optional[ActivityTracker] = None,
        use_consolidated_query: bool = False,
    ) -> None:
        self.store = store
        self.flags = flags or StoreFeatureFlags(store)
        self.subscriptions = subscriptions or StoreSubscriptionService(store)
        self.classifier = RoleClassifier(store, use_consolidated_query=use_consolidated_query)
        self.gate = SubscriptionValidationGate(self.classifier, self.flags)
        self.calculator = EntitlementCalculator(
            store, flags=self.flags, subscriptions=self.subscriptions, gate=self.gate
        )
        self.cache = EntitlementCache(self.calculator, options=cache_options, clock=clock, persistence=persistence)
        self.tracker = tracker or ActivityTracker(store)
        self.limits = MembershipLimitEnforcer(store, self.cache.get, tracker=self.tracker)

    async def get_user_entitlements(self, user_id: str, force_refresh: bool = False) -> list[str]:
        return await self.cache.get(user_id, force_refresh=force_refresh)

    def invalidate_user_entitlements(self, user_id: str) -> None:
        self.cache.invalidate(user_id)

    async def handle_subscription_change(self, user_id: str, change_type: str) -> bool:
        """
        Drop cached entitlements after a subscription lifecycle event.

        Returns whether an entry was cached. With the subscription cache
        invalidation flag on, the invalidation is also recorded as activity.
        """
        user_id = require_user_id(user_id)
        if change_type not in SUBSCRIPTION_CHANGE_TYPES:
            logger.warning("Unknown subscription change type", extra={"user_id": user_id, "change_type": change_type})

        was_cached = user_id in self.cache.cached_user_ids()
        self.cache.invalidate(user_id)

        try:
            flag = await self.flags.is_enabled(FeatureFlag.SUBSCRIPTION_CACHE_INVALIDATION, user_id=user_id)
        except Exception as e:
            logger.warning("Invalidation flag check failed", extra={"user_id": user_id, "error": str(e)})
            return was_cached

        if flag.enabled and was_cached:
            self.tracker.track_role_activity(
                user_id, "SUBSCRIPTION", "INVALIDATE_ENTITLEMENTS", metadata={"change_type": change_type}
            )
        return was_cached

    async def get_user_roles(self, user_id: str) -> list[ScopedRole]:
        return await fetch_user_roles(self.store, user_id, self.classifier)

    async def check_permission(
        self,
        user_id: str,
        capability: Union[str, Capability],
        context_id: Optional[str] = None,
    ) -> bool:
        """
        Whether ``user_id`` holds ``capability``, optionally within one store or club.

        A contextual capability is a plain membership test of its token. A
        global capability with a context must be granted to the user and
        also apply to that context: either through the ``<cap>_<context>``
        token or through a role whose scope covers the context.
        """
        started = time.perf_counter()
        hits_before = self.cache.stats().hits
        entitlements = await self.cache.get(user_id)

        if isinstance(capability, ContextualCapability):
            name = capability.token
            granted = has_entitlement(entitlements, name)
        else:
            name = capability if isinstance(capability, str) else capability.token
            granted = await self._check(user_id, entitlements, name, context_id)

        self.tracker.track_permission_check(
            user_id,
            name,
            granted,
            duration_ms=(time.perf_counter() - started) * 1000,
            cache_hit=self.cache.stats().hits > hits_before,
            context_id=context_id,
        )
        return granted

    async def _check(self, user_id: str, entitlements: list[str], name: str, context_id: Optional[str]) -> bool:
        if context_id is None:
            return has_entitlement(entitlements, name)
        if has_contextual_entitlement(entitlements, name, context_id):
            return True
        if not has_entitlement(entitlements, name):
            return False
        roles = await self.get_user_roles(user_id)
        return await has_permission_through_role_hierarchy_async(self.store, roles, name, context_id)


def build_service(engine: Engine, **kwargs) -> EntitlementService:
    """Service over a SQLAlchemy engine, with Redis cache persistence when configured."""
    store = SqlAlchemyRecordStore(engine)
    if "persistence" not in kwargs:
        redis_url = get_cache_redis_url()
        if redis_url:
            kwargs["persistence"] = RedisEntitlementStore.from_url(redis_url, kwargs.get("cache_options"))
    return EntitlementService(store, **kwargs)


# ============================================================================
# Default instance
# ============================================================================

_default_service: Optional[EntitlementService] = None


def configure_entitlements(service: Optional[EntitlementService]) -> None:
    """Install ``service`` (or None to reset) as the process default."""
    global _default_service
    _default_service = service
    set_default_cache(service.cache if service is not None else None)


def get_default_service() -> EntitlementService:
    if _default_service is None:
        raise ServiceUnavailableError("Entitlement service is not configured")
    return _default_service
