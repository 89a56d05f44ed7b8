"""
Subscription status lookups.

The entitlement calculator asks two questions of the subscription service:
what tier the user is currently paying for, and whether any paid
subscription is active right now.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from bookclub.entitlements.catalog import Role, normalize_tier
from bookclub.store.records import RecordStore, eq, not_null

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionStatus:
    current_tier: Role
    has_active_subscription: bool
    is_valid: bool
    subscription_expiry: Optional[datetime] = None
    validation_source: str = "database"


class SubscriptionService(ABC):
    @abstractmethod
    async def get_status(self, user_id: str) -> SubscriptionStatus:
        ...

    @abstractmethod
    async def has_active_subscription(self, user_id: str) -> bool:
        ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class StoreSubscriptionService(SubscriptionService):
    """Reads user_subscriptions rows from the record store."""

    def __init__(self, store: RecordStore, *, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._store = store
        self._now = now

    async def _latest_active(self, user_id: str) -> Optional[dict]:
        rows = await self._store.select(
            "user_subscriptions",
            filters=[eq("user_id", user_id), eq("is_active", True), not_null("end_date")],
            order_by="end_date",
            descending=True,
            limit=1,
        )
        if not rows:
            return None
        end_date = _aware(rows[0].get("end_date"))
        if end_date is None or end_date <= self._now():
            return None
        return rows[0]

    async def get_status(self, user_id: str) -> SubscriptionStatus:
        row = await self._latest_active(user_id)
        if row is None:
            logger.debug("No active subscription", extra={"user_id": user_id})
            return SubscriptionStatus(current_tier=Role.MEMBER, has_active_subscription=False, is_valid=False)

        tier = normalize_tier(row.get("tier"))
        return SubscriptionStatus(
            current_tier=tier,
            has_active_subscription=True,
            is_valid=tier != Role.MEMBER,
            subscription_expiry=_aware(row.get("end_date")),
        )

    async def has_active_subscription(self, user_id: str) -> bool:
        return await self._latest_active(user_id) is not None
