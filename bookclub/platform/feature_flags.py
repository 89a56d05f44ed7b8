"""
Feature flags gating entitlement behaviour.

Flags live in the feature_flags table. A flag is on for a user when it is
enabled and either enabled_for_all or the user's deterministic rollout bucket
falls under rollout_percentage. Lookup failures evaluate to disabled.
"""

import hashlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, Optional, Union

from bookclub.config import get_feature_flag_cache_seconds
from bookclub.store.records import RecordStore, eq

logger = logging.getLogger(__name__)


class FeatureFlag(str, Enum):
    """Flags consulted by the entitlement calculator and classifier."""

    SUBSCRIPTION_VALIDATION = "subscription_validation_fix"
    ROLE_BASED_ENFORCEMENT = "role_based_subscription_enforcement"
    ROLE_CLASSIFICATION_OPTIMIZATION = "role_classification_optimization"
    SUBSCRIPTION_CACHE_INVALIDATION = "subscription_cache_invalidation"


FlagKey = Union[FeatureFlag, str]


def _flag_key(flag: FlagKey) -> str:
    return flag.value if isinstance(flag, FeatureFlag) else str(flag)


@dataclass(frozen=True)
class FeatureFlagResult:
    enabled: bool
    flag_key: str
    reason: str
    user_id: Optional[str] = None
    store_id: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FeatureFlags(ABC):
    """Flag lookup interface."""

    @abstractmethod
    async def is_enabled(
        self, flag: FlagKey, *, user_id: Optional[str] = None, store_id: Optional[str] = None
    ) -> FeatureFlagResult:
        ...


class StaticFeatureFlags(FeatureFlags):
    """Fixed flag values, for local development and tests."""

    def __init__(self, enabled: Iterable[FlagKey] = ()) -> None:
        self._enabled = {_flag_key(f) for f in enabled}

    def set(self, flag: FlagKey, enabled: bool) -> None:
        key = _flag_key(flag)
        if enabled:
            self._enabled.add(key)
        else:
            self._enabled.discard(key)

    async def is_enabled(
        self, flag: FlagKey, *, user_id: Optional[str] = None, store_id: Optional[str] = None
    ) -> FeatureFlagResult:
        key = _flag_key(flag)
        enabled = key in self._enabled
        return FeatureFlagResult(
            enabled=enabled,
            flag_key=key,
            reason="static" if enabled else "static_disabled",
            user_id=user_id,
            store_id=store_id,
        )


def rollout_bucket(flag_key: str, user_id: str) -> int:
    """Stable 0-99 bucket for percentage rollouts."""
    digest = hashlib.sha256(f"{flag_key}:{user_id}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


class StoreFeatureFlags(FeatureFlags):
    """
    Flags read from the feature_flags table.

    Flag rows are cached per key for a short time. Rollout buckets are
    computed on every call.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        cache_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._cache_seconds = get_feature_flag_cache_seconds() if cache_seconds is None else cache_seconds
        self._clock = clock
        self._rows: dict[str, tuple[float, Optional[dict]]] = {}

    def clear_cache(self) -> None:
        self._rows.clear()

    async def _row(self, key: str) -> Optional[dict]:
        cached = self._rows.get(key)
        if cached and self._clock() - cached[0] < self._cache_seconds:
            return cached[1]
        row = await self._store.maybe_single("feature_flags", [eq("flag_key", key)])
        self._rows[key] = (self._clock(), row)
        return row

    async def is_enabled(
        self, flag: FlagKey, *, user_id: Optional[str] = None, store_id: Optional[str] = None
    ) -> FeatureFlagResult:
        key = _flag_key(flag)
        try:
            row = await self._row(key)
        except Exception as e:
            logger.warning(
                "Feature flag lookup failed, treating as disabled",
                extra={"flag_key": key, "user_id": user_id, "error": str(e)},
            )
            return FeatureFlagResult(enabled=False, flag_key=key, reason="error", user_id=user_id, store_id=store_id)
        return self._evaluate(key, row, user_id, store_id)

    @staticmethod
    def _evaluate(key: str, row: Optional[dict], user_id: Optional[str], store_id: Optional[str]) -> FeatureFlagResult:
        def result(enabled: bool, reason: str) -> FeatureFlagResult:
            return FeatureFlagResult(enabled=enabled, flag_key=key, reason=reason, user_id=user_id, store_id=store_id)

        if row is None:
            return result(False, "not_found")
        if not row.get("is_enabled"):
            return result(False, "disabled")
        if row.get("enabled_for_all"):
            return result(True, "enabled_for_all")

        percentage = int(row.get("rollout_percentage") or 0)
        if percentage >= 100:
            return result(True, "rollout")
        if user_id and percentage > 0 and rollout_bucket(key, user_id) < percentage:
            return result(True, "rollout")
        return result(False, "not_in_rollout")
