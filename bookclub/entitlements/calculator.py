"""
Entitlement calculation.

Combines the catalog, the user's stored (or validated) membership tier,
store administration rows and club positions into one flat capability list.
The platform owner short-circuits everything else. Any unexpected failure
yields the MEMBER list instead of an error.
"""

import logging
from typing import Iterable, Optional

from bookclub.entitlements.capabilities import Capability, GlobalCapability, contextual, to_tokens
from bookclub.entitlements.catalog import (
    CLUB_LEAD_ENTITLEMENTS,
    CLUB_MODERATOR_ENTITLEMENTS,
    MEMBER_ENTITLEMENTS,
    PLATFORM_OWNER_ENTITLEMENTS,
    PRIVILEGED_ENTITLEMENTS,
    PRIVILEGED_PLUS_ENTITLEMENTS,
    STORE_MANAGER_ENTITLEMENTS,
    STORE_OWNER_ENTITLEMENTS,
    Role,
    normalize_tier,
)
from bookclub.entitlements.classification import (
    RoleClassifier,
    SubscriptionValidationGate,
    fetch_led_clubs,
    fetch_moderated_clubs,
    fetch_platform_owner_id,
    fetch_store_administrator_rows,
    log_role_classification_decision,
)
from bookclub.entitlements.validation import require_user_id
from bookclub.integrations.subscriptions import SubscriptionService
from bookclub.platform.errors import ValidationError
from bookclub.platform.feature_flags import FeatureFlag, FeatureFlags
from bookclub.store.records import RecordStore, eq

logger = logging.getLogger(__name__)

TIER_ENTITLEMENTS = {
    Role.MEMBER: MEMBER_ENTITLEMENTS,
    Role.PRIVILEGED: PRIVILEGED_ENTITLEMENTS,
    Role.PRIVILEGED_PLUS: PRIVILEGED_PLUS_ENTITLEMENTS,
}

STORE_ROLE_ENTITLEMENTS = {
    "manager": STORE_MANAGER_ENTITLEMENTS,
    "owner": STORE_OWNER_ENTITLEMENTS,
}


def _grant(grants: list[Capability], names: Iterable[str]) -> None:
    grants.extend(GlobalCapability(name) for name in names)


class _SubscriptionCheck:
    """has_active_subscription evaluated at most once per calculation."""

    def __init__(self, subscriptions: SubscriptionService, user_id: str):
        self._subscriptions = subscriptions
        self._user_id = user_id
        self._value: Optional[bool] = None

    async def active(self) -> bool:
        if self._value is None:
            try:
                self._value = bool(await self._subscriptions.has_active_subscription(self._user_id))
            except Exception as e:
                logger.warning(
                    "Subscription check failed, treating as inactive",
                    extra={"user_id": self._user_id, "error": str(e)},
                )
                self._value = False
        return self._value


class EntitlementCalculator:
    def __init__(
        self,
        store: RecordStore,
        *,
        flags: FeatureFlags,
        subscriptions: SubscriptionService,
        gate: Optional[SubscriptionValidationGate] = None,
    ):
        self._store = store
        self._flags = flags
        self._subscriptions = subscriptions
        self._gate = gate or SubscriptionValidationGate(RoleClassifier(store), flags)

    async def calculate(self, user_id: str) -> list[str]:
        """
        Flat, de-duplicated capability list for ``user_id``.

        Raises ValidationError for blank or malformed ids. Every other
        failure returns the MEMBER capabilities.
        """
        user_id = require_user_id(user_id)
        try:
            return await self._calculate(user_id)
        except Exception:
            logger.exception("Entitlement calculation failed, using member defaults", extra={"user_id": user_id})
            return list(MEMBER_ENTITLEMENTS)

    async def _calculate(self, user_id: str) -> list[str]:
        grants: list[Capability] = []
        _grant(grants, MEMBER_ENTITLEMENTS)

        if await self._is_platform_owner(user_id):
            _grant(grants, PLATFORM_OWNER_ENTITLEMENTS)
            return to_tokens(grants)

        tier = await self._membership_tier(user_id)
        _grant(grants, TIER_ENTITLEMENTS[tier])

        enforcement_enabled, exempt = await self._role_enforcement(user_id)
        subscription = _SubscriptionCheck(self._subscriptions, user_id)

        async def grant_position(capabilities: tuple[str, ...], position: str) -> None:
            if enforcement_enabled and not exempt:
                if await subscription.active():
                    _grant(grants, capabilities)
                else:
                    logger.info(
                        "No active subscription, withholding position entitlements",
                        extra={"user_id": user_id, "position": position},
                    )
            else:
                _grant(grants, capabilities)

        for row in await self._lookup("store_administrators", fetch_store_administrator_rows(self._store, user_id), user_id):
            role = str(row.get("role", "")).lower()
            capabilities = STORE_ROLE_ENTITLEMENTS.get(role)
            if capabilities is None:
                continue
            grants.append(contextual(f"STORE_{role.upper()}", str(row["store_id"])))
            _grant(grants, capabilities)

        for row in await self._lookup("book_clubs", fetch_led_clubs(self._store, user_id), user_id):
            grants.append(contextual("CLUB_LEAD", str(row["id"])))
            await grant_position(CLUB_LEAD_ENTITLEMENTS, "CLUB_LEAD")

        for row in await self._lookup("club_moderators", fetch_moderated_clubs(self._store, user_id), user_id):
            grants.append(contextual("CLUB_MODERATOR", str(row["club_id"])))
            await grant_position(CLUB_MODERATOR_ENTITLEMENTS, "CLUB_MODERATOR")

        return to_tokens(grants)

    async def _lookup(self, source: str, query, user_id: str) -> list[dict]:
        try:
            return await query
        except Exception as e:
            logger.warning(
                "Role lookup failed during calculation",
                extra={"user_id": user_id, "source": source, "error": str(e)},
            )
            return []

    async def _is_platform_owner(self, user_id: str) -> bool:
        try:
            owner_id = await fetch_platform_owner_id(self._store)
        except Exception as e:
            logger.warning("Could not check platform owner", extra={"user_id": user_id, "error": str(e)})
            return False
        return owner_id is not None and str(owner_id) == user_id

    async def _membership_tier(self, user_id: str) -> Role:
        row = await self._store.maybe_single("users", [eq("id", user_id)], columns=["membership_tier"])
        stored = row.get("membership_tier") if row else None
        try:
            tier = normalize_tier(stored) if stored is not None else Role.MEMBER
        except ValidationError:
            logger.warning("Invalid stored membership tier", extra={"user_id": user_id, "tier": stored})
            tier = Role.MEMBER

        if not await self._flag(FeatureFlag.SUBSCRIPTION_VALIDATION, user_id):
            return tier

        try:
            status = await self._subscriptions.get_status(user_id)
        except Exception as e:
            logger.error(
                "Subscription validation failed, using MEMBER tier",
                extra={"user_id": user_id, "error": str(e)},
            )
            return Role.MEMBER

        if status.current_tier != tier:
            logger.warning(
                "Stored tier differs from subscription tier",
                extra={
                    "user_id": user_id,
                    "stored_tier": tier.value,
                    "validated_tier": status.current_tier.value,
                },
            )
        return status.current_tier

    async def _flag(self, flag: FeatureFlag, user_id: str) -> bool:
        try:
            return (await self._flags.is_enabled(flag, user_id=user_id)).enabled
        except Exception as e:
            logger.warning("Feature flag check failed", extra={"flag": flag.value, "user_id": user_id, "error": str(e)})
            return False

    async def _role_enforcement(self, user_id: str) -> tuple[bool, bool]:
        """(enforcement enabled, user exempt). Errors disable enforcement."""
        try:
            if not (await self._flags.is_enabled(FeatureFlag.ROLE_BASED_ENFORCEMENT, user_id=user_id)).enabled:
                return False, True
            decision = await self._gate.decide(user_id)
        except Exception as e:
            logger.error(
                "Role enforcement check failed, enforcement disabled for this calculation",
                extra={"user_id": user_id, "error": str(e)},
            )
            return False, True

        log_role_classification_decision(user_id, decision)
        return True, not decision.should_validate
