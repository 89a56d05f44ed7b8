"""
Membership limit enforcement.

Each check returns an EnforcementResult instead of raising: allowed, or
denied with a client-safe reason, an HTTP status, and for tier denials the
current count, the limit and an upgrade suggestion. Checks that cannot be
evaluated deny with status 500.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from bookclub.config import CLUB_CREATION_LIMIT, CLUB_JOIN_LIMIT
from bookclub.entitlements.catalog import Role, get_tier_benefits
from bookclub.entitlements.permissions import has_contextual_entitlement, has_entitlement
from bookclub.entitlements.tracking import ActivityTracker
from bookclub.entitlements.validation import require_id
from bookclub.platform.errors import AppError, ValidationError
from bookclub.store.records import RecordStore, eq, is_null

logger = logging.getLogger(__name__)

EntitlementSource = Callable[[str], Awaitable[list[str]]]

UPGRADE_URL = "/upgrade"

LIMIT_TYPES = ("club_creation", "club_joining", "direct_messages", "premium_access")


@dataclass(frozen=True)
class UpgradeSuggestion:
    required_tier: Role
    benefits: tuple[str, ...] = ()
    upgrade_url: str = UPGRADE_URL

    @classmethod
    def to(cls, tier: Role) -> "UpgradeSuggestion":
        return cls(required_tier=tier, benefits=tuple(get_tier_benefits(tier)))


@dataclass(frozen=True)
class EnforcementResult:
    allowed: bool
    reason: Optional[str] = None
    status_code: int = 200
    current_count: Optional[int] = None
    limit: Optional[int] = None
    upgrade: Optional[UpgradeSuggestion] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "EnforcementResult":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, status_code: int = 403, **kwargs: Any) -> "EnforcementResult":
        return cls(allowed=False, reason=reason, status_code=status_code, **kwargs)

    def to_error(self) -> AppError:
        details: dict[str, Any] = dict(self.details)
        if self.upgrade is not None:
            details["upgrade"] = {
                "required": True,
                "required_tier": self.upgrade.required_tier.value,
                "benefits": list(self.upgrade.benefits),
                "upgrade_url": self.upgrade.upgrade_url,
            }
        if self.current_count is not None:
            details["limits"] = {"current": self.current_count, "limit": self.limit}
        return AppError(
            code="ENFORCEMENT_FAILED",
            message=self.reason or "Access denied",
            status_code=self.status_code,
            details=details,
        )


class MembershipLimitEnforcer:
    def __init__(
        self,
        store: RecordStore,
        entitlements: EntitlementSource,
        *,
        tracker: Optional[ActivityTracker] = None,
        creation_limit: int = CLUB_CREATION_LIMIT,
        join_limit: int = CLUB_JOIN_LIMIT,
    ):
        self._store = store
        self._entitlements = entitlements
        self._tracker = tracker
        self.creation_limit = creation_limit
        self.join_limit = join_limit

    def _record(self, user_id: str, limit_type: str, result: EnforcementResult, context_id: Optional[str] = None):
        if self._tracker is not None:
            self._tracker.track_membership_limit_check(
                user_id, limit_type, result.allowed, reason=result.reason, context_id=context_id
            )
        return result

    async def _led_club_count(self, user_id: str) -> int:
        return await self._store.count("book_clubs", [eq("lead_user_id", user_id), is_null("deleted_at")])

    async def _joined_club_count(self, user_id: str) -> int:
        return await self._store.count("club_members", [eq("user_id", user_id)])

    # ------------------------------------------------------------------
    # Boolean checks
    # ------------------------------------------------------------------

    async def can_create_club(self, user_id: str) -> bool:
        user_id = require_id(user_id)
        try:
            entitlements = await self._entitlements(user_id)
            if has_entitlement(entitlements, "CAN_CREATE_UNLIMITED_CLUBS"):
                return True
            if has_entitlement(entitlements, "CAN_CREATE_LIMITED_CLUBS"):
                return await self._led_club_count(user_id) < self.creation_limit
        except Exception as e:
            logger.error("Club creation check failed", extra={"user_id": user_id, "error": str(e)})
        return False

    async def can_join_club(self, user_id: str, club_id: str) -> bool:
        user_id = require_id(user_id)
        require_id(club_id, "club_id")
        try:
            entitlements = await self._entitlements(user_id)
            if has_entitlement(entitlements, "CAN_JOIN_UNLIMITED_CLUBS"):
                return True
            if has_entitlement(entitlements, "CAN_JOIN_LIMITED_CLUBS"):
                return await self._joined_club_count(user_id) < self.join_limit
        except Exception as e:
            logger.error("Club join check failed", extra={"user_id": user_id, "club_id": club_id, "error": str(e)})
        return False

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    async def enforce_club_creation_limit(self, user_id: str, store_id: Optional[str] = None) -> EnforcementResult:
        try:
            user_id = require_id(user_id)
        except ValidationError as e:
            return EnforcementResult.deny(e.message, 400)
        try:
            result = await self._club_creation(user_id, store_id)
        except Exception as e:
            logger.error("Club creation enforcement failed", extra={"user_id": user_id, "error": str(e)})
            result = EnforcementResult.deny("Unable to verify club creation permissions.", 500)
        return self._record(user_id, "club_creation", result, store_id)

    async def _club_creation(self, user_id: str, store_id: Optional[str]) -> EnforcementResult:
        entitlements = await self._entitlements(user_id)
        unlimited = has_entitlement(entitlements, "CAN_CREATE_UNLIMITED_CLUBS")

        if not unlimited:
            if not has_entitlement(entitlements, "CAN_CREATE_LIMITED_CLUBS"):
                return EnforcementResult.deny(
                    "Membership tier does not allow club creation. Upgrade to Privileged or higher.",
                    upgrade=UpgradeSuggestion.to(Role.PRIVILEGED),
                )
            count = await self._led_club_count(user_id)
            if count >= self.creation_limit:
                return EnforcementResult.deny(
                    f"Club creation limit reached ({self.creation_limit} clubs). "
                    "Upgrade to Privileged+ for unlimited clubs.",
                    current_count=count,
                    limit=self.creation_limit,
                    upgrade=UpgradeSuggestion.to(Role.PRIVILEGED_PLUS),
                )

        if store_id and not unlimited:
            store_admin = (
                has_entitlement(entitlements, "CAN_MANAGE_STORE_SETTINGS")
                or has_contextual_entitlement(entitlements, "STORE_OWNER", store_id)
                or has_contextual_entitlement(entitlements, "STORE_MANAGER", store_id)
            )
            if not store_admin:
                store = await self._store.maybe_single(
                    "stores", [eq("id", store_id)], columns=["allow_public_club_creation"]
                )
                if not store or not store.get("allow_public_club_creation"):
                    return EnforcementResult.deny(
                        "This store does not allow public club creation.",
                        details={"store_restriction": True, "store_id": store_id},
                    )

        return EnforcementResult.allow()

    async def enforce_club_joining_limit(self, user_id: str, club_id: str) -> EnforcementResult:
        try:
            user_id = require_id(user_id)
            club_id = require_id(club_id, "club_id")
        except ValidationError as e:
            return EnforcementResult.deny(e.message, 400)
        try:
            result = await self._club_joining(user_id, club_id)
        except Exception as e:
            logger.error(
                "Club joining enforcement failed",
                extra={"user_id": user_id, "club_id": club_id, "error": str(e)},
            )
            result = EnforcementResult.deny("Unable to verify club joining permissions.", 500)
        return self._record(user_id, "club_joining", result, club_id)

    async def _club_joining(self, user_id: str, club_id: str) -> EnforcementResult:
        existing = await self._store.maybe_single(
            "club_members", [eq("user_id", user_id), eq("club_id", club_id)], columns=["club_id"]
        )
        if existing:
            return EnforcementResult.deny(
                "You are already a member of this club.", 400, details={"already_member": True}
            )

        entitlements = await self._entitlements(user_id)
        if not has_entitlement(entitlements, "CAN_JOIN_UNLIMITED_CLUBS"):
            if not has_entitlement(entitlements, "CAN_JOIN_LIMITED_CLUBS"):
                return EnforcementResult.deny("Membership tier does not allow joining clubs.")
            count = await self._joined_club_count(user_id)
            if count >= self.join_limit:
                return EnforcementResult.deny(
                    f"Club joining limit reached ({self.join_limit} clubs). "
                    "Upgrade to Privileged for unlimited clubs.",
                    current_count=count,
                    limit=self.join_limit,
                    upgrade=UpgradeSuggestion.to(Role.PRIVILEGED),
                )

        club = await self._store.maybe_single(
            "book_clubs", [eq("id", club_id), is_null("deleted_at")], columns=["is_premium", "is_exclusive"]
        )
        if club is None:
            return EnforcementResult.deny("Club not found.", 404)
        if club.get("is_premium") and not has_entitlement(entitlements, "CAN_JOIN_PREMIUM_CLUBS"):
            return EnforcementResult.deny(
                "This is a premium club. Upgrade to Privileged to join premium clubs.",
                upgrade=UpgradeSuggestion.to(Role.PRIVILEGED),
                details={"club_type": "premium"},
            )
        if club.get("is_exclusive") and not has_entitlement(entitlements, "CAN_JOIN_EXCLUSIVE_CLUBS"):
            return EnforcementResult.deny(
                "This is an exclusive club. Upgrade to Privileged+ to join exclusive clubs.",
                upgrade=UpgradeSuggestion.to(Role.PRIVILEGED_PLUS),
                details={"club_type": "exclusive"},
            )
        return EnforcementResult.allow()

    async def enforce_direct_messaging_limit(self, user_id: str, target_user_id: str) -> EnforcementResult:
        try:
            user_id = require_id(user_id)
            target_user_id = require_id(target_user_id, "target_user_id")
        except ValidationError as e:
            return EnforcementResult.deny(e.message, 400)
        try:
            result = await self._direct_messaging(user_id, target_user_id)
        except Exception as e:
            logger.error("Direct messaging enforcement failed", extra={"user_id": user_id, "error": str(e)})
            result = EnforcementResult.deny("Unable to verify messaging permissions.", 500)
        return self._record(user_id, "direct_messages", result, target_user_id)

    async def _direct_messaging(self, user_id: str, target_user_id: str) -> EnforcementResult:
        entitlements = await self._entitlements(user_id)
        if not has_entitlement(entitlements, "CAN_SEND_DIRECT_MESSAGES"):
            return EnforcementResult.deny(
                "Direct messaging requires Privileged+ membership.",
                upgrade=UpgradeSuggestion.to(Role.PRIVILEGED_PLUS),
            )

        target = await self._store.maybe_single(
            "users", [eq("id", target_user_id)], columns=["username", "allow_direct_messages"]
        )
        if target is None:
            return EnforcementResult.deny("User not found.", 404)
        if not target.get("allow_direct_messages"):
            name = target.get("username") or "This user"
            return EnforcementResult.deny(
                f"{name} has disabled direct messages.", details={"target_restriction": True}
            )
        return EnforcementResult.allow()

    async def enforce_premium_content_access(self, user_id: str, content_type: str) -> EnforcementResult:
        try:
            user_id = require_id(user_id)
        except ValidationError as e:
            return EnforcementResult.deny(e.message, 400)
        if content_type not in ("premium", "exclusive"):
            return EnforcementResult.deny(f"Unknown content type: {content_type}", 400)

        required = "CAN_ACCESS_PREMIUM_CONTENT" if content_type == "premium" else "CAN_ACCESS_EXCLUSIVE_CONTENT"
        tier = Role.PRIVILEGED if content_type == "premium" else Role.PRIVILEGED_PLUS
        try:
            entitlements = await self._entitlements(user_id)
        except Exception as e:
            logger.error("Content access enforcement failed", extra={"user_id": user_id, "error": str(e)})
            return self._record(
                user_id, "premium_access", EnforcementResult.deny("Unable to verify content access permissions.", 500)
            )

        if has_entitlement(entitlements, required):
            result = EnforcementResult.allow()
        else:
            result = EnforcementResult.deny(
                f"{content_type.capitalize()} content requires {tier.value} membership.",
                upgrade=UpgradeSuggestion.to(tier),
                details={"content_type": content_type},
            )
        return self._record(user_id, "premium_access", result)

    async def enforce_membership_limit(self, limit_type: str, context: Mapping[str, Any]) -> EnforcementResult:
        """Dispatch on ``limit_type`` using ids from ``context``."""
        user_id = context.get("user_id")
        if not user_id:
            return EnforcementResult.deny("User ID required for membership limit check.", 400)

        if limit_type == "club_creation":
            return await self.enforce_club_creation_limit(user_id, context.get("store_id"))
        if limit_type == "club_joining":
            if not context.get("club_id"):
                return EnforcementResult.deny("Club ID required for club joining limit check.", 400)
            return await self.enforce_club_joining_limit(user_id, context["club_id"])
        if limit_type == "direct_messages":
            if not context.get("target_user_id"):
                return EnforcementResult.deny("Target user ID required for direct messaging limit check.", 400)
            return await self.enforce_direct_messaging_limit(user_id, context["target_user_id"])
        if limit_type == "premium_access":
            return await self.enforce_premium_content_access(user_id, context.get("content_type", "premium"))
        return EnforcementResult.deny("Unknown limit type.", 400)
