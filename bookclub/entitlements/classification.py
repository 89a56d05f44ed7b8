"""
Role classification and the subscription validation gate.

Administrative roles (platform owner, store owner, store manager) exempt a
user from subscription checks. User roles (club leadership, club moderator)
are subject to them. Two interchangeable strategies read the underlying
facts: four concurrent lookups, or one consolidated server-side query.
Both produce identical classifications for the same data.

Failure directions differ by layer. A failed lookup contributes no roles.
A failed classification makes the gate require validation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Mapping, Optional, TYPE_CHECKING

from bookclub.config import PLATFORM_OWNER_SETTING_KEY
from bookclub.entitlements.validation import require_user_id
from bookclub.platform.errors import ValidationError
from bookclub.store.records import RecordStore, RecordStoreError, eq, is_null

if TYPE_CHECKING:
    from bookclub.platform.feature_flags import FeatureFlags

logger = logging.getLogger(__name__)

CONSOLIDATED_FUNCTION = "classify_user_roles_consolidated"

ADMINISTRATIVE_ROLE_TYPES = ("PLATFORM_OWNER", "STORE_OWNER", "STORE_MANAGER")
USER_ROLE_TYPES = ("CLUB_LEADERSHIP", "CLUB_MODERATOR")

STORE_ROLE_TYPES = {"owner": "STORE_OWNER", "manager": "STORE_MANAGER"}


# ============================================================================
# Lookups shared with the calculator
# ============================================================================

async def fetch_platform_owner_id(store: RecordStore) -> Optional[str]:
    row = await store.maybe_single(
        "platform_settings", [eq("key", PLATFORM_OWNER_SETTING_KEY)], columns=["value"]
    )
    return row["value"] if row else None


async def fetch_store_administrator_rows(store: RecordStore, user_id: str) -> list[dict]:
    return await store.select(
        "store_administrators",
        columns=["store_id", "role", "assigned_at"],
        filters=[eq("user_id", user_id)],
    )


async def fetch_led_clubs(store: RecordStore, user_id: str) -> list[dict]:
    """Clubs led by the user, soft-deleted clubs excluded."""
    return await store.select(
        "book_clubs",
        columns=["id", "store_id", "created_at"],
        filters=[eq("lead_user_id", user_id), is_null("deleted_at")],
    )


async def fetch_moderated_clubs(store: RecordStore, user_id: str) -> list[dict]:
    return await store.select(
        "club_moderators",
        columns=["club_id", "assigned_at"],
        filters=[eq("user_id", user_id)],
    )


# ============================================================================
# Classification types
# ============================================================================

@dataclass(frozen=True)
class AdministrativeRole:
    type: str
    store_id: Optional[str] = None
    granted_at: Optional[datetime] = None
    source: str = ""


@dataclass(frozen=True)
class UserRoleAssignment:
    type: str
    club_id: str
    granted_at: Optional[datetime] = None
    source: str = ""
    requires_subscription: bool = True


def _join_types(roles) -> str:
    return ", ".join(dict.fromkeys(role.type for role in roles))


@dataclass(frozen=True)
class RoleClassification:
    """Roles held by one user, split by whether they need a subscription."""

    user_id: str
    administrative_roles: tuple[AdministrativeRole, ...] = ()
    user_roles: tuple[UserRoleAssignment, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "administrative_roles", _sorted_admin(self.administrative_roles))
        object.__setattr__(self, "user_roles", _sorted_user(self.user_roles))

    @property
    def exempt_from_validation(self) -> bool:
        return len(self.administrative_roles) > 0

    @property
    def requires_subscription_validation(self) -> bool:
        return not self.exempt_from_validation and len(self.user_roles) > 0

    @property
    def reason(self) -> str:
        if self.exempt_from_validation:
            return f"Administrative exemption: {_join_types(self.administrative_roles)}"
        if self.user_roles:
            return f"User role enforcement: {_join_types(self.user_roles)}"
        return "No special roles - standard member"


def _order_time(role) -> str:
    return role.granted_at.isoformat() if role.granted_at else ""


def _sorted_admin(roles) -> tuple[AdministrativeRole, ...]:
    return tuple(sorted(
        roles,
        key=lambda r: (ADMINISTRATIVE_ROLE_TYPES.index(r.type), r.store_id or "", _order_time(r), r.source),
    ))


def _sorted_user(roles) -> tuple[UserRoleAssignment, ...]:
    return tuple(sorted(roles, key=lambda r: (USER_ROLE_TYPES.index(r.type), r.club_id, _order_time(r), r.source)))


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _admin_from_store_row(row: Mapping[str, Any]) -> Optional[AdministrativeRole]:
    role_type = STORE_ROLE_TYPES.get(str(row.get("role", "")).lower())
    if role_type is None:
        logger.warning("Ignoring unknown store administrator role", extra={"role": row.get("role")})
        return None
    return AdministrativeRole(
        type=role_type,
        store_id=str(row["store_id"]),
        granted_at=_timestamp(row.get("assigned_at")),
        source="store_administrators",
    )


# ============================================================================
# Strategies
# ============================================================================

class ClassificationStrategy(ABC):
    name: str = ""

    @abstractmethod
    async def classify(self, user_id: str) -> RoleClassification:
        ...


class MultiQueryStrategy(ClassificationStrategy):
    """Four independent lookups issued concurrently."""

    name = "multi_query"

    def __init__(self, store: RecordStore):
        self._store = store

    async def _guarded(self, source: str, user_id: str, lookup: Awaitable, default):
        try:
            return await lookup
        except Exception as e:
            logger.warning(
                "Role lookup failed, treating source as empty",
                extra={"user_id": user_id, "source": source, "error": str(e)},
            )
            return default

    async def _platform_owner(self, user_id: str) -> list[AdministrativeRole]:
        owner_id = await fetch_platform_owner_id(self._store)
        if owner_id is not None and str(owner_id) == user_id:
            return [AdministrativeRole(type="PLATFORM_OWNER", source="platform_settings")]
        return []

    async def _store_roles(self, user_id: str) -> list[AdministrativeRole]:
        rows = await fetch_store_administrator_rows(self._store, user_id)
        return [role for role in map(_admin_from_store_row, rows) if role is not None]

    async def _led_clubs(self, user_id: str) -> list[UserRoleAssignment]:
        return [
            UserRoleAssignment(
                type="CLUB_LEADERSHIP",
                club_id=str(row["id"]),
                granted_at=_timestamp(row.get("created_at")),
                source="book_clubs",
            )
            for row in await fetch_led_clubs(self._store, user_id)
        ]

    async def _moderated_clubs(self, user_id: str) -> list[UserRoleAssignment]:
        return [
            UserRoleAssignment(
                type="CLUB_MODERATOR",
                club_id=str(row["club_id"]),
                granted_at=_timestamp(row.get("assigned_at")),
                source="club_moderators",
            )
            for row in await fetch_moderated_clubs(self._store, user_id)
        ]

    async def classify(self, user_id: str) -> RoleClassification:
        owner, store_roles, led, moderated = await asyncio.gather(
            self._guarded("platform_settings", user_id, self._platform_owner(user_id), []),
            self._guarded("store_administrators", user_id, self._store_roles(user_id), []),
            self._guarded("book_clubs", user_id, self._led_clubs(user_id), []),
            self._guarded("club_moderators", user_id, self._moderated_clubs(user_id), []),
        )
        return RoleClassification(
            user_id=user_id,
            administrative_roles=tuple(owner + store_roles),
            user_roles=tuple(led + moderated),
        )


class ConsolidatedQueryStrategy(ClassificationStrategy):
    """One server-side function call returning every role fact."""

    name = "consolidated"

    def __init__(self, store: RecordStore, function: str = CONSOLIDATED_FUNCTION):
        self._store = store
        self._function = function

    async def classify(self, user_id: str) -> RoleClassification:
        payload = await self._store.rpc(self._function, {"p_user_id": user_id})
        if not isinstance(payload, Mapping):
            raise RecordStoreError(f"{self._function} returned {type(payload).__name__}")

        admin = tuple(
            AdministrativeRole(
                type=item["type"],
                store_id=None if item.get("store_id") is None else str(item["store_id"]),
                granted_at=_timestamp(item.get("granted_at")),
                source=item.get("source", ""),
            )
            for item in payload.get("administrative_roles") or []
            if item.get("type") in ADMINISTRATIVE_ROLE_TYPES
        )
        user_roles = tuple(
            UserRoleAssignment(
                type=item["type"],
                club_id=str(item["club_id"]),
                granted_at=_timestamp(item.get("granted_at")),
                source=item.get("source", ""),
            )
            for item in payload.get("user_roles") or []
            if item.get("type") in USER_ROLE_TYPES
        )
        return RoleClassification(user_id=user_id, administrative_roles=admin, user_roles=user_roles)


class RoleClassifier:
    """
    Classifies a user's roles with a selectable strategy.

    When the consolidated strategy is selected and fails, the multi-query
    strategy runs instead.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        use_consolidated_query: bool = False,
        consolidated: Optional[ClassificationStrategy] = None,
        multi_query: Optional[ClassificationStrategy] = None,
    ):
        self.use_consolidated_query = use_consolidated_query
        self._consolidated = consolidated or ConsolidatedQueryStrategy(store)
        self._multi_query = multi_query or MultiQueryStrategy(store)

    async def classify(self, user_id: str, *, use_consolidated_query: Optional[bool] = None) -> RoleClassification:
        user_id = require_user_id(user_id)
        consolidated = self.use_consolidated_query if use_consolidated_query is None else use_consolidated_query

        if consolidated:
            try:
                return await self._consolidated.classify(user_id)
            except Exception as e:
                logger.warning(
                    "Consolidated role classification failed, falling back to multi-query",
                    extra={"user_id": user_id, "error": str(e)},
                )
        return await self._multi_query.classify(user_id)


# ============================================================================
# Subscription validation gate
# ============================================================================

CLASSIFICATION_ERROR_REASON = "Role classification failed - validation required"


@dataclass(frozen=True)
class SubscriptionValidationDecision:
    user_id: str
    should_validate: bool
    reason: str
    exempt_roles: tuple[AdministrativeRole, ...] = ()
    enforced_roles: tuple[UserRoleAssignment, ...] = ()
    classification: Optional[RoleClassification] = field(default=None, compare=False)

    @property
    def is_exempt(self) -> bool:
        return not self.should_validate

    @classmethod
    def from_classification(cls, classification: RoleClassification) -> "SubscriptionValidationDecision":
        return cls(
            user_id=classification.user_id,
            should_validate=classification.requires_subscription_validation,
            reason=classification.reason,
            exempt_roles=classification.administrative_roles,
            enforced_roles=classification.user_roles,
            classification=classification,
        )


class SubscriptionValidationGate:
    """Decides whether a user's roles need an active subscription."""

    def __init__(self, classifier: RoleClassifier, flags: Optional["FeatureFlags"] = None):
        self._classifier = classifier
        self._flags = flags

    async def _strategy_override(self, user_id: str) -> Optional[bool]:
        if self._flags is None:
            return None
        from bookclub.platform.feature_flags import FeatureFlag

        try:
            result = await self._flags.is_enabled(FeatureFlag.ROLE_CLASSIFICATION_OPTIMIZATION, user_id=user_id)
        except Exception as e:
            logger.warning(
                "Classification strategy flag unavailable",
                extra={"user_id": user_id, "error": str(e)},
            )
            return None
        return result.enabled

    async def decide(self, user_id: str) -> SubscriptionValidationDecision:
        user_id = require_user_id(user_id)
        try:
            override = await self._strategy_override(user_id)
            classification = await self._classifier.classify(user_id, use_consolidated_query=override)
        except ValidationError:
            raise
        except Exception as e:
            logger.error(
                "Subscription validation decision failed, requiring validation",
                extra={"user_id": user_id, "error": str(e)},
            )
            return SubscriptionValidationDecision(
                user_id=user_id,
                should_validate=True,
                reason=CLASSIFICATION_ERROR_REASON,
            )
        return SubscriptionValidationDecision.from_classification(classification)


def log_role_classification_decision(
    user_id: str,
    decision: SubscriptionValidationDecision,
    context: str = "entitlement_calculation",
) -> None:
    logger.info(
        "Role classification decision",
        extra={
            "user_id": user_id,
            "should_validate": decision.should_validate,
            "reason": decision.reason,
            "exempt_roles": len(decision.exempt_roles),
            "enforced_roles": len(decision.enforced_roles),
            "context": context,
        },
    )
