"""
Static capability catalog.

Each role maps to the flat list of capability strings it grants. Nested roles
are built by concatenating the superseded role's list onto their own
additions, so a higher role always holds every capability of the roles below
it. ROLE_HIERARCHY lists, for each role, every role it inherits from
(itself included).
"""

from enum import Enum
from typing import Optional

from bookclub.platform.errors import ValidationError


class Role(str, Enum):
    MEMBER = "MEMBER"
    PRIVILEGED = "PRIVILEGED"
    PRIVILEGED_PLUS = "PRIVILEGED_PLUS"
    CLUB_MODERATOR = "CLUB_MODERATOR"
    CLUB_LEAD = "CLUB_LEAD"
    STORE_MANAGER = "STORE_MANAGER"
    STORE_OWNER = "STORE_OWNER"
    PLATFORM_OWNER = "PLATFORM_OWNER"


MEMBERSHIP_TIERS = (Role.MEMBER, Role.PRIVILEGED, Role.PRIVILEGED_PLUS)

# Older rows store lowercase tier names
_LEGACY_TIERS = {
    "free": Role.MEMBER,
    "member": Role.MEMBER,
    "privileged": Role.PRIVILEGED,
    "privileged_plus": Role.PRIVILEGED_PLUS,
}


# Membership tiers

MEMBER_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_VIEW_PUBLIC_CLUBS",
    "CAN_JOIN_PUBLIC_CLUBS",
    "CAN_JOIN_LIMITED_CLUBS",
    "CAN_PARTICIPATE_IN_DISCUSSIONS",
    "CAN_EDIT_OWN_PROFILE",
    "CAN_VIEW_STORE_EVENTS",
)

PRIVILEGED_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_CREATE_LIMITED_CLUBS",
    "CAN_JOIN_UNLIMITED_CLUBS",
    "CAN_NOMINATE_BOOKS",
    "CAN_CREATE_TOPICS",
    "CAN_ACCESS_PREMIUM_CONTENT",
    "CAN_JOIN_PREMIUM_CLUBS",
    "CAN_ACCESS_PREMIUM_EVENTS",
) + MEMBER_ENTITLEMENTS

PRIVILEGED_PLUS_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_CREATE_UNLIMITED_CLUBS",
    "CAN_JOIN_EXCLUSIVE_CLUBS",
    "CAN_ACCESS_EXCLUSIVE_CONTENT",
    "CAN_HOST_PREMIUM_EVENTS",
    "CAN_ACCESS_ADVANCED_ANALYTICS",
    "CAN_SEND_DIRECT_MESSAGES",
) + PRIVILEGED_ENTITLEMENTS

# Club positions

CLUB_MODERATOR_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_MODERATE_DISCUSSIONS",
    "CAN_DELETE_CLUB_POSTS",
    "CAN_LOCK_CLUB_TOPICS",
    "CAN_ISSUE_MEMBER_WARNINGS",
)

CLUB_LEAD_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_MANAGE_CLUB",
    "CAN_MANAGE_CLUB_SETTINGS",
    "CAN_DELETE_OWN_CLUB",
    "CAN_SET_CLUB_CURRENT_BOOK",
    "CAN_MANAGE_CLUB_JOIN_REQUESTS",
    "CAN_REMOVE_CLUB_MEMBERS",
    "CAN_ASSIGN_CLUB_MODERATORS",
    "CAN_MANAGE_CLUB_EVENTS",
) + CLUB_MODERATOR_ENTITLEMENTS

# Store and platform administration

STORE_MANAGER_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_MANAGE_USER_TIERS",
    "CAN_MANAGE_ALL_CLUBS",
    "CAN_MANAGE_STORE_EVENTS",
    "CAN_VIEW_STORE_ANALYTICS",
    "CAN_ASSIGN_CLUB_LEADS",
) + CLUB_LEAD_ENTITLEMENTS

STORE_OWNER_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_MANAGE_STORE_MANAGERS",
    "CAN_MANAGE_STORE_SETTINGS",
    "CAN_MANAGE_STORE_BILLING",
) + STORE_MANAGER_ENTITLEMENTS

PLATFORM_OWNER_ENTITLEMENTS: tuple[str, ...] = (
    "CAN_CREATE_STORES",
    "CAN_DELETE_STORES",
    "CAN_ASSIGN_STORE_OWNERS",
    "CAN_VIEW_ALL_STORES",
    "CAN_MANAGE_PLATFORM_SETTINGS",
    "CAN_VIEW_PLATFORM_ANALYTICS",
) + STORE_OWNER_ENTITLEMENTS + PRIVILEGED_PLUS_ENTITLEMENTS


_ROLE_ENTITLEMENTS: dict[str, tuple[str, ...]] = {
    Role.MEMBER.value: MEMBER_ENTITLEMENTS,
    Role.PRIVILEGED.value: PRIVILEGED_ENTITLEMENTS,
    Role.PRIVILEGED_PLUS.value: PRIVILEGED_PLUS_ENTITLEMENTS,
    Role.CLUB_MODERATOR.value: CLUB_MODERATOR_ENTITLEMENTS,
    Role.CLUB_LEAD.value: CLUB_LEAD_ENTITLEMENTS,
    Role.STORE_MANAGER.value: STORE_MANAGER_ENTITLEMENTS,
    Role.STORE_OWNER.value: STORE_OWNER_ENTITLEMENTS,
    Role.PLATFORM_OWNER.value: PLATFORM_OWNER_ENTITLEMENTS,
}

ROLE_HIERARCHY: dict[str, tuple[str, ...]] = {
    "MEMBER": ("MEMBER",),
    "PRIVILEGED": ("PRIVILEGED", "MEMBER"),
    "PRIVILEGED_PLUS": ("PRIVILEGED_PLUS", "PRIVILEGED", "MEMBER"),
    "CLUB_MODERATOR": ("CLUB_MODERATOR",),
    "CLUB_LEAD": ("CLUB_LEAD", "CLUB_MODERATOR"),
    "STORE_MANAGER": ("STORE_MANAGER", "CLUB_LEAD", "CLUB_MODERATOR"),
    "STORE_OWNER": ("STORE_OWNER", "STORE_MANAGER", "CLUB_LEAD", "CLUB_MODERATOR"),
    "PLATFORM_OWNER": (
        "PLATFORM_OWNER",
        "STORE_OWNER",
        "STORE_MANAGER",
        "CLUB_LEAD",
        "CLUB_MODERATOR",
        "PRIVILEGED_PLUS",
        "PRIVILEGED",
        "MEMBER",
    ),
}


def _role_name(role) -> str:
    return role.value if isinstance(role, Role) else str(role)


def get_role_entitlements(role) -> list[str]:
    """Capabilities granted by ``role``; an empty list for unknown roles."""
    return list(_ROLE_ENTITLEMENTS.get(_role_name(role), ()))


def get_inherited_roles(role) -> tuple[str, ...]:
    return ROLE_HIERARCHY.get(_role_name(role), ())


def normalize_tier(value: Optional[str]) -> Role:
    """
    Canonical membership tier for a stored tier value.

    Accepts canonical names and legacy lowercase spellings. Anything else is
    rejected with ValidationError.
    """
    if value is None:
        raise ValidationError("Membership tier is required")
    raw = str(value).strip()
    if raw in (t.value for t in MEMBERSHIP_TIERS):
        return Role(raw)
    legacy = _LEGACY_TIERS.get(raw.lower())
    if legacy is None:
        raise ValidationError(f"Invalid membership tier: {raw}", details={"tier": raw})
    return legacy


TIER_BENEFITS: dict[str, tuple[str, ...]] = {
    "PRIVILEGED": (
        "Create up to 3 book clubs",
        "Join unlimited clubs",
        "Nominate books for club reading",
        "Access premium content",
        "Join premium clubs",
    ),
    "PRIVILEGED_PLUS": (
        "Create unlimited book clubs",
        "Join exclusive clubs",
        "Send direct messages",
        "Access exclusive content",
        "Priority customer support",
    ),
}


def get_tier_benefits(tier) -> list[str]:
    return list(TIER_BENEFITS.get(_role_name(tier), ()))
