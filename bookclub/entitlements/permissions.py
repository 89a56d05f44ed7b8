"""
Permission predicates over a computed capability list.

All functions here are pure except the async hierarchy check, which may look
up which store a club belongs to.
"""

import logging
from typing import Iterable, Optional, Sequence

from bookclub.entitlements.capabilities import contextual
from bookclub.entitlements.catalog import get_inherited_roles, get_role_entitlements
from bookclub.entitlements.roles import ContextType, ScopedRole
from bookclub.store.records import RecordStore, eq

logger = logging.getLogger(__name__)


def has_entitlement(entitlements: Iterable[str], entitlement: str) -> bool:
    return entitlement in entitlements


def has_contextual_entitlement(entitlements: Iterable[str], prefix: str, context_id: Optional[str]) -> bool:
    if context_id is None or not str(context_id).strip():
        return False
    return contextual(prefix, context_id).token in entitlements


def can_manage_club(entitlements: Sequence[str], club_id: str, store_id: Optional[str]) -> bool:
    return (
        has_entitlement(entitlements, "CAN_MANAGE_ALL_CLUBS")
        or has_contextual_entitlement(entitlements, "CLUB_LEAD", club_id)
        or has_contextual_entitlement(entitlements, "STORE_OWNER", store_id)
        or has_contextual_entitlement(entitlements, "STORE_MANAGER", store_id)
    )


def can_moderate_club(entitlements: Sequence[str], club_id: str, store_id: Optional[str]) -> bool:
    return can_manage_club(entitlements, club_id, store_id) or has_contextual_entitlement(
        entitlements, "CLUB_MODERATOR", club_id
    )


def can_manage_store(entitlements: Sequence[str], store_id: str) -> bool:
    """Store settings require owner scope; manager scope is not enough."""
    return has_entitlement(entitlements, "CAN_MANAGE_STORE_SETTINGS") and has_contextual_entitlement(
        entitlements, "STORE_OWNER", store_id
    )


def can_manage_user_tiers(entitlements: Sequence[str], store_id: str) -> bool:
    return has_entitlement(entitlements, "CAN_MANAGE_USER_TIERS") and (
        has_contextual_entitlement(entitlements, "STORE_OWNER", store_id)
        or has_contextual_entitlement(entitlements, "STORE_MANAGER", store_id)
    )


def is_platform_owner(entitlements: Sequence[str]) -> bool:
    return has_entitlement(entitlements, "CAN_MANAGE_PLATFORM_SETTINGS")


def has_permission(
    entitlements: Sequence[str],
    required: str,
    context_id: Optional[str] = None,
    user_roles: Optional[Sequence[ScopedRole]] = None,
) -> bool:
    """Direct grant, then the contextual form ``<required>_<context_id>``, then the role hierarchy."""
    if has_entitlement(entitlements, required):
        return True
    if context_id and has_contextual_entitlement(entitlements, required, context_id):
        return True
    if user_roles:
        return has_permission_through_role_hierarchy(user_roles, required, context_id)
    return False


def _by_priority(roles: Sequence[ScopedRole]) -> list[ScopedRole]:
    return sorted(roles, key=lambda r: r.priority, reverse=True)


def _grants(role: ScopedRole, required: str) -> bool:
    return any(required in get_role_entitlements(inherited) for inherited in get_inherited_roles(role.role))


def _out_of_context(role: ScopedRole, context_id: Optional[str]) -> bool:
    return bool(context_id and role.context_id and role.context_id != context_id)


def has_permission_through_role_hierarchy(
    roles: Sequence[ScopedRole], required: str, context_id: Optional[str] = None
) -> bool:
    """
    Walk each role's inheritance chain, most specific authority first.

    Without store access only platform roles and exact context matches
    apply; use the async variant for store authority over clubs.
    """
    for role in _by_priority(roles):
        if _out_of_context(role, context_id) and role.context_type != ContextType.PLATFORM:
            continue
        if _grants(role, required):
            return True
    return False


async def has_contextual_authority(store: RecordStore, role: ScopedRole, target_id: str) -> bool:
    if role.context_type == ContextType.PLATFORM:
        return True
    if role.context_type == ContextType.STORE and role.context_id:
        try:
            club = await store.maybe_single("book_clubs", [eq("id", target_id)], columns=["store_id"])
        except Exception as e:
            logger.warning(
                "Contextual authority lookup failed",
                extra={"store_id": role.context_id, "club_id": target_id, "error": str(e)},
            )
            return False
        return club is not None and str(club.get("store_id")) == role.context_id
    return role.context_id == target_id


async def has_permission_through_role_hierarchy_async(
    store: RecordStore, roles: Sequence[ScopedRole], required: str, context_id: Optional[str] = None
) -> bool:
    """Like the sync variant, but store roles also cover clubs in their store."""
    for role in _by_priority(roles):
        if _out_of_context(role, context_id) and not await has_contextual_authority(store, role, context_id):
            continue
        if _grants(role, required):
            return True
    return False
