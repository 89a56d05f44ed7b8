"""
Entitlements for the book club platform.

This package provides:
- catalog: role and tier capability tables with the inheritance hierarchy
- classification: role classification and the subscription validation gate
- calculator: flat capability list per user
- cache: per-user TTL cache with invalidation listeners
- permissions: predicates over capability lists and scoped roles
- limits: membership limit enforcement with upgrade suggestions
- middleware: request gating stages for FastAPI
- service: wiring and the default instance

Only the dependency-free modules are re-exported here.
"""

from bookclub.entitlements.capabilities import (
    ContextualCapability,
    GlobalCapability,
    contextual,
    parse_capability,
)
from bookclub.entitlements.catalog import (
    MEMBER_ENTITLEMENTS,
    PLATFORM_OWNER_ENTITLEMENTS,
    PRIVILEGED_ENTITLEMENTS,
    PRIVILEGED_PLUS_ENTITLEMENTS,
    ROLE_HIERARCHY,
    Role,
    get_role_entitlements,
)
from bookclub.entitlements.permissions import (
    can_manage_club,
    can_manage_store,
    can_manage_user_tiers,
    can_moderate_club,
    has_contextual_entitlement,
    has_entitlement,
    has_permission,
    has_permission_through_role_hierarchy,
    is_platform_owner,
)

__all__ = [
    "ContextualCapability",
    "GlobalCapability",
    "contextual",
    "parse_capability",
    "MEMBER_ENTITLEMENTS",
    "PLATFORM_OWNER_ENTITLEMENTS",
    "PRIVILEGED_ENTITLEMENTS",
    "PRIVILEGED_PLUS_ENTITLEMENTS",
    "ROLE_HIERARCHY",
    "Role",
    "get_role_entitlements",
    "can_manage_club",
    "can_manage_store",
    "can_manage_user_tiers",
    "can_moderate_club",
    "has_contextual_entitlement",
    "has_entitlement",
    "has_permission",
    "has_permission_through_role_hierarchy",
    "is_platform_owner",
]
