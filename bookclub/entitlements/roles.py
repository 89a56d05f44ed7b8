"""Scoped roles for hierarchy-aware permission checks."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bookclub.entitlements.catalog import Role, normalize_tier
from bookclub.entitlements.classification import RoleClassifier
from bookclub.platform.errors import ValidationError
from bookclub.store.records import RecordStore, eq

logger = logging.getLogger(__name__)


class ContextType(str, Enum):
    PLATFORM = "platform"
    STORE = "store"
    CLUB = "club"


CONTEXT_PRIORITY = {
    ContextType.PLATFORM: 3,
    ContextType.STORE: 2,
    ContextType.CLUB: 1,
}


@dataclass(frozen=True)
class ScopedRole:
    role: Role
    context_type: Optional[ContextType] = None
    context_id: Optional[str] = None

    @property
    def priority(self) -> int:
        return CONTEXT_PRIORITY.get(self.context_type, 0)


_CLASSIFIED_ROLES = {
    "PLATFORM_OWNER": (Role.PLATFORM_OWNER, ContextType.PLATFORM),
    "STORE_OWNER": (Role.STORE_OWNER, ContextType.STORE),
    "STORE_MANAGER": (Role.STORE_MANAGER, ContextType.STORE),
    "CLUB_LEADERSHIP": (Role.CLUB_LEAD, ContextType.CLUB),
    "CLUB_MODERATOR": (Role.CLUB_MODERATOR, ContextType.CLUB),
}


async def fetch_user_roles(
    store: RecordStore, user_id: str, classifier: Optional[RoleClassifier] = None
) -> list[ScopedRole]:
    """Membership tier plus every classified position, each with its scope."""
    classification = await (classifier or RoleClassifier(store)).classify(user_id)

    tier = Role.MEMBER
    try:
        row = await store.maybe_single("users", [eq("id", classification.user_id)], columns=["membership_tier"])
        if row and row.get("membership_tier") is not None:
            tier = normalize_tier(row["membership_tier"])
    except ValidationError:
        logger.warning("Invalid stored membership tier", extra={"user_id": user_id})
    except Exception as e:
        logger.warning("Membership tier lookup failed", extra={"user_id": user_id, "error": str(e)})

    roles = [ScopedRole(role=tier)]
    for admin in classification.administrative_roles:
        role, context_type = _CLASSIFIED_ROLES[admin.type]
        roles.append(ScopedRole(role=role, context_type=context_type, context_id=admin.store_id))
    for position in classification.user_roles:
        role, context_type = _CLASSIFIED_ROLES[position.type]
        roles.append(ScopedRole(role=role, context_type=context_type, context_id=position.club_id))
    return roles
