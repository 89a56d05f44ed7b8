"""
Server-side functions callable through RecordStore.rpc.

Each function receives an open connection and the call parameters.
"""

from typing import Any, Mapping

from sqlalchemy import DateTime, String, case, cast, func, literal, null, select, union_all
from sqlalchemy.engine import Connection

from bookclub.config import PLATFORM_OWNER_SETTING_KEY
from bookclub.store.schema import book_clubs, club_moderators, platform_settings, store_administrators

ADMINISTRATIVE_TYPES = ("PLATFORM_OWNER", "STORE_OWNER", "STORE_MANAGER")


def classify_user_roles_consolidated(conn: Connection, params: Mapping[str, Any]) -> dict:
    """
    All four role facts for one user in a single UNION ALL query.

    Returns ``{"user_id", "administrative_roles", "user_roles"}`` where each
    role is a dict with type, store_id or club_id, granted_at and source.
    """
    user_id = params["p_user_id"]

    store_role = func.lower(store_administrators.c.role)
    admins = select(
        case((store_role == "owner", "STORE_OWNER"), else_="STORE_MANAGER").label("role_type"),
        store_administrators.c.store_id.label("store_id"),
        cast(null(), String).label("club_id"),
        store_administrators.c.assigned_at.label("granted_at"),
        literal("store_administrators").label("source"),
    ).where(store_administrators.c.user_id == user_id, store_role.in_(("owner", "manager")))

    owner = select(
        literal("PLATFORM_OWNER"),
        cast(null(), String),
        cast(null(), String),
        cast(null(), DateTime(timezone=True)),
        literal("platform_settings"),
    ).where(
        platform_settings.c.key == PLATFORM_OWNER_SETTING_KEY,
        platform_settings.c.value == user_id,
    )

    led = select(
        literal("CLUB_LEADERSHIP"),
        cast(null(), String),
        book_clubs.c.id,
        book_clubs.c.created_at,
        literal("book_clubs"),
    ).where(book_clubs.c.lead_user_id == user_id, book_clubs.c.deleted_at.is_(None))

    moderated = select(
        literal("CLUB_MODERATOR"),
        cast(null(), String),
        club_moderators.c.club_id,
        club_moderators.c.assigned_at,
        literal("club_moderators"),
    ).where(club_moderators.c.user_id == user_id)

    payload: dict[str, Any] = {"user_id": user_id, "administrative_roles": [], "user_roles": []}
    for row in conn.execute(union_all(admins, owner, led, moderated)):
        role = dict(row._mapping)
        if role["role_type"] in ADMINISTRATIVE_TYPES:
            payload["administrative_roles"].append({
                "type": role["role_type"],
                "store_id": role["store_id"],
                "granted_at": role["granted_at"],
                "source": role["source"],
            })
        else:
            payload["user_roles"].append({
                "type": role["role_type"],
                "club_id": role["club_id"],
                "granted_at": role["granted_at"],
                "source": role["source"],
            })
    return payload


DEFAULT_FUNCTIONS = {
    "classify_user_roles_consolidated": classify_user_roles_consolidated,
}
