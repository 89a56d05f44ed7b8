"""
Table definitions read by the entitlement subsystem.

Only the columns entitlements depend on are declared. Soft-deleted clubs
carry a non-null deleted_at.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    func,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("username", String(255)),
    Column("email", String(255)),
    Column("membership_tier", String(32), nullable=False, server_default="MEMBER"),
    Column("allow_direct_messages", Boolean, nullable=False, server_default="1"),
)

platform_settings = Table(
    "platform_settings",
    metadata,
    Column("key", String(128), primary_key=True),
    Column("value", String(255)),
)

stores = Table(
    "stores",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255)),
    Column("allow_public_club_creation", Boolean, nullable=False, server_default="1"),
)

store_administrators = Table(
    "store_administrators",
    metadata,
    Column("store_id", String(64), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("role", String(16), nullable=False),  # "owner" or "manager"
    Column("assigned_at", DateTime(timezone=True), server_default=func.now()),
)

book_clubs = Table(
    "book_clubs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255)),
    Column("store_id", String(64), index=True),
    Column("lead_user_id", String(64), index=True),
    Column("is_premium", Boolean, nullable=False, server_default="0"),
    Column("is_exclusive", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("deleted_at", DateTime(timezone=True)),
)

club_moderators = Table(
    "club_moderators",
    metadata,
    Column("club_id", String(64), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), server_default=func.now()),
)

club_members = Table(
    "club_members",
    metadata,
    Column("club_id", String(64), primary_key=True),
    Column("user_id", String(64), primary_key=True),
    Column("joined_at", DateTime(timezone=True), server_default=func.now()),
)

user_subscriptions = Table(
    "user_subscriptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("tier", String(32), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("start_date", DateTime(timezone=True)),
    Column("end_date", DateTime(timezone=True)),
)

feature_flags = Table(
    "feature_flags",
    metadata,
    Column("flag_key", String(128), primary_key=True),
    Column("is_enabled", Boolean, nullable=False, server_default="0"),
    Column("enabled_for_all", Boolean, nullable=False, server_default="0"),
    Column("rollout_percentage", Integer, nullable=False, server_default="0"),
)

role_activity = Table(
    "role_activity",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("role_type", String(32), nullable=False),
    Column("action_performed", String(128), nullable=False),
    Column("context_id", String(64), nullable=False),
    Column("context_type", String(16), nullable=False),
    Column("metadata", JSON),
    Column("performed_at", DateTime(timezone=True), nullable=False),
)
