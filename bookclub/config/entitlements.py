"""
Entitlement configuration.

Values that operators tune per deployment are read from the environment at
call time, so tests can override them with monkeypatch.
"""

import os
from typing import Optional

# Cached entitlement lists expire after this many seconds (15 minutes)
DEFAULT_CACHE_TTL_SECONDS = 900
DEFAULT_CACHE_KEY_PREFIX = "entitlements:"
CACHE_SCHEMA_VERSION = 1

# Membership limits per tier
CLUB_CREATION_LIMIT = 3  # PRIVILEGED
CLUB_JOIN_LIMIT = 5  # MEMBER

PLATFORM_OWNER_SETTING_KEY = "platform_owner_id"

DEFAULT_FEATURE_FLAG_CACHE_SECONDS = 300
DEFAULT_ACTIVITY_RETENTION_DAYS = 90
MINIMUM_ACTIVITY_RETENTION_DAYS = 1


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_cache_ttl_seconds() -> int:
    ttl = _int_env("ENTITLEMENT_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS)
    return ttl if ttl > 0 else DEFAULT_CACHE_TTL_SECONDS


def get_cache_key_prefix() -> str:
    return os.getenv("ENTITLEMENT_CACHE_KEY_PREFIX", DEFAULT_CACHE_KEY_PREFIX)


def get_cache_redis_url() -> Optional[str]:
    """Redis URL for secondary cache persistence, or None to keep entries in memory only."""
    return os.getenv("ENTITLEMENT_CACHE_REDIS_URL") or os.getenv("REDIS_URL") or None


def get_session_jwt_secret() -> Optional[str]:
    return os.getenv("SESSION_JWT_SECRET") or None


def get_session_jwt_algorithms() -> list[str]:
    raw = os.getenv("SESSION_JWT_ALGORITHMS", "HS256")
    return [alg.strip() for alg in raw.split(",") if alg.strip()]


def header_auth_allowed(session_configured: bool = False) -> bool:
    """
    Whether x-user-id headers are accepted when no session token is present.

    Unset, headers are accepted only where no session secret is configured.
    """
    raw = os.getenv("ALLOW_HEADER_AUTH")
    if raw is None or not raw.strip():
        return not session_configured
    return raw.strip().lower() == "true"


def get_feature_flag_cache_seconds() -> int:
    return max(0, _int_env("FEATURE_FLAG_CACHE_SECONDS", DEFAULT_FEATURE_FLAG_CACHE_SECONDS))


def get_activity_retention_days() -> int:
    days = _int_env("ROLE_ACTIVITY_RETENTION_DAYS", DEFAULT_ACTIVITY_RETENTION_DAYS)
    return max(MINIMUM_ACTIVITY_RETENTION_DAYS, days)
