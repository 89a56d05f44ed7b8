"""Configuration module for entitlement services."""

from bookclub.config.entitlements import (
    CACHE_SCHEMA_VERSION,
    CLUB_CREATION_LIMIT,
    CLUB_JOIN_LIMIT,
    PLATFORM_OWNER_SETTING_KEY,
    get_activity_retention_days,
    get_cache_key_prefix,
    get_cache_redis_url,
    get_cache_ttl_seconds,
    get_feature_flag_cache_seconds,
    get_session_jwt_algorithms,
    get_session_jwt_secret,
    header_auth_allowed,
)

__all__ = [
    "CACHE_SCHEMA_VERSION",
    "CLUB_CREATION_LIMIT",
    "CLUB_JOIN_LIMIT",
    "PLATFORM_OWNER_SETTING_KEY",
    "get_activity_retention_days",
    "get_cache_key_prefix",
    "get_cache_redis_url",
    "get_cache_ttl_seconds",
    "get_feature_flag_cache_seconds",
    "get_session_jwt_algorithms",
    "get_session_jwt_secret",
    "header_auth_allowed",
]
