"""
Per-user entitlement cache.

Entries expire after the configured TTL (15 minutes by default). Explicit
invalidation drops the entry and notifies listeners. Entries may also be
written to a secondary store (Redis) so a restarted process starts warm;
failures there are counted in stats and never raised.

Invalidation also records a per-user watermark (and ``clear`` a global
one). A persisted entry written at or before the watermark is ignored, so a
failed Redis delete cannot bring back invalidated entitlements.

Concurrent misses for the same user each run the calculator.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from bookclub.config import (
    CACHE_SCHEMA_VERSION,
    get_cache_key_prefix,
    get_cache_ttl_seconds,
)
from bookclub.entitlements.validation import require_user_id
from bookclub.platform.errors import ServiceUnavailableError, ValidationError

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[str], None]


class Calculator(Protocol):
    def calculate(self, user_id: str) -> Awaitable[list[str]]:
        ...


class CacheOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    expiration_seconds: float = Field(default_factory=get_cache_ttl_seconds, gt=0)
    key_prefix: str = Field(default_factory=get_cache_key_prefix, min_length=1)
    version: int = Field(default=CACHE_SCHEMA_VERSION, ge=1)
    debug: bool = False


@dataclass(frozen=True)
class CacheEntry:
    entitlements: tuple[str, ...]
    timestamp: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def snapshot(self) -> "CacheStats":
        return CacheStats(hits=self.hits, misses=self.misses, errors=self.errors)


# ============================================================================
# Secondary persistence
# ============================================================================

class EntitlementPersistence(ABC):
    """Secondary storage for cache entries. Any method may raise."""

    @abstractmethod
    def load(self, user_id: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    def save(self, user_id: str, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    def delete(self, user_id: str) -> None:
        ...

    def configure(self, options: CacheOptions) -> None:
        pass


def encode_entry(user_id: str, entry: CacheEntry, version: int = CACHE_SCHEMA_VERSION) -> str:
    return json.dumps({
        "schema_version": version,
        "user_id": user_id,
        "entitlements": list(entry.entitlements),
        "timestamp": entry.timestamp,
    })


def decode_entry(raw: str, version: int = CACHE_SCHEMA_VERSION) -> CacheEntry:
    payload = json.loads(raw)
    if int(payload.get("schema_version", 0)) != version:
        raise ValueError("Unsupported entitlement cache schema version")
    return CacheEntry(
        entitlements=tuple(str(e) for e in payload["entitlements"]),
        timestamp=float(payload["timestamp"]),
    )


class RedisEntitlementStore(EntitlementPersistence):
    """Cache entries as versioned JSON strings with a Redis-side TTL."""

    def __init__(self, client: Any, options: Optional[CacheOptions] = None):
        self._redis = client
        self._options = options or CacheOptions()

    @classmethod
    def from_url(cls, redis_url: str, options: Optional[CacheOptions] = None) -> Optional["RedisEntitlementStore"]:
        """Connect and ping; None when Redis is unreachable."""
        try:
            import redis

            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
        except Exception as e:
            logger.warning("Entitlement cache persistence unavailable", extra={"error": str(e)})
            return None
        return cls(client, options)

    def configure(self, options: CacheOptions) -> None:
        self._options = options

    def _key(self, user_id: str) -> str:
        return f"{self._options.key_prefix}v{self._options.version}:{user_id}"

    def load(self, user_id: str) -> Optional[CacheEntry]:
        raw = self._redis.get(self._key(user_id))
        if not raw:
            return None
        return decode_entry(raw, self._options.version)

    def save(self, user_id: str, entry: CacheEntry) -> None:
        ttl = max(1, int(self._options.expiration_seconds))
        self._redis.setex(self._key(user_id), ttl, encode_entry(user_id, entry, self._options.version))

    def delete(self, user_id: str) -> None:
        self._redis.delete(self._key(user_id))


# ============================================================================
# Cache
# ============================================================================

class EntitlementCache:
    def __init__(
        self,
        calculator: Calculator,
        *,
        options: Optional[CacheOptions] = None,
        clock: Callable[[], float] = time.time,
        persistence: Optional[EntitlementPersistence] = None,
    ) -> None:
        self._calculator = calculator
        self._options = options or CacheOptions()
        self._clock = clock
        self._persistence = persistence
        self._entries: dict[str, CacheEntry] = {}
        self._listeners: list[InvalidationListener] = []
        self._stats = CacheStats()
        self._invalidated_at: dict[str, float] = {}
        self._cleared_at: Optional[float] = None
        if persistence is not None:
            persistence.configure(self._options)

    @property
    def options(self) -> CacheOptions:
        return self._options

    def configure(self, **changes: Any) -> CacheOptions:
        """Update options. Unknown keys and non-positive TTLs raise ValidationError."""
        try:
            options = CacheOptions(**{**self._options.model_dump(), **changes})
        except PydanticValidationError as e:
            errors = e.errors(include_url=False, include_context=False)
            raise ValidationError("Invalid entitlement cache options", details={"errors": errors}) from e
        self._options = options
        if self._persistence is not None:
            self._persistence.configure(options)
        return options

    def _log(self, message: str, **extra: Any) -> None:
        logger.log(logging.INFO if self._options.debug else logging.DEBUG, message, extra=extra)

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp < self._options.expiration_seconds

    def _watermark(self, user_id: str) -> Optional[float]:
        marks = [m for m in (self._invalidated_at.get(user_id), self._cleared_at) if m is not None]
        return max(marks) if marks else None

    def _load_persisted(self, user_id: str) -> Optional[CacheEntry]:
        if self._persistence is None:
            return None
        try:
            entry = self._persistence.load(user_id)
        except Exception as e:
            self._stats.errors += 1
            logger.warning("Entitlement cache load failed", extra={"user_id": user_id, "error": str(e)})
            return None
        watermark = self._watermark(user_id)
        if entry is not None and watermark is not None and entry.timestamp <= watermark:
            self._log("Ignoring persisted entry older than invalidation", user_id=user_id)
            return None
        return entry

    def _persist(self, user_id: str, entry: CacheEntry) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save(user_id, entry)
        except Exception as e:
            self._stats.errors += 1
            logger.warning("Entitlement cache save failed", extra={"user_id": user_id, "error": str(e)})

    def _forget_persisted(self, user_id: str) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.delete(user_id)
        except Exception as e:
            self._stats.errors += 1
            logger.warning("Entitlement cache delete failed", extra={"user_id": user_id, "error": str(e)})

    async def get(self, user_id: str, force_refresh: bool = False) -> list[str]:
        user_id = require_user_id(user_id)

        if not force_refresh:
            now = self._clock()
            entry = self._entries.get(user_id)
            if entry is not None and self._is_fresh(entry, now):
                self._stats.hits += 1
                self._log("Entitlement cache hit", user_id=user_id)
                return list(entry.entitlements)

            persisted = self._load_persisted(user_id)
            if persisted is not None and self._is_fresh(persisted, now):
                self._entries[user_id] = persisted
                self._stats.hits += 1
                self._log("Entitlement cache hit from persistence", user_id=user_id)
                return list(persisted.entitlements)

        self._stats.misses += 1
        self._log("Entitlement cache miss", user_id=user_id, force_refresh=force_refresh)
        entitlements = await self._calculator.calculate(user_id)
        entry = CacheEntry(entitlements=tuple(entitlements), timestamp=self._clock())
        self._entries[user_id] = entry
        self._persist(user_id, entry)
        return list(entry.entitlements)

    def invalidate(self, user_id: str) -> None:
        user_id = require_user_id(user_id)
        self._entries.pop(user_id, None)
        self._invalidated_at[user_id] = self._clock()
        self._forget_persisted(user_id)
        self._log("Entitlement cache invalidated", user_id=user_id)
        self._notify(user_id)

    def invalidate_many(self, user_ids: Iterable[str]) -> None:
        for user_id in list(user_ids):
            self.invalidate(user_id)

    def clear(self) -> None:
        """Drop every entry, notifying listeners once per cached user."""
        user_ids = list(self._entries)
        self._entries.clear()
        self._cleared_at = self._clock()
        for user_id in user_ids:
            self._forget_persisted(user_id)
            self._notify(user_id)

    def add_invalidation_listener(self, listener: InvalidationListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable removes it again."""
        self._listeners.append(listener)

        def remove() -> None:
            self.remove_invalidation_listener(listener)

        return remove

    def remove_invalidation_listener(self, listener: InvalidationListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, user_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(user_id)
            except Exception as e:
                logger.warning(
                    "Entitlement invalidation listener failed",
                    extra={"user_id": user_id, "error": str(e)},
                )

    # Observability

    def stats(self) -> CacheStats:
        return self._stats.snapshot()

    def reset_stats(self) -> None:
        self._stats = CacheStats()

    def timestamp(self, user_id: str) -> Optional[float]:
        entry = self._entries.get(user_id)
        return entry.timestamp if entry else None

    def is_expired(self, user_id: str) -> bool:
        """True when there is no entry or the entry is past its TTL."""
        entry = self._entries.get(user_id)
        return entry is None or not self._is_fresh(entry, self._clock())

    def cached_user_ids(self) -> list[str]:
        return list(self._entries)

    def size(self) -> int:
        return len(self._entries)

    async def preload(self, user_ids: Iterable[str]) -> dict[str, list[str]]:
        """Warm the cache for several users; users with fresh entries are not recalculated."""
        return {user_id: await self.get(user_id) for user_id in dict.fromkeys(user_ids)}

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [user_id for user_id, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for user_id in expired:
            del self._entries[user_id]
        # past one TTL every older persisted entry is stale on its own
        for user_id, mark in list(self._invalidated_at.items()):
            if now - mark >= self._options.expiration_seconds:
                del self._invalidated_at[user_id]
        if expired:
            self._log("Expired entitlement cache entries removed", count=len(expired))
        return len(expired)


# ============================================================================
# Default instance
# ============================================================================

_default_cache: Optional[EntitlementCache] = None


def set_default_cache(cache: Optional[EntitlementCache]) -> None:
    global _default_cache
    _default_cache = cache


def get_default_cache() -> EntitlementCache:
    if _default_cache is None:
        raise ServiceUnavailableError("Entitlement cache is not configured")
    return _default_cache


async def get_user_entitlements(user_id: str, force_refresh: bool = False) -> list[str]:
    return await get_default_cache().get(user_id, force_refresh=force_refresh)


def invalidate_user_entitlements(user_id: str) -> None:
    get_default_cache().invalidate(user_id)
