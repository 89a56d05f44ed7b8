"""
Role activity tracking.

Tracking writes are fire-and-forget: each record is inserted by a background
task, and a failed insert only increments ``failed``. Callers never see
tracking errors and never wait on tracking unless they call ``drain()``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, Optional

from bookclub.config import get_activity_retention_days
from bookclub.store.records import RecordStore, eq, gte, lt

logger = logging.getLogger(__name__)

NIL_CONTEXT_ID = "00000000-0000-0000-0000-000000000000"

TIME_RANGE_HOURS = {
    "day": 24,
    "week": 168,
    "month": 720,
}


@dataclass
class TrackingCounters:
    submitted: int = 0
    recorded: int = 0
    failed: int = 0


@dataclass
class ActivityStats:
    time_range: str
    total_actions: int = 0
    role_usage: dict[str, int] = field(default_factory=dict)
    context_usage: dict[str, int] = field(default_factory=dict)
    action_types: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class SystemActivityMetrics:
    time_range: str
    total_activities: int = 0
    unique_users: int = 0
    most_used_roles: dict[str, int] = field(default_factory=dict)
    most_used_contexts: dict[str, int] = field(default_factory=dict)
    permission_checks: int = 0
    average_check_duration_ms: float = 0.0
    cache_hit_rate: float = 0.0
    error: Optional[str] = None


def _count(bucket: dict[str, int], key: Optional[str]) -> None:
    if key:
        bucket[key] = bucket.get(key, 0) + 1


def _since(now: datetime, time_range: str) -> datetime:
    if time_range not in TIME_RANGE_HOURS:
        raise ValueError(f"Unknown time range: {time_range}")
    return now - timedelta(hours=TIME_RANGE_HOURS[time_range])


class ActivityTracker:
    def __init__(
        self,
        store: RecordStore,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._now = now
        self._tasks: set[asyncio.Task] = set()
        self.counters = TrackingCounters()

    def _spawn(self, work: Coroutine[Any, Any, Any], user_id: str) -> None:
        self.counters.submitted += 1
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            work.close()
            self.counters.failed += 1
            logger.warning("Activity tracking skipped, no running event loop", extra={"user_id": user_id})
            return
        task = loop.create_task(work)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, user_id))

    def _finished(self, task: asyncio.Task, user_id: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self.counters.failed += 1
            return
        error = task.exception()
        if error is not None:
            self.counters.failed += 1
            logger.warning("Activity tracking write failed", extra={"user_id": user_id, "error": str(error)})
            return
        self.counters.recorded += 1

    async def drain(self) -> None:
        """Wait for every pending tracking write."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def track_role_activity(
        self,
        user_id: str,
        role_type: str,
        action: str = "ROLE_USED",
        *,
        context_id: Optional[str] = None,
        context_type: str = "platform",
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        row = {
            "user_id": user_id,
            "role_type": role_type,
            "action_performed": action,
            "context_id": context_id or NIL_CONTEXT_ID,
            "context_type": context_type,
            "metadata": metadata or {},
            "performed_at": self._now(),
        }
        self._spawn(self._store.insert("role_activity", row), user_id)

    def track_permission_check(
        self,
        user_id: str,
        permission: str,
        granted: bool,
        *,
        duration_ms: float = 0.0,
        cache_hit: bool = False,
        context_id: Optional[str] = None,
        context_type: str = "platform",
    ) -> None:
        self.track_role_activity(
            user_id,
            "PERMISSION_CHECK",
            "CHECK_PERMISSION",
            context_id=context_id,
            context_type=context_type,
            metadata={
                "permission": permission,
                "granted": granted,
                "check_duration_ms": duration_ms,
                "cache_hit": cache_hit,
            },
        )

    def track_membership_limit_check(
        self,
        user_id: str,
        limit_type: str,
        allowed: bool,
        *,
        reason: Optional[str] = None,
        context_id: Optional[str] = None,
    ) -> None:
        self.track_role_activity(
            user_id,
            "MEMBERSHIP_LIMIT",
            "CHECK_LIMIT",
            context_id=context_id,
            metadata={"limit_type": limit_type, "allowed": allowed, "reason": reason},
        )

    def track_middleware_enforcement(
        self,
        user_id: str,
        endpoint: str,
        method: str,
        allowed: bool,
        *,
        required_permission: Optional[str] = None,
        context_id: Optional[str] = None,
        context_type: str = "platform",
    ) -> None:
        self.track_role_activity(
            user_id,
            "API_MIDDLEWARE",
            "ENFORCE_PERMISSION",
            context_id=context_id,
            context_type=context_type,
            metadata={
                "endpoint": endpoint,
                "method": method,
                "allowed": allowed,
                "required_permission": required_permission,
            },
        )

    async def get_user_activity_stats(self, user_id: str, time_range: str = "week") -> ActivityStats:
        since = _since(self._now(), time_range)
        try:
            rows = await self._store.select(
                "role_activity",
                columns=["role_type", "action_performed", "context_type", "performed_at"],
                filters=[eq("user_id", user_id), gte("performed_at", since)],
                order_by="performed_at",
                descending=True,
            )
        except Exception as e:
            logger.error("Failed to load role activity stats", extra={"user_id": user_id, "error": str(e)})
            return ActivityStats(time_range=time_range, error="Failed to retrieve statistics")

        stats = ActivityStats(time_range=time_range, total_actions=len(rows))
        for row in rows:
            _count(stats.role_usage, row.get("role_type"))
            _count(stats.context_usage, row.get("context_type"))
            _count(stats.action_types, row.get("action_performed"))
        return stats

    async def get_system_activity_metrics(self, time_range: str = "day") -> SystemActivityMetrics:
        since = _since(self._now(), time_range)
        try:
            rows = await self._store.select(
                "role_activity",
                columns=["user_id", "role_type", "context_type", "metadata"],
                filters=[gte("performed_at", since)],
            )
        except Exception as e:
            logger.error("Failed to load system activity metrics", extra={"error": str(e)})
            return SystemActivityMetrics(time_range=time_range, error="Failed to retrieve metrics")

        metrics = SystemActivityMetrics(
            time_range=time_range,
            total_activities=len(rows),
            unique_users=len({row.get("user_id") for row in rows}),
        )
        total_duration = 0.0
        cache_hits = 0
        for row in rows:
            _count(metrics.most_used_roles, row.get("role_type"))
            _count(metrics.most_used_contexts, row.get("context_type"))
            if row.get("role_type") == "PERMISSION_CHECK" and row.get("metadata"):
                metrics.permission_checks += 1
                total_duration += float(row["metadata"].get("check_duration_ms") or 0)
                cache_hits += 1 if row["metadata"].get("cache_hit") else 0

        if metrics.permission_checks:
            metrics.average_check_duration_ms = total_duration / metrics.permission_checks
            metrics.cache_hit_rate = cache_hits / metrics.permission_checks * 100
        return metrics

    async def cleanup_old_activity(self, retention_days: Optional[int] = None) -> int:
        """Delete activity older than the retention window; returns rows removed."""
        days = retention_days if retention_days is not None else get_activity_retention_days()
        if days < 1:
            raise ValueError("retention_days must be at least 1")
        cutoff = self._now() - timedelta(days=days)
        deleted = await self._store.delete("role_activity", [lt("performed_at", cutoff)])
        logger.info("Old role activity removed", extra={"retention_days": days, "deleted": deleted})
        return deleted
