"""
Shared pytest fixtures for entitlement tests.

InMemoryRecordStore evaluates the same Filter predicates the SQL store
compiles, so most tests run without a database.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Sequence

import pytest

from bookclub.integrations.subscriptions import SubscriptionService, SubscriptionStatus
from bookclub.entitlements.catalog import Role
from bookclub.platform.feature_flags import StaticFeatureFlags
from bookclub.store.records import Filter, RecordStore, RecordStoreError


# ============================================================================
# FAKES
# ============================================================================

class InMemoryRecordStore(RecordStore):
    def __init__(self):
        self.tables: dict[str, list[dict]] = defaultdict(list)
        self.failures: dict[str, Exception] = {}
        self.functions: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []

    def seed(self, table: str, *rows: dict) -> None:
        self.tables[table].extend(dict(r) for r in rows)

    def fail(self, name: str, error: Optional[Exception] = None) -> None:
        self.failures[name] = error or RecordStoreError(f"{name} unavailable", table=name)

    def calls_to(self, table: str) -> int:
        return sum(1 for _, t in self.calls if t == table)

    def _enter(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        if name in self.failures:
            raise self.failures[name]

    def _matching(self, table: str, filters: Sequence[Filter]) -> list[dict]:
        return [r for r in self.tables[table] if all(f.matches(r) for f in filters)]

    async def select(self, table, columns=None, filters=(), order_by=None, descending=False, limit=None):
        self._enter("select", table)
        rows = self._matching(table, filters)
        if order_by:
            rows = sorted(rows, key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns:
            return [{c: r.get(c) for c in columns} for r in rows]
        return [dict(r) for r in rows]

    async def count(self, table, filters=()):
        self._enter("count", table)
        return len(self._matching(table, filters))

    async def insert(self, table, values):
        self._enter("insert", table)
        rows = [dict(values)] if isinstance(values, Mapping) else [dict(v) for v in values]
        self.tables[table].extend(rows)
        return rows

    async def update(self, table, values, filters):
        self._enter("update", table)
        rows = self._matching(table, filters)
        for row in rows:
            row.update(values)
        return len(rows)

    async def delete(self, table, filters):
        self._enter("delete", table)
        doomed = self._matching(table, filters)
        self.tables[table] = [r for r in self.tables[table] if r not in doomed]
        return len(doomed)

    async def upsert(self, table, values, conflict_columns):
        self._enter("upsert", table)
        rows = [dict(values)] if isinstance(values, Mapping) else [dict(v) for v in values]
        for row in rows:
            existing = [r for r in self.tables[table] if all(r.get(c) == row[c] for c in conflict_columns)]
            if existing:
                existing[0].update(row)
            else:
                self.tables[table].append(row)
        return rows

    async def rpc(self, function, params):
        self._enter("rpc", function)
        if function not in self.functions:
            raise RecordStoreError(f"Unknown function: {function}")
        return self.functions[function](params)


class FakeSubscriptions(SubscriptionService):
    def __init__(self):
        self.active: set[str] = set()
        self.tiers: dict[str, Role] = {}
        self.error: Optional[Exception] = None
        self.active_checks = 0

    async def get_status(self, user_id: str) -> SubscriptionStatus:
        if self.error:
            raise self.error
        tier = self.tiers.get(user_id, Role.MEMBER)
        active = user_id in self.active
        return SubscriptionStatus(current_tier=tier, has_active_subscription=active, is_valid=active and tier != Role.MEMBER)

    async def has_active_subscription(self, user_id: str) -> bool:
        self.active_checks += 1
        if self.error:
            raise self.error
        return user_id in self.active


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def flags():
    return StaticFeatureFlags()


@pytest.fixture
def subscriptions():
    return FakeSubscriptions()


@pytest.fixture
def now():
    return datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def seed_user(store):
    def seed(user_id: str, tier: str = "MEMBER", **extra):
        store.seed("users", {
            "id": user_id,
            "username": extra.pop("username", user_id),
            "membership_tier": tier,
            "allow_direct_messages": extra.pop("allow_direct_messages", True),
            **extra,
        })
    return seed


@pytest.fixture
def seed_clubs(store, now):
    def seed(lead_user_id: str, count: int, *, store_id: str = "store-1", deleted: int = 0, prefix: str = "club"):
        for i in range(count + deleted):
            store.seed("book_clubs", {
                "id": f"{prefix}-{lead_user_id}-{i}",
                "name": f"Club {i}",
                "store_id": store_id,
                "lead_user_id": lead_user_id,
                "is_premium": False,
                "is_exclusive": False,
                "created_at": now - timedelta(days=30 - i),
                "deleted_at": now if i >= count else None,
            })
    return seed


@pytest.fixture
def platform_owner(store):
    def seed(user_id: str):
        store.seed("platform_settings", {"key": "platform_owner_id", "value": user_id})
    return seed
