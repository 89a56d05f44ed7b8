"""
Async record store used by the entitlement subsystem.

RecordStore is the narrow query interface the entitlement code depends on:
selects with conjunctive filters, counts, writes, and server-side function
calls. SqlAlchemyRecordStore implements it over a synchronous SQLAlchemy
engine, running each statement in a worker thread.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from sqlalchemy import MetaData, Table, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from bookclub.store import schema

logger = logging.getLogger(__name__)

Row = dict[str, Any]
RpcFunction = Callable[[Connection, Mapping[str, Any]], Any]


class RecordStoreError(Exception):
    """A query against the record store failed."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class RecordNotFoundError(RecordStoreError):
    """single() matched no rows."""


class MultipleRecordsError(RecordStoreError):
    """single() or maybe_single() matched more than one row."""


@dataclass(frozen=True)
class Filter:
    """One predicate of a conjunctive filter."""

    column: str
    op: str
    value: Any = None

    OPS = ("eq", "neq", "in", "is_null", "not_null", "gte", "lt")

    def __post_init__(self):
        if self.op not in self.OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")
        if self.op == "in":
            object.__setattr__(self, "value", tuple(self.value))

    def to_clause(self, table: Table):
        column = table.c[self.column]
        if self.op == "eq":
            return column.is_(None) if self.value is None else column == self.value
        if self.op == "neq":
            return column.is_not(None) if self.value is None else column != self.value
        if self.op == "in":
            return column.in_(self.value)
        if self.op == "is_null":
            return column.is_(None)
        if self.op == "not_null":
            return column.is_not(None)
        if self.op == "gte":
            return column >= self.value
        return column < self.value

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Evaluate the predicate against an in-memory row."""
        actual = row.get(self.column)
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if self.op == "is_null":
            return actual is None
        if self.op == "not_null":
            return actual is not None
        if actual is None:
            return False
        if self.op == "gte":
            return actual >= self.value
        return actual < self.value


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", values)


def is_null(column: str) -> Filter:
    return Filter(column, "is_null")


def not_null(column: str) -> Filter:
    return Filter(column, "not_null")


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


class RecordStore(ABC):
    """Query interface required by the entitlement subsystem."""

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        ...

    @abstractmethod
    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        ...

    @abstractmethod
    async def insert(self, table: str, values: Union[Row, Sequence[Row]]) -> list[Row]:
        ...

    @abstractmethod
    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> int:
        ...

    @abstractmethod
    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        ...

    @abstractmethod
    async def upsert(
        self, table: str, values: Union[Row, Sequence[Row]], conflict_columns: Sequence[str]
    ) -> list[Row]:
        ...

    @abstractmethod
    async def rpc(self, function: str, params: Mapping[str, Any]) -> Any:
        ...

    async def single(
        self, table: str, filters: Sequence[Filter], columns: Optional[Sequence[str]] = None
    ) -> Row:
        """Exactly one matching row, otherwise RecordNotFoundError or MultipleRecordsError."""
        rows = await self.select(table, columns=columns, filters=filters, limit=2)
        if not rows:
            raise RecordNotFoundError(f"No {table} row matched", table=table)
        if len(rows) > 1:
            raise MultipleRecordsError(f"More than one {table} row matched", table=table)
        return rows[0]

    async def maybe_single(
        self, table: str, filters: Sequence[Filter], columns: Optional[Sequence[str]] = None
    ) -> Optional[Row]:
        """The matching row, or None when nothing matched."""
        rows = await self.select(table, columns=columns, filters=filters, limit=2)
        if len(rows) > 1:
            raise MultipleRecordsError(f"More than one {table} row matched", table=table)
        return rows[0] if rows else None


def _as_rows(values: Union[Row, Sequence[Row]]) -> list[Row]:
    if isinstance(values, Mapping):
        return [dict(values)]
    return [dict(v) for v in values]


class SqlAlchemyRecordStore(RecordStore):
    """RecordStore over a synchronous SQLAlchemy engine."""

    def __init__(
        self,
        engine: Engine,
        *,
        metadata: MetaData = schema.metadata,
        functions: Optional[Mapping[str, RpcFunction]] = None,
    ) -> None:
        self._engine = engine
        self._metadata = metadata
        self._functions: dict[str, RpcFunction] = {}
        if functions is None:
            from bookclub.store.functions import DEFAULT_FUNCTIONS

            functions = DEFAULT_FUNCTIONS
        self._functions.update(functions)

    def register_function(self, name: str, function: RpcFunction) -> None:
        self._functions[name] = function

    def _table(self, name: str) -> Table:
        try:
            return self._metadata.tables[name]
        except KeyError:
            raise RecordStoreError(f"Unknown table: {name}", table=name) from None

    async def _run(self, table: Optional[str], work: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error(
                "Record store query failed",
                extra={"table": table, "error": str(e)},
            )
            raise RecordStoreError(str(e), table=table) from e

    async def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        t = self._table(table)
        stmt = select(*[t.c[c] for c in columns]) if columns else select(t)
        stmt = stmt.where(*[f.to_clause(t) for f in filters])
        if order_by:
            stmt = stmt.order_by(t.c[order_by].desc() if descending else t.c[order_by].asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        def work():
            with self._engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(stmt)]

        return await self._run(table, work)

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t).where(*[f.to_clause(t) for f in filters])

        def work():
            with self._engine.connect() as conn:
                return int(conn.execute(stmt).scalar_one())

        return await self._run(table, work)

    async def insert(self, table: str, values: Union[Row, Sequence[Row]]) -> list[Row]:
        t = self._table(table)
        rows = _as_rows(values)

        def work():
            inserted = []
            with self._engine.begin() as conn:
                for row in rows:
                    result = conn.execute(t.insert().values(**row))
                    key = result.inserted_primary_key
                    pk = dict(zip([c.name for c in t.primary_key.columns], key)) if key else {}
                    inserted.append({**row, **pk})
            return inserted

        return await self._run(table, work)

    async def update(self, table: str, values: Row, filters: Sequence[Filter]) -> int:
        t = self._table(table)
        stmt = t.update().where(*[f.to_clause(t) for f in filters]).values(**values)

        def work():
            with self._engine.begin() as conn:
                return conn.execute(stmt).rowcount

        return await self._run(table, work)

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        t = self._table(table)
        stmt = t.delete().where(*[f.to_clause(t) for f in filters])

        def work():
            with self._engine.begin() as conn:
                return conn.execute(stmt).rowcount

        return await self._run(table, work)

    async def upsert(
        self, table: str, values: Union[Row, Sequence[Row]], conflict_columns: Sequence[str]
    ) -> list[Row]:
        t = self._table(table)
        rows = _as_rows(values)
        if not conflict_columns:
            raise ValueError("conflict_columns is required for upsert")

        def work():
            with self._engine.begin() as conn:
                for row in rows:
                    where = [t.c[c] == row[c] for c in conflict_columns]
                    exists = conn.execute(select(func.count()).select_from(t).where(*where)).scalar_one()
                    if exists:
                        changes = {k: v for k, v in row.items() if k not in conflict_columns}
                        if changes:
                            conn.execute(t.update().where(*where).values(**changes))
                    else:
                        conn.execute(t.insert().values(**row))
            return rows

        return await self._run(table, work)

    async def rpc(self, function: str, params: Mapping[str, Any]) -> Any:
        fn = self._functions.get(function)
        if fn is None:
            raise RecordStoreError(f"Unknown function: {function}")

        def work():
            with self._engine.connect() as conn:
                return fn(conn, params)

        return await self._run(None, work)
