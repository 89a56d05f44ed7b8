"""Record store access for entitlement lookups."""

from bookclub.store.records import (
    Filter,
    MultipleRecordsError,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
    SqlAlchemyRecordStore,
    eq,
    gte,
    in_,
    is_null,
    lt,
    neq,
    not_null,
)

__all__ = [
    "Filter",
    "MultipleRecordsError",
    "RecordNotFoundError",
    "RecordStore",
    "RecordStoreError",
    "SqlAlchemyRecordStore",
    "eq",
    "gte",
    "in_",
    "is_null",
    "lt",
    "neq",
    "not_null",
]
