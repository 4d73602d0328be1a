"""
Precision Search - Repository Interface

Narrow storage interface the queue controller and strategies depend on:
- get: fetch one record by id
- query: equality/range filters, stable ordering, keyset cursor, limit
- count: number of records matching filters
- atomic_write: all-or-nothing multi-record write

Implementations:
- InMemoryRepository (this module): dict-backed, used by tests and local runs
- SqlAlchemyRepository (sql_repository.py): async SQLAlchemy session per write
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ConflictError, NotFoundError
from .models import Collection

logger = logging.getLogger(__name__)

# (field, operator, value); operators: == != < <= > >= in array_contains
Filter = Tuple[str, str, Any]

# Largest number of operations sent in one bulk batch
MAX_BATCH_WRITES = 500


# ==================== WRITE OPERATIONS ====================

@dataclass
class Put:
    """Insert or replace a whole record."""
    collection: Collection
    record: Any


@dataclass
class Update:
    """Assign fields; fails with ConflictError when `expected` does not hold."""
    collection: Collection
    id: str
    fields: Dict[str, Any]
    expected: Optional[Dict[str, Any]] = None


@dataclass
class ArrayUnion:
    """Append values not yet present (set-union semantics)."""
    collection: Collection
    id: str
    field: str
    values: List[Any] = field(default_factory=list)


@dataclass
class ArrayRemove:
    collection: Collection
    id: str
    field: str
    values: List[Any] = field(default_factory=list)


@dataclass
class Increment:
    collection: Collection
    id: str
    field: str
    amount: int = 1


@dataclass
class Delete:
    collection: Collection
    id: str


WriteOp = Any


# ==================== FILTER EVALUATION ====================

def matches_filter(record: Any, flt: Filter) -> bool:
    name, op, expected = flt
    value = getattr(record, name)

    if op == "==":
        return value == expected
    if op == "!=":
        return value != expected
    if op == "in":
        return value in expected
    if op == "array_contains":
        return expected in (value or [])
    if value is None or expected is None:
        return False
    if op == "<":
        return value < expected
    if op == "<=":
        return value <= expected
    if op == ">":
        return value > expected
    if op == ">=":
        return value >= expected
    raise ValueError(f"Unsupported filter operator: {op}")


def sort_key(record: Any, order_by: Optional[str]) -> tuple:
    """(has value, value, id) so ordering is total and stable."""
    if not order_by:
        return (True, 0, record.id)
    value = getattr(record, order_by)
    if value is None:
        return (False, 0, record.id)
    return (True, value, record.id)


# ==================== INTERFACE ====================

class Repository(ABC):
    """Storage interface for precision search records."""

    @abstractmethod
    async def get(self, collection: Collection, record_id: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def query(
        self,
        collection: Collection,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[Any]:
        ...

    @abstractmethod
    async def count(self, collection: Collection, where: Sequence[Filter] = ()) -> int:
        ...

    @abstractmethod
    async def atomic_write(self, ops: Sequence[WriteOp]) -> None:
        ...

    async def add(self, collection: Collection, record: Any) -> Any:
        await self.atomic_write([Put(collection, record)])
        return record

    async def first(self, collection: Collection, where: Sequence[Filter] = (), **kwargs) -> Optional[Any]:
        rows = await self.query(collection, where, limit=1, **kwargs)
        return rows[0] if rows else None


async def write_in_chunks(repository: Repository, ops: Sequence[WriteOp], chunk_size: int = MAX_BATCH_WRITES) -> int:
    """
    Apply independent operations in batches of at most chunk_size.

    Each chunk is atomic on its own; use atomic_write directly when the
    operations must succeed or fail together.
    """
    written = 0
    for start in range(0, len(ops), chunk_size):
        chunk = list(ops[start:start + chunk_size])
        await repository.atomic_write(chunk)
        written += len(chunk)
    return written


# ==================== IN-MEMORY IMPLEMENTATION ====================

class InMemoryRepository(Repository):
    """
    Dict-backed repository.

    Records are copied on the way in and out so callers never share state
    with the store, and a failed atomic_write leaves the store untouched.
    """

    def __init__(self):
        self._store: Dict[Collection, Dict[str, Any]] = {c: {} for c in Collection}
        self.write_count = 0

    async def get(self, collection: Collection, record_id: str) -> Optional[Any]:
        record = self._store[collection].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def query(
        self,
        collection: Collection,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[Any]:
        rows = [r for r in self._store[collection].values() if all(matches_filter(r, f) for f in where)]
        rows.sort(key=lambda r: sort_key(r, order_by), reverse=descending)

        if start_after:
            cursor = self._store[collection].get(start_after)
            if cursor is not None:
                cursor_key = sort_key(cursor, order_by)
                if descending:
                    rows = [r for r in rows if sort_key(r, order_by) < cursor_key]
                else:
                    rows = [r for r in rows if sort_key(r, order_by) > cursor_key]

        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def count(self, collection: Collection, where: Sequence[Filter] = ()) -> int:
        return sum(1 for r in self._store[collection].values() if all(matches_filter(r, f) for f in where))

    async def atomic_write(self, ops: Sequence[WriteOp]) -> None:
        staged = {c: dict(records) for c, records in self._store.items()}

        for op in ops:
            records = staged[op.collection]

            if isinstance(op, Put):
                records[op.record.id] = copy.deepcopy(op.record)
                continue

            if isinstance(op, Delete):
                records.pop(op.id, None)
                continue

            current = records.get(op.id)
            if current is None:
                raise NotFoundError(f"{op.collection.value}/{op.id} not found")
            current = copy.deepcopy(current)

            if isinstance(op, Update):
                for name, value in (op.expected or {}).items():
                    if getattr(current, name) != value:
                        raise ConflictError(
                            f"{op.collection.value}/{op.id}: expected {name}={value!r}, found {getattr(current, name)!r}"
                        )
                for name, value in op.fields.items():
                    setattr(current, name, copy.deepcopy(value))
            elif isinstance(op, ArrayUnion):
                values = list(getattr(current, op.field) or [])
                for value in op.values:
                    if value not in values:
                        values.append(copy.deepcopy(value))
                setattr(current, op.field, values)
            elif isinstance(op, ArrayRemove):
                values = [v for v in (getattr(current, op.field) or []) if v not in op.values]
                setattr(current, op.field, values)
            elif isinstance(op, Increment):
                setattr(current, op.field, (getattr(current, op.field) or 0) + op.amount)
            else:
                raise TypeError(f"Unsupported write operation: {type(op).__name__}")

            records[op.id] = current

        self._store = staged
        self.write_count += 1
