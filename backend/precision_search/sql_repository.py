"""
Precision Search - SQLAlchemy Repository

Implements the repository interface on top of the async SQLAlchemy session:
- One database transaction per atomic_write (commit or full rollback)
- Keyset pagination on (order_by, id)
- SQLAlchemy errors surface as RepositoryError
"""

import logging
from typing import Any, List, Optional, Sequence

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.models import (
    TransactionDB, DocumentDB, FileConnectionDB, PartnerDB, MailboxDB,
    PrecisionSearchQueueDB, TransactionSearchDB
)

from .errors import ConflictError, NotFoundError, RepositoryError
from .models import Collection, RECORD_TYPES
from .repository import (
    Repository, Filter, Put, Update, ArrayUnion, ArrayRemove, Increment, Delete,
    matches_filter
)

logger = logging.getLogger(__name__)

ORM_TYPES = {
    Collection.TRANSACTIONS: TransactionDB,
    Collection.DOCUMENTS: DocumentDB,
    Collection.CONNECTIONS: FileConnectionDB,
    Collection.PARTNERS: PartnerDB,
    Collection.MAILBOXES: MailboxDB,
    Collection.QUEUE: PrecisionSearchQueueDB,
    Collection.SEARCHES: TransactionSearchDB,
}

# Evaluated in Python after the SQL query; JSON containment is not portable
_PYTHON_ONLY_OPERATORS = {"array_contains"}


def _condition(model, flt: Filter):
    name, op, value = flt
    column = getattr(model, name)

    if op == "==":
        return column.is_(None) if value is None else column == value
    if op == "!=":
        return column.is_not(None) if value is None else or_(column != value, column.is_(None))
    if op == "<":
        return column < value
    if op == "<=":
        return column <= value
    if op == ">":
        return column > value
    if op == ">=":
        return column >= value
    if op == "in":
        return column.in_(list(value))
    raise ValueError(f"Unsupported filter operator: {op}")


class SqlAlchemyRepository(Repository):
    """Repository backed by the tables in database.models."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_record(collection: Collection, row) -> Any:
        record_cls = RECORD_TYPES[collection]
        return record_cls(**{name: getattr(row, name) for name in record_cls.field_names()})

    @staticmethod
    def _to_row(collection: Collection, record) -> Any:
        model = ORM_TYPES[collection]
        return model(**{name: getattr(record, name) for name in type(record).field_names()})

    async def get(self, collection: Collection, record_id: str) -> Optional[Any]:
        model = ORM_TYPES[collection]
        try:
            async with self.session_factory() as session:
                row = await session.get(model, record_id)
                return self._to_record(collection, row) if row is not None else None
        except SQLAlchemyError as e:
            raise RepositoryError(f"get {collection.value}/{record_id} failed: {e}") from e

    def _select(self, collection: Collection, where: Sequence[Filter]):
        model = ORM_TYPES[collection]
        sql_filters = [f for f in where if f[1] not in _PYTHON_ONLY_OPERATORS]
        python_filters = [f for f in where if f[1] in _PYTHON_ONLY_OPERATORS]
        stmt = select(model)
        for flt in sql_filters:
            stmt = stmt.where(_condition(model, flt))
        return stmt, python_filters

    async def query(
        self,
        collection: Collection,
        where: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> List[Any]:
        model = ORM_TYPES[collection]
        stmt, python_filters = self._select(collection, where)
        column = getattr(model, order_by) if order_by else None

        try:
            async with self.session_factory() as session:
                if start_after:
                    cursor = await session.get(model, start_after)
                    if cursor is not None:
                        stmt = stmt.where(self._after(model, column, cursor, descending))

                if column is not None:
                    stmt = stmt.order_by(column.desc() if descending else column.asc())
                stmt = stmt.order_by(model.id.desc() if descending else model.id.asc())

                if limit is not None and not python_filters:
                    stmt = stmt.limit(limit)

                result = await session.execute(stmt)
                records = [self._to_record(collection, row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryError(f"query {collection.value} failed: {e}") from e

        if python_filters:
            records = [r for r in records if all(matches_filter(r, f) for f in python_filters)]
            if limit is not None:
                records = records[:limit]
        return records

    @staticmethod
    def _after(model, column, cursor, descending: bool):
        if column is None:
            return model.id < cursor.id if descending else model.id > cursor.id

        value = getattr(cursor, column.key)
        if value is None:
            return and_(column.is_(None), model.id < cursor.id if descending else model.id > cursor.id)
        if descending:
            return or_(column < value, and_(column == value, model.id < cursor.id))
        return or_(column > value, and_(column == value, model.id > cursor.id))

    async def count(self, collection: Collection, where: Sequence[Filter] = ()) -> int:
        stmt, python_filters = self._select(collection, where)
        if python_filters:
            return len(await self.query(collection, where))
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(func.count()).select_from(stmt.subquery()))
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise RepositoryError(f"count {collection.value} failed: {e}") from e

    async def atomic_write(self, ops: Sequence[Any]) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for op in ops:
                        await self._apply(session, op)
        except (ConflictError, NotFoundError):
            raise
        except SQLAlchemyError as e:
            raise RepositoryError(f"atomic write of {len(ops)} operations failed: {e}") from e

    async def _apply(self, session, op) -> None:
        model = ORM_TYPES[op.collection]

        if isinstance(op, Put):
            await session.merge(self._to_row(op.collection, op.record))
            await session.flush()
            return

        if isinstance(op, Delete):
            await session.execute(delete(model).where(model.id == op.id))
            return

        if isinstance(op, (Update, Increment)):
            stmt = update(model).where(model.id == op.id)
            if isinstance(op, Update):
                for name, value in (op.expected or {}).items():
                    stmt = stmt.where(_condition(model, (name, "==", value)))
                stmt = stmt.values(**op.fields)
            else:
                column = getattr(model, op.field)
                stmt = stmt.values({column: column + op.amount})

            result = await session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 0:
                exists = await session.execute(select(model.id).where(model.id == op.id))
                if exists.scalar_one_or_none() is None:
                    raise NotFoundError(f"{op.collection.value}/{op.id} not found")
                raise ConflictError(f"{op.collection.value}/{op.id}: expected {op.expected!r}")
            return

        if isinstance(op, (ArrayUnion, ArrayRemove)):
            row = await session.get(model, op.id, populate_existing=True, with_for_update=True)
            if row is None:
                raise NotFoundError(f"{op.collection.value}/{op.id} not found")
            values = list(getattr(row, op.field) or [])
            if isinstance(op, ArrayUnion):
                for value in op.values:
                    if value not in values:
                        values.append(value)
            else:
                values = [v for v in values if v not in op.values]
            setattr(row, op.field, values)
            await session.flush()
            return

        raise TypeError(f"Unsupported write operation: {type(op).__name__}")
