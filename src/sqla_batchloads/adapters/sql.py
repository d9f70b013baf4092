from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any, Union

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..descriptor import QueryDescriptor
from ..predicate import Condition, Custom, Empty, Equals, In, IsNull, Like, Predicate
from ..tools import Row
from .base import StorageAdapter


logger = logging.getLogger(__name__)

Bind = Union[AsyncEngine, AsyncConnection]


def condition_clause(column: sa.ColumnElement[Any], condition: Condition) -> sa.ColumnElement[bool]:
    """Translate one condition into a SQLAlchemy boolean clause over *column*."""
    if isinstance(condition, Equals):
        return column == condition.value
    if isinstance(condition, IsNull):
        return column.is_(None)
    if isinstance(condition, In):
        return column.in_(condition.values)
    if isinstance(condition, Empty):
        return sa.false()
    if isinstance(condition, Like):
        return sa.cast(column, sa.String).ilike(f"%{condition.pattern}%")
    if isinstance(condition, Custom):
        return condition.fn(column)

    raise TypeError(f"Unsupported condition: {condition!r}")


class SqlAdapter(StorageAdapter):
    """
    Storage on SQLAlchemy Core tables through an async engine or connection.

    Bound to an ``AsyncEngine`` every call checks out its own connection and
    commits on success. Bound to an ``AsyncConnection`` statements run on that
    connection one at a time (concurrent relation fetches are serialised) and
    transaction control is left to the caller.

    Args:
        bind: ``AsyncEngine`` or ``AsyncConnection`` to execute on.
        metadata: Metadata holding every table queries refer to by name,
            e.g. ``Base.metadata`` of a declarative model base.

    Examples:
        >>> engine = create_async_engine("sqlite+aiosqlite:///:memory:")
        >>> store = Store(SqlAdapter(engine, Base.metadata))
        >>> await store("user").where({"active": True}).count()
    """

    def __init__(self, bind: Bind, metadata: sa.MetaData) -> None:
        self._bind = bind
        self._lock = asyncio.Lock() if isinstance(bind, AsyncConnection) else None
        self.metadata = metadata

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        if isinstance(self._bind, AsyncConnection):
            assert self._lock is not None
            async with self._lock:
                yield self._bind
        else:
            async with self._bind.begin() as conn:
                yield conn

    def table(self, name: str) -> sa.Table:
        try:
            return self.metadata.tables[name]
        except KeyError:
            raise ValueError(f"Table {name!r} is not defined in {self.metadata!r}") from None

    @staticmethod
    def column(table: sa.Table, name: str) -> sa.Column[Any]:
        try:
            return table.c[name]
        except KeyError:
            raise ValueError(f"Table {table.name!r} has no column {name!r}") from None

    def where_clauses(self, table: sa.Table, predicate: Predicate) -> list[sa.ColumnElement[bool]]:
        return [condition_clause(self.column(table, column), condition) for column, condition in predicate.items()]

    def values(self, table: sa.Table, data: Mapping[str, Any]) -> Row:
        """Keep the keys of *data* that are columns of *table*."""
        values = {key: value for key, value in data.items() if key in table.c}
        if len(values) != len(data):
            logger.debug("Ignoring non-column keys %s for %r", sorted(set(data) - set(values)), table.name)

        return values

    @staticmethod
    def apply_raw_maps(stmt: sa.Select[Any], table: sa.Table, descriptor: QueryDescriptor) -> sa.Select[Any]:
        for fn in descriptor.raw_maps:
            stmt = fn(stmt, table) or stmt

        return stmt

    def _paginate(self, stmt: sa.Select[Any], descriptor: QueryDescriptor) -> sa.Select[Any]:
        if descriptor.offset:
            stmt = stmt.offset(descriptor.offset)
        if descriptor.limit is not None:
            stmt = stmt.limit(descriptor.limit)

        return stmt

    def select(self, descriptor: QueryDescriptor) -> sa.Select[Any]:
        """Build the SELECT (or the counting SELECT in count mode) for *descriptor*.

        Raw hooks run on the base statement before conditions, ordering and
        pagination are added.
        """
        table = self.table(descriptor.table_name)
        where = self.where_clauses(table, descriptor.where)

        if descriptor.count is True:
            inner = sa.select(*(self.column(table, c) for c in descriptor.pk)).distinct()
            inner = self.apply_raw_maps(inner, table, descriptor)
            subquery = self._paginate(inner.where(*where), descriptor).subquery()
            return sa.select(sa.func.count()).select_from(subquery)

        if descriptor.count is not None:
            inner = self.apply_raw_maps(sa.select(self.column(table, descriptor.count)), table, descriptor)
            subquery = self._paginate(inner.where(*where), descriptor).subquery()
            return sa.select(sa.func.count(subquery.c[descriptor.count]))

        columns = [self.column(table, c) for c in descriptor.columns]
        stmt = sa.select(*columns) if columns else sa.select(table)
        stmt = self.apply_raw_maps(stmt, table, descriptor).where(*where)
        for name, direction in descriptor.order_by:
            column = self.column(table, name)
            stmt = stmt.order_by(column.desc() if direction == "DESC" else column.asc())

        return self._paginate(stmt, descriptor)

    async def get(self, descriptor: QueryDescriptor) -> Any:
        if descriptor.where.is_empty_set():
            if descriptor.count is not None:
                return 0
            return [] if descriptor.returns_collection else None

        stmt = self.select(descriptor)
        logger.debug("Executing %s", stmt)
        async with self.connect() as conn:
            result = await conn.execute(stmt)
            if descriptor.count is not None:
                return int(result.scalar_one())

            rows = [dict(row) for row in result.mappings()]

        if descriptor.returns_collection:
            return rows

        return rows[0] if rows else None

    async def post(self, descriptor: QueryDescriptor) -> Row | list[Row]:
        table = self.table(descriptor.table_name)
        payload = descriptor.payload
        entries = [self.values(table, entry) for entry in (payload if isinstance(payload, list) else [payload])]
        pk = [self.column(table, c) for c in descriptor.pk]

        async with self.connect() as conn:
            dialect = conn.dialect
            if dialect.insert_executemany_returning or (len(entries) == 1 and dialect.insert_returning):
                stmt = sa.insert(table).returning(*pk, sort_by_parameter_order=len(entries) > 1)
                logger.debug("Executing %s with %d rows", stmt, len(entries))
                result = await conn.execute(stmt, entries if len(entries) > 1 else entries[0])
                created = [dict(row) for row in result.mappings()]
            else:
                stmt = sa.insert(table)
                logger.debug("Executing %s row by row (%d rows)", stmt, len(entries))
                created = []
                for entry in entries:
                    result = await conn.execute(stmt, entry)
                    created.append(dict(zip(descriptor.pk, result.inserted_primary_key or ())))

        return created if isinstance(payload, list) else created[0]

    async def put(self, descriptor: QueryDescriptor) -> None:
        table = self.table(descriptor.table_name)
        values = self.values(table, descriptor.payload or {})
        if not values or descriptor.where.is_empty_set():
            return

        stmt = sa.update(table).where(*self.where_clauses(table, descriptor.where)).values(values)
        logger.debug("Executing %s", stmt)
        async with self.connect() as conn:
            await conn.execute(stmt)

    async def delete(self, descriptor: QueryDescriptor) -> None:
        if descriptor.where.is_empty_set():
            return

        table = self.table(descriptor.table_name)
        stmt = sa.delete(table).where(*self.where_clauses(table, descriptor.where))
        logger.debug("Executing %s", stmt)
        async with self.connect() as conn:
            await conn.execute(stmt)
