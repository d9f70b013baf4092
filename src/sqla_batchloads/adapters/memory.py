from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from ..descriptor import QueryDescriptor
from ..errors import DuplicateKey
from ..predicate import Condition, Custom, Empty, Equals, In, IsNull, Like, Predicate
from ..tools import Row, project
from .base import StorageAdapter


logger = logging.getLogger(__name__)


def evaluate(value: Any, condition: Condition) -> bool:
    """Evaluate one condition against the stored *value* of its column."""
    if isinstance(condition, Equals):
        return value == condition.value
    if isinstance(condition, IsNull):
        return value is None
    if isinstance(condition, In):
        return value in condition.values
    if isinstance(condition, Empty):
        return False
    if isinstance(condition, Like):
        return value is not None and condition.pattern.lower() in str(value).lower()
    if isinstance(condition, Custom):
        return bool(condition.fn(value))

    raise TypeError(f"Unsupported condition: {condition!r}")


def matches(row: Mapping[str, Any], predicate: Predicate) -> bool:
    return all(evaluate(row.get(column), condition) for column, condition in predicate.items())


class MemoryAdapter(StorageAdapter):
    """
    In-process storage over plain lists of dicts, one list per table.

    Rows handed out by :meth:`get` are copies, so relation attachments never
    leak back into the stored data. A missing single-column primary key is
    filled on insert with the next integer after the largest one stored.

    Examples:
        >>> adapter = MemoryAdapter({"user": [{"id": 1, "name": "Ann"}]})
        >>> store = Store(adapter)
        >>> await store("user").get(1)
        {'id': 1, 'name': 'Ann'}
    """

    def __init__(self, tables: dict[str, list[Row]] | None = None) -> None:
        self.tables: dict[str, list[Row]] = tables if tables is not None else {}

    def table(self, name: str) -> list[Row]:
        return self.tables.setdefault(name, [])

    def _select(self, descriptor: QueryDescriptor) -> list[Row]:
        if descriptor.where.is_empty_set():
            return []

        return [row for row in self.table(descriptor.table_name) if matches(row, descriptor.where)]

    async def get(self, descriptor: QueryDescriptor) -> Any:
        if descriptor.raw_maps:
            raise NotImplementedError(
                f"{type(self).__name__} cannot apply raw statement hooks (table {descriptor.table_name!r})"
            )

        rows = self._select(descriptor)
        for column, direction in reversed(descriptor.order_by):
            # nulls sort first ascending, last descending
            rows.sort(key=lambda row: (row.get(column) is not None, row.get(column)), reverse=direction == "DESC")

        stop = None if descriptor.limit is None else descriptor.offset + descriptor.limit
        rows = rows[descriptor.offset:stop]
        logger.debug("get %r where %r: %d rows", descriptor.table_name, descriptor.where, len(rows))

        if descriptor.count is True:
            return len({tuple(row.get(column) for column in descriptor.pk) for row in rows})
        if descriptor.count is not None:
            return sum(1 for row in rows if row.get(descriptor.count) is not None)

        if descriptor.columns:
            rows = [project(row, descriptor.columns) for row in rows]
        else:
            rows = [dict(row) for row in rows]

        if descriptor.returns_collection:
            return rows

        return rows[0] if rows else None

    async def post(self, descriptor: QueryDescriptor) -> Row | list[Row]:
        payload = descriptor.payload
        entries = payload if isinstance(payload, list) else [payload]
        table = self.table(descriptor.table_name)

        created: list[Row] = []
        for entry in entries:
            row = dict(entry)
            if len(descriptor.pk) == 1 and row.get(descriptor.pk[0]) is None:
                row[descriptor.pk[0]] = self._next_id(table, descriptor.pk[0])

            key = tuple(row.get(column) for column in descriptor.pk)
            if any(tuple(other.get(column) for column in descriptor.pk) == key for other in table):
                raise DuplicateKey(descriptor.table_name, key)

            table.append(row)
            created.append(project(row, descriptor.pk))

        logger.debug("post %r: %d rows", descriptor.table_name, len(created))
        return created if isinstance(payload, list) else created[0]

    async def put(self, descriptor: QueryDescriptor) -> None:
        if not descriptor.payload:
            return

        rows = self._select(descriptor)
        for row in rows:
            row.update(descriptor.payload)

        logger.debug("put %r where %r: %d rows", descriptor.table_name, descriptor.where, len(rows))

    async def delete(self, descriptor: QueryDescriptor) -> None:
        doomed = {id(row) for row in self._select(descriptor)}
        table = self.table(descriptor.table_name)
        table[:] = [row for row in table if id(row) not in doomed]
        logger.debug("delete %r where %r: %d rows", descriptor.table_name, descriptor.where, len(doomed))

    @staticmethod
    def _next_id(table: list[Row], column: str) -> int:
        return max((row[column] for row in table if isinstance(row.get(column), int)), default=0) + 1
