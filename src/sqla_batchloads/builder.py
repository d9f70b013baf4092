from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final

from .datastructures import activate, activation_paths, deactivate, frozendict
from .descriptor import DEFAULT_PRIMARY_KEY, QueryDescriptor, RawMap, parse_order_by
from .errors import MissingPayload
from .predicate import Predicate, to_predicate
from .reconcile import reconcile_links
from .registry import RelationRegistry
from .relations import (
    BelongsTo,
    ExtendWith,
    HasMany,
    HasManyThrough,
    HasOne,
    Relation,
    RowFilter,
    fetch_relations,
)
from .tools import FOREIGN_KEY_TEMPLATE, PLURAL_TEMPLATE, Row, default_key, group_by, key_by


if TYPE_CHECKING:
    from .adapters.base import StorageAdapter

logger = logging.getLogger(__name__)

Method = Callable[..., Any]


async def _map_async(rows: list[Any], fn: Callable[[Any], Any]) -> list[Any]:
    return list(await asyncio.gather(*(fn(row) for row in rows)))


DEFAULT_METHODS: Final[Mapping[str, Method]] = frozendict({
    "map": lambda rows, fn: [fn(row) for row in rows],
    "map_async": _map_async,
    "filter": lambda rows, fn: [row for row in rows if fn(row)],
    "group_by": group_by,
    "key_by": key_by,
})


class Store:
    """Binds table queries to a storage adapter.

    ``store("user")`` returns a fresh :class:`Query` on table ``user`` with its
    own (open) relation registry.  Relations are declared on those queries
    first; a registry is sealed by the first dispatch of a query made from its
    binding, or for all bindings at once by :meth:`seal`.

    Args:
        adapter: Storage adapter every query dispatches to.
        methods: Extra post-load transforms ``fn(rows, *args)``; each becomes a
            chainable query method.  They extend (and may override) the
            built-in ``map``, ``map_async``, ``filter``, ``group_by`` and ``key_by``.
        pk: Default primary key of new table queries.
        fk_template: Naming template for foreign keys a relation leaves unset.
        plural_template: Naming template for the default key of to-many relations.

    Raises:
        ValueError: If an extension method name is private or shadows a
            :class:`Query` attribute.

    Example:
        >>> store = Store(MemoryAdapter(data))
        >>> users, comments = store("user"), store("comment")
        >>> users = users.has_many(comments)
        >>> comments = comments.belongs_to(users)
        >>> await users.with_("comments").load()
    """

    __slots__ = ("_adapter", "_mock_adapter", "_registries", "fk_template", "methods", "pk", "plural_template")

    def __init__(
        self,
        adapter: StorageAdapter,
        *,
        methods: Mapping[str, Method] | None = None,
        pk: str | Sequence[str] = DEFAULT_PRIMARY_KEY,
        fk_template: str = FOREIGN_KEY_TEMPLATE,
        plural_template: str = PLURAL_TEMPLATE,
    ) -> None:
        clashing = sorted(name for name in methods or () if name.startswith("_") or hasattr(Query, name))
        if clashing:
            raise ValueError(f"Extension methods {clashing} would be shadowed by Query attributes")

        self._adapter = adapter
        self._mock_adapter: StorageAdapter | None = None
        self._registries: list[RelationRegistry] = []
        self.methods: frozendict[str, Method] = frozendict({**DEFAULT_METHODS, **(methods or {})})
        self.pk = _as_pk(pk)
        self.fk_template = fk_template
        self.plural_template = plural_template

    def __call__(self, table_name: str) -> Query:
        registry = RelationRegistry(table_name)
        self._registries.append(registry)

        return Query(QueryDescriptor(table_name=table_name, relations=registry, pk=self.pk), self)

    @property
    def adapter(self) -> StorageAdapter:
        return self._mock_adapter or self._adapter

    def mock_adapter(self, adapter: StorageAdapter) -> None:
        """Route every dispatch to *adapter* until :meth:`reset_adapter` (for tests)."""
        self._mock_adapter = adapter

    def reset_adapter(self) -> None:
        self._mock_adapter = None

    def seal(self) -> None:
        """Freeze the relation registries of every binding created so far."""
        for registry in self._registries:
            registry.seal()

    async def dispatch(self, descriptor: QueryDescriptor) -> Any:
        """Run *descriptor* on the adapter; predicates that cannot match skip the round trip."""
        descriptor.relations.seal()
        if descriptor.operation != "post" and descriptor.where.is_empty_set():
            logger.debug("Skipping %s on %r: empty membership test", descriptor.operation, descriptor.table_name)
            if descriptor.operation != "get":
                return None
            if descriptor.count is not None:
                return 0
            return [] if descriptor.returns_collection else None

        adapter = self.adapter
        if descriptor.operation == "del":
            return await adapter.delete(descriptor)

        return await getattr(adapter, descriptor.operation)(descriptor)


class Query:
    """Fluent, immutable query on one table binding.

    Every non-terminal method returns a new :class:`Query`; the receiver is
    never modified, so partially built queries can be shared and reused.
    Terminal methods (``load``, ``get``, ``first``, ``count``, ``put``,
    ``post``, ``delete`` and their ``*_all`` variants) are coroutines that
    dispatch to the store's adapter.
    """

    __slots__ = ("_descriptor", "_store")

    def __init__(self, descriptor: QueryDescriptor, store: Store) -> None:
        self._descriptor = descriptor
        self._store = store

    def __repr__(self) -> str:
        d = self._descriptor
        return f"<Query {d.table_name!r} {d.operation} where={d.where!r} with={list(activation_paths(d.with_related))}>"

    def __getattr__(self, name: str) -> Callable[..., Query]:
        # only reached for names that are not regular attributes
        if name.startswith("_"):
            raise AttributeError(name)

        try:
            method = self._store.methods[name]
        except (AttributeError, KeyError):
            raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}") from None

        def attach(*args: Any, **kwargs: Any) -> Query:
            def transform(rows: Any) -> Any:
                return method(rows, *args, **kwargs)

            return self._evolve(transforms=(*self._descriptor.transforms, transform))

        attach.__name__ = name
        return attach

    @property
    def descriptor(self) -> QueryDescriptor:
        return self._descriptor

    @property
    def store(self) -> Store:
        return self._store

    @property
    def relations(self) -> RelationRegistry:
        return self._descriptor.relations

    def _evolve(self, **changes: Any) -> Query:
        return Query(self._descriptor.evolve(**changes), self._store)

    # --- descriptor fields -------------------------------------------------

    def table(self, table_name: str | None = None) -> Any:
        if table_name is None:
            return self._descriptor.table_name

        return self._evolve(table_name=table_name)

    def pk(self, pk: str | Sequence[str] | None = None) -> Any:
        if pk is None:
            return self._descriptor.pk

        return self._evolve(pk=_as_pk(pk))

    def columns(self, columns: Sequence[str] | None = None) -> Any:
        if columns is None:
            return self._descriptor.columns

        return self._evolve(columns=(*self._descriptor.columns, *columns))

    def writable_columns(self, columns: Sequence[str] | None = None) -> Any:
        if columns is None:
            return self._descriptor.writable_columns

        return self._evolve(writable_columns=(*(self._descriptor.writable_columns or ()), *columns))

    def aliases(self, aliases: Mapping[str, str] | None = None) -> Any:
        """Get or extend the table of public names -> column names used by ``where``."""
        if aliases is None:
            return self._descriptor.aliases

        return self._evolve(aliases=self._descriptor.aliases.merge(aliases))

    def where(self, where: Mapping[str, Any] | Predicate | Callable[[Predicate], Any] | None = None) -> Query:
        """Narrow the query; new conditions override earlier ones on the same column.

        *where* may be a mapping (see :func:`~sqla_batchloads.predicate.to_predicate`),
        a :class:`Predicate`, or a callable receiving the current predicate and
        returning the new one (or a mapping standing for it).
        """
        return self._evolve(where=self._merged_where(where))

    def where_like(self, where: Mapping[str, Any]) -> Query:
        """Like :meth:`where`, but string values always match as patterns."""
        return self._evolve(where=self._merged_where(where, like=True))

    def _merged_where(self, where: Any, *, like: bool = False) -> Predicate:
        current = self._descriptor.where
        if where is None:
            return current

        if callable(where) and not isinstance(where, (Mapping, Predicate)):
            return to_predicate(where(current), self._descriptor.aliases)

        return current.merge(to_predicate(where, self._descriptor.aliases, like=like))

    def with_(self, *paths: str | Mapping[str, Any]) -> Query:
        """Activate relations; ``"a:b"`` activates ``b`` on the rows of ``a``."""
        logger.debug("Activating relations %s of table %r", list(paths), self._descriptor.table_name)
        return self._evolve(with_related=activate(self._descriptor.with_related, paths))

    def without(self, *paths: str) -> Query:
        """Deactivate relation paths; ``"*"`` deactivates everything."""
        logger.debug("Deactivating relations %s of table %r", list(paths), self._descriptor.table_name)
        return self._evolve(with_related=deactivate(self._descriptor.with_related, paths))

    def order_by(self, spec: str | Sequence[str]) -> Query:
        return self._evolve(order_by=parse_order_by(spec))

    def limit(self, limit: int | None) -> Query:
        return self._evolve(limit=limit)

    def offset(self, offset: int) -> Query:
        return self._evolve(offset=offset)

    def raw_map(self, fn: RawMap) -> Query:
        """Hook *fn(stmt, table)* into the read statement a SQL adapter builds.

        A hook returning ``None`` keeps the statement it was given.
        """
        return self._evolve(raw_maps=(*self._descriptor.raw_maps, fn))

    # --- relation declarations ---------------------------------------------

    def _declare(self, relation: Relation) -> Query:
        self._descriptor.relations.add(relation)
        return self

    def belongs_to(
        self,
        query: Query,
        *,
        relation_key: str | None = None,
        fk: str | None = None,
        pk: str | None = None,
        row_filter: RowFilter | None = None,
    ) -> Query:
        """Rows of this table hold *fk* pointing at a row of *query*'s table."""
        return self._declare(BelongsTo(
            query=query,
            relation_key=relation_key or query.table(),
            row_filter=row_filter,
            fk_template=self._store.fk_template,
            fk=fk,
            pk=pk,
        ))

    def extend_with(
        self,
        query: Query,
        *,
        relation_key: str | None = None,
        fk: str | None = None,
        pk: str | None = None,
        row_filter: RowFilter | None = None,
    ) -> Query:
        """Like :meth:`belongs_to`, merging the related row's fields into each row."""
        return self._declare(ExtendWith(
            query=query,
            relation_key=relation_key or query.table(),
            row_filter=row_filter,
            fk_template=self._store.fk_template,
            fk=fk,
            pk=pk,
        ))

    def has_one(
        self,
        query: Query,
        *,
        relation_key: str | None = None,
        fk: str | None = None,
        local_key: str | None = None,
        row_filter: RowFilter | None = None,
    ) -> Query:
        return self._declare(HasOne(
            query=query,
            relation_key=relation_key or query.table(),
            row_filter=row_filter,
            fk_template=self._store.fk_template,
            fk=fk,
            local_key=local_key,
        ))

    def has_many(
        self,
        query: Query,
        *,
        relation_key: str | None = None,
        fk: str | None = None,
        local_key: str | None = None,
        row_filter: RowFilter | None = None,
    ) -> Query:
        return self._declare(HasMany(
            query=query,
            relation_key=relation_key or default_key(self._store.plural_template, query.table()),
            row_filter=row_filter,
            fk_template=self._store.fk_template,
            fk=fk,
            local_key=local_key,
        ))

    def has_many_through(
        self,
        query: Query,
        through: Query,
        *,
        relation_key: str | None = None,
        from_pk: str | None = None,
        from_fk: str | None = None,
        to_pk: str | None = None,
        to_fk: str | None = None,
        include_fks: bool = False,
        row_filter: RowFilter | None = None,
    ) -> Query:
        return self._declare(HasManyThrough(
            query=query,
            relation_key=relation_key or default_key(self._store.plural_template, query.table()),
            row_filter=row_filter,
            fk_template=self._store.fk_template,
            through=through,
            from_pk=from_pk,
            from_fk=from_fk,
            to_pk=to_pk,
            to_fk=to_fk,
            include_fks=include_fks,
        ))

    # --- terminal operations -----------------------------------------------

    async def load(self) -> Any:
        """Dispatch to the adapter, then resolve relations and apply transforms.

        Returns:
            For reads, the row list or (non-collection reads) the first row or
            ``None``; for counts, the number; for writes, what the adapter returns.
        """
        descriptor = self._descriptor
        result = await self._store.dispatch(descriptor)
        if descriptor.operation != "get" or descriptor.count is not None:
            return result

        if descriptor.returns_collection:
            rows = list(result or ())
        else:
            rows = [] if result is None else [result]

        if rows:
            await fetch_relations(rows, descriptor)
            for transform in descriptor.transforms:
                rows = transform(rows)
                if inspect.isawaitable(rows):
                    rows = await rows

        if descriptor.returns_collection or not isinstance(rows, list):
            return rows

        return rows[0] if rows else None

    async def count(self, column: str | bool = True) -> int:
        """Count matching rows; ``True`` counts distinct primary keys."""
        return await self._evolve(count=column, order_by=()).load()

    async def first(self, where: Mapping[str, Any] | Predicate | None = None) -> Row | None:
        return await self._evolve(
            limit=1,
            returns_collection=False,
            where=self._merged_where(where),
        ).load()

    async def get(self, id_: Any, *, omit_where: bool = False) -> Row | None:
        """Fetch one row by primary key (a list/tuple for composite keys).

        Args:
            id_: Primary-key value(s).
            omit_where: Ignore conditions already set on this query.
        """
        base = Predicate() if omit_where else self._descriptor.where
        return await self._evolve(
            offset=0,
            limit=1,
            returns_collection=False,
            where=base.merge(self._descriptor.where_from_id(id_)),
        ).load()

    async def put(self, id_: Any, data: Mapping[str, Any] | None) -> Any:
        """Update the row *id_* with *data*, then reconcile its through relations."""
        if data is None:
            raise MissingPayload("put")

        await self._write("put", data, where=self._descriptor.where_from_id(id_), returns_collection=False)
        await reconcile_links(self, id_, data)
        return data

    async def put_all(self, data: Mapping[str, Any] | None) -> Any:
        """Apply *data* to every row matching the current conditions."""
        if data is None:
            raise MissingPayload("put")

        await self._write("put", data, returns_collection=True)
        return data

    async def post(self, data: dict[str, Any] | None) -> dict[str, Any]:
        """Insert one row; generated primary-key values are written back into *data*."""
        if not data:
            raise MissingPayload("post")

        created = await self._write("post", data, returns_collection=False)
        ids = self._write_back(data, created)
        await reconcile_links(self, ids, data)
        return data

    async def post_all(self, data: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
        if not data:
            return data or []

        created = await self._write("post", data, returns_collection=True)
        ids = [self._write_back(item, row) for item, row in zip(data, created or ())]
        await asyncio.gather(*(reconcile_links(self, id_, item) for id_, item in zip(ids, data)))
        return data

    async def delete(self, id_: Any) -> Any:
        return await self._evolve(
            operation="del",
            where=self._descriptor.where_from_id(id_),
            returns_collection=False,
        ).load()

    async def delete_all(self) -> Any:
        return await self._evolve(operation="del", returns_collection=True).load()

    async def _write(self, operation: str, data: Any, **changes: Any) -> Any:
        descriptor = self._descriptor
        return await self._evolve(
            operation=operation,
            payload=descriptor.writable_payload(data),
            **changes,
        ).load()

    def _write_back(self, data: dict[str, Any], created: Mapping[str, Any] | None) -> list[Any]:
        for key in self._descriptor.pk:
            if created is not None and key in created:
                data[key] = created[key]

        return [data.get(key) for key in self._descriptor.pk]


def _as_pk(pk: str | Sequence[str]) -> tuple[str, ...]:
    return (pk,) if isinstance(pk, str) else tuple(pk)
