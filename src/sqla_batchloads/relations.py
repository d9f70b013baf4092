"""Relation kinds and the batched resolver that drives them.

Each relation knows how to populate one attachment on a whole list of parent
rows with one (two for :class:`HasManyThrough`) round trips to its target,
regardless of how many parents there are.  :func:`fetch_relations` walks a
descriptor's activation tree and fans the top-level relations out
concurrently; nested activations are pushed down onto each relation's target
query so they are resolved by the target's own ``load()``.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, NamedTuple

from .datastructures import activation_paths, frozendict
from .errors import UnknownRelation
from .tools import FOREIGN_KEY_TEMPLATE, Row, default_key, group_by, key_by, unique


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .builder import Query
    from .descriptor import QueryDescriptor

logger = logging.getLogger(__name__)

RowFilter = Callable[[Row], bool]
Pair = tuple[Row, Row]


@dataclass(frozen=True, slots=True)
class Relation:
    """Common shape of every relation kind.

    Attributes:
        query: Template query on the related table.
        relation_key: Name of the attachment on parent rows.
        row_filter: Optional predicate over parent rows; rows it rejects do not
            take part in the fetch and are left untouched.
        fk_template: Naming template for foreign keys left unspecified.
    """

    query: Query
    relation_key: str
    row_filter: RowFilter | None = None
    fk_template: str = FOREIGN_KEY_TEMPLATE

    def with_(self, activation: Mapping[str, Any]) -> Self:
        """Copy of this relation whose target query also activates *activation*."""
        return replace(self, query=self.query.with_(activation))

    def participants(self, rows: Sequence[Row]) -> list[Row]:
        if self.row_filter is None:
            return list(rows)

        return [row for row in rows if self.row_filter(row)]

    async def fetch(self, rows: list[Row], parent: QueryDescriptor) -> list[Row]:
        """Attach related rows onto *rows* in place.

        Returns:
            The parent rows that must be dropped from the result.
        """
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class _ToOne(Relation):
    """Parent row holds ``fk`` pointing at the target's ``pk``."""

    fk: str | None = None
    pk: str | None = None

    def resolve_fk(self) -> str:
        return self.fk or default_key(self.fk_template, self.query.table())

    def resolve_pk(self) -> str:
        return self.pk or self.query.pk()[0]

    async def _index(self, participants: list[Row]) -> tuple[str, dict[Any, Row]]:
        fk, pk = self.resolve_fk(), self.resolve_pk()
        fks = unique(row.get(fk) for row in participants)
        if not fks:
            return fk, {}

        related = await self.query.where({pk: fks}).load()
        return fk, key_by(related, pk)

    def _attach(self, row: Row, related: Row) -> None:
        raise NotImplementedError

    async def fetch(self, rows: list[Row], parent: QueryDescriptor) -> list[Row]:
        participants = self.participants(rows)
        fk, index = await self._index(participants)

        matched: list[Row] = []
        unmatched: list[Row] = []
        for row in participants:
            related = index.get(row.get(fk))
            if related is None:
                unmatched.append(row)
                continue
            self._attach(row, related)
            matched.append(row)

        logger.debug(
            "%s %r on %r: %d matched, %d dropped",
            type(self).__name__,
            self.relation_key,
            parent.table_name,
            len(matched),
            len(unmatched),
        )
        return unmatched


@dataclass(frozen=True, slots=True)
class BelongsTo(_ToOne):
    def _attach(self, row: Row, related: Row) -> None:
        row[self.relation_key] = related


@dataclass(frozen=True, slots=True)
class ExtendWith(_ToOne):
    """Merge the related row into the parent, filling only missing fields."""

    def _attach(self, row: Row, related: Row) -> None:
        for key, value in related.items():
            row.setdefault(key, value)


@dataclass(frozen=True, slots=True)
class _ToMany(Relation):
    """Target rows hold ``fk`` pointing at the parent's ``local_key``.

    ``fk`` defaults to ``fk_template`` rendered with the *calling* query's
    table name, so one declaration serves every binding it is attached to.
    """

    fk: str | None = None
    local_key: str | None = None

    def resolve_fk(self, parent: QueryDescriptor) -> str:
        return self.fk or default_key(self.fk_template, parent.table_name)

    def resolve_local_key(self, parent: QueryDescriptor) -> str:
        return self.local_key or parent.pk[0]

    async def _related(self, participants: list[Row], parent: QueryDescriptor) -> tuple[str, str, list[Row]]:
        fk, local_key = self.resolve_fk(parent), self.resolve_local_key(parent)
        keys = unique(row.get(local_key) for row in participants)
        if not keys:
            return fk, local_key, []

        return fk, local_key, await self.query.where({fk: keys}).load()


@dataclass(frozen=True, slots=True)
class HasOne(_ToMany):
    async def fetch(self, rows: list[Row], parent: QueryDescriptor) -> list[Row]:
        participants = self.participants(rows)
        fk, local_key, related = await self._related(participants, parent)
        index = key_by(related, fk)
        for row in participants:
            row[self.relation_key] = index.get(row.get(local_key))

        return []


@dataclass(frozen=True, slots=True)
class HasMany(_ToMany):
    async def fetch(self, rows: list[Row], parent: QueryDescriptor) -> list[Row]:
        participants = self.participants(rows)
        fk, local_key, related = await self._related(participants, parent)
        groups = group_by(related, fk)
        for row in participants:
            row[self.relation_key] = list(groups.get(row.get(local_key), ()))

        logger.debug(
            "HasMany %r on %r: %d related rows for %d parents",
            self.relation_key,
            parent.table_name,
            len(related),
            len(participants),
        )
        return []


class ThroughKeys(NamedTuple):
    from_pk: str
    from_fk: str
    to_pk: str
    to_fk: str


@dataclass(frozen=True, slots=True)
class HasManyThrough(Relation):
    """Many-to-many through a link table.

    The link table (``through``) holds ``from_fk`` pointing at the parent's
    ``from_pk`` and ``to_fk`` pointing at the target's ``to_pk``.  Columns the
    ``through`` query projects besides the two keys are carried onto the
    attached target rows and written back by :meth:`link`/:meth:`update`.
    """

    through: Query | None = None
    from_pk: str | None = None
    from_fk: str | None = None
    to_pk: str | None = None
    to_fk: str | None = None
    include_fks: bool = False

    def __post_init__(self) -> None:
        if self.through is None:
            raise TypeError("HasManyThrough requires a `through` query")

    @property
    def link_query(self) -> Query:
        assert self.through is not None
        return self.through

    def resolve_keys(self, parent: QueryDescriptor | None = None) -> ThroughKeys:
        """Resolve unspecified key names against the calling *parent* descriptor."""
        if parent is None and (self.from_fk is None or self.from_pk is None):
            raise ValueError(
                f"Relation {self.relation_key!r} derives its link keys from the calling "
                "table; pass `parent=` (the parent query's descriptor)"
            )

        return ThroughKeys(
            from_pk=self.from_pk or parent.pk[0],  # type: ignore[union-attr]
            from_fk=self.from_fk or default_key(self.fk_template, parent.table_name),  # type: ignore[union-attr]
            to_pk=self.to_pk or self.query.pk()[0],
            to_fk=self.to_fk or default_key(self.fk_template, self.query.table()),
        )

    async def fetch(self, rows: list[Row], parent: QueryDescriptor) -> list[Row]:
        participants = self.participants(rows)
        keys = self.resolve_keys(parent)

        from_keys = unique(row.get(keys.from_pk) for row in participants)
        links: list[Row] = []
        if from_keys:
            links = await (
                self.link_query.columns([keys.from_fk, keys.to_fk])
                .where({keys.from_fk: from_keys})
                .load()
            )

        targets: dict[Any, Row] = {}
        if links:
            related = await self.query.where({keys.to_pk: unique(link.get(keys.to_fk) for link in links)}).load()
            targets = key_by(related, keys.to_pk)

        dropped = () if self.include_fks else (keys.from_fk, keys.to_fk)
        links_by_parent = group_by(links, keys.from_fk)
        for row in participants:
            row[self.relation_key] = [
                {**targets[link[keys.to_fk]], **{k: v for k, v in link.items() if k not in dropped}}
                for link in links_by_parent.get(row.get(keys.from_pk), ())
                if link.get(keys.to_fk) in targets
            ]

        logger.debug(
            "HasManyThrough %r on %r via %r: %d links, %d targets",
            self.relation_key,
            parent.table_name,
            self.link_query.table(),
            len(links),
            len(targets),
        )
        return []

    def _extra_columns(self) -> tuple[str, ...]:
        through = self.link_query.descriptor
        if through.writable_columns is not None:
            return through.writable_columns

        return through.columns

    def _writer(self, keys: ThroughKeys) -> Query:
        """Link query whose writes keep both foreign keys next to the extra columns."""
        writable = self.link_query.writable_columns() or ()
        return self.link_query.writable_columns(
            [column for column in (*self._extra_columns(), keys.from_fk, keys.to_fk) if column not in writable]
        )

    def link_row(self, item_a: Row, item_b: Row, keys: ThroughKeys) -> Row:
        """Build the link-table row joining *item_a* (parent) to *item_b* (target)."""
        data = {column: item_b[column] for column in self._extra_columns() if column in item_b}
        data[keys.from_fk] = item_a[keys.from_pk]
        data[keys.to_fk] = item_b[keys.to_pk]
        return data

    async def link(self, item_a: Row, item_b: Row, *, parent: QueryDescriptor | None = None) -> Row:
        keys = self.resolve_keys(parent)
        return await self._writer(keys).post(self.link_row(item_a, item_b, keys))

    async def link_all(self, pairs: Sequence[Pair], *, parent: QueryDescriptor | None = None) -> list[Row]:
        if not pairs:
            return []

        keys = self.resolve_keys(parent)
        return await self._writer(keys).post_all([self.link_row(a, b, keys) for a, b in pairs])

    async def unlink(self, item_a: Row, item_b: Row, *, parent: QueryDescriptor | None = None) -> None:
        await self.unlink_all([(item_a, item_b)], parent=parent)

    async def unlink_all(self, pairs: Sequence[Pair], *, parent: QueryDescriptor | None = None) -> None:
        """Delete the link rows of *pairs*, one statement per distinct parent."""
        if not pairs:
            return

        keys = self.resolve_keys(parent)
        targets_by_parent: dict[Any, list[Any]] = {}
        for item_a, item_b in pairs:
            targets_by_parent.setdefault(item_a[keys.from_pk], []).append(item_b[keys.to_pk])

        await asyncio.gather(*(
            self.link_query.where({keys.from_fk: from_key, keys.to_fk: to_keys}).delete_all()
            for from_key, to_keys in targets_by_parent.items()
        ))

    async def update(self, item_a: Row, item_b: Row, *, parent: QueryDescriptor | None = None) -> None:
        await self.update_all([(item_a, item_b)], parent=parent)

    async def update_all(self, pairs: Sequence[Pair], *, parent: QueryDescriptor | None = None) -> None:
        """Rewrite the extra link-table columns of *pairs*.

        Nothing is written when the link query projects no extra columns.
        """
        if not pairs or not self._extra_columns():
            return

        keys = self.resolve_keys(parent)
        writer = self._writer(keys)
        await asyncio.gather(*(
            writer.where({keys.from_fk: a[keys.from_pk], keys.to_fk: b[keys.to_pk]}).put_all(
                self.link_row(a, b, keys)
            )
            for a, b in pairs
        ))


def get_relation(key: str, activation: Any, descriptor: QueryDescriptor) -> Relation:
    """Look up *key* on the descriptor's registry, narrowed by a nested *activation*.

    Raises:
        UnknownRelation: If the table binding declares no relation *key*.
    """
    try:
        relation = descriptor.relations[key]
    except KeyError:
        raise UnknownRelation(key, descriptor.table_name, descriptor.relations) from None

    if isinstance(activation, frozendict) and activation:
        return relation.with_(activation)

    return relation


async def fetch_relations(rows: list[Row], descriptor: QueryDescriptor) -> None:
    """Resolve every relation activated on *descriptor* onto *rows*, in place.

    Top-level relations run concurrently; rows that a :class:`BelongsTo` or
    :class:`ExtendWith` relation could not match are removed from *rows*
    once all of them have finished.
    """
    if not rows or not descriptor.with_related:
        return

    relations: Iterable[Relation] = [
        get_relation(key, activation, descriptor)
        for key, activation in descriptor.with_related.items()
    ]
    logger.debug(
        "Fetching relations %s of table %r for %d rows",
        list(activation_paths(descriptor.with_related)),
        descriptor.table_name,
        len(rows),
    )
    results = await asyncio.gather(*(relation.fetch(rows, descriptor) for relation in relations))

    dropped = {id(row) for unmatched in results for row in unmatched}
    if dropped:
        rows[:] = [row for row in rows if id(row) not in dropped]
