from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .datastructures import frozendict
from .relations import HasManyThrough
from .tools import Row, composite_key


if TYPE_CHECKING:
    from .builder import Query

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LinkPlan:
    """Partition of a desired link set against the persisted one.

    ``to_update`` carries the *desired* rows, so the link-table columns they
    hold are the ones written back.
    """

    to_unlink: tuple[Row, ...]
    to_link: tuple[Row, ...]
    to_update: tuple[Row, ...]


def plan_links(desired: Sequence[Row], existing: Sequence[Row], key_columns: Sequence[str]) -> LinkPlan:
    """Diff *desired* against *existing* by their composite key over *key_columns*.

    Duplicates in *desired* collapse onto the first occurrence.
    """
    wanted: dict[str, Row] = {}
    for row in desired:
        wanted.setdefault(composite_key(row, key_columns), row)

    current = {composite_key(row, key_columns) for row in existing}

    return LinkPlan(
        to_unlink=tuple(row for row in existing if composite_key(row, key_columns) not in wanted),
        to_link=tuple(row for key, row in wanted.items() if key not in current),
        to_update=tuple(row for key, row in wanted.items() if key in current),
    )


def through_relations(query: Query, data: Mapping[str, Any]) -> dict[str, HasManyThrough]:
    """Activated many-to-many relations of *query* that *data* carries a value for."""
    descriptor = query.descriptor
    out: dict[str, HasManyThrough] = {}
    for key in descriptor.with_related:
        relation = descriptor.relations.get(key)
        if isinstance(relation, HasManyThrough) and data.get(key) is not None:
            out[key] = relation

    return out


async def reconcile_links(query: Query, id_: Any, data: Mapping[str, Any]) -> None:
    """Make the link tables of *query*'s through relations match *data*.

    The parent is re-read by identity alone (any narrowing ``where`` on
    *query* is ignored) with just the relations found in *data* activated.
    For every relation one ``unlink_all``, one ``link_all`` and one
    ``update_all`` batch is issued, all of them concurrently.  This runs after
    the base write; a failure here leaves that write in place.
    """
    relations = through_relations(query, data)
    if not relations:
        return

    descriptor = query.descriptor
    # plain rows: no projection, transforms or raw hooks, only the relations being written
    reader = type(query)(
        descriptor.evolve(
            columns=(),
            transforms=(),
            raw_maps=(),
            with_related=frozendict({key: True for key in relations}),
        ),
        query.store,
    )
    current = await reader.get(id_, omit_where=True)
    if current is None:
        current = dict(zip(descriptor.pk, id_ if isinstance(id_, (list, tuple)) else (id_,)))

    operations = []
    for key, relation in relations.items():
        plan = plan_links(data[key], current.get(key) or (), relation.query.pk())
        logger.debug(
            "Reconciling %r of table %r: %d unlink, %d link, %d update",
            key,
            descriptor.table_name,
            len(plan.to_unlink),
            len(plan.to_link),
            len(plan.to_update),
        )
        operations += [
            relation.unlink_all([(current, row) for row in plan.to_unlink], parent=descriptor),
            relation.link_all([(current, row) for row in plan.to_link], parent=descriptor),
            relation.update_all([(current, row) for row in plan.to_update], parent=descriptor),
        ]

    await asyncio.gather(*operations)
