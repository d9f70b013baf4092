from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING

from .datastructures import frozendict
from .errors import RegistrySealed


if TYPE_CHECKING:
    from .relations import Relation

logger = logging.getLogger(__name__)


class RelationRegistry(Mapping[str, "Relation"]):
    """Relations declared on one table binding, keyed by relation key.

    Every descriptor derived from the binding holds this object by reference.
    Setup is two-phase: relations are declared while the registry is open,
    then :meth:`seal` swaps the working dict for a :class:`frozendict`
    snapshot and any further declaration raises :class:`RegistrySealed`.
    A :class:`~sqla_batchloads.builder.Store` seals the registry on the first
    dispatch of a query from this binding, so concurrent readers only ever
    see the snapshot.
    """

    __slots__ = ("_relations", "_sealed", "table_name")

    def __init__(self, table_name: str) -> None:
        self.table_name = table_name
        self._relations: dict[str, Relation] | frozendict[str, Relation] = {}
        self._sealed = False

    def __getitem__(self, key: str) -> Relation:
        return self._relations[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._relations)

    def __len__(self) -> int:
        return len(self._relations)

    def __repr__(self) -> str:
        state = "sealed" if self._sealed else "open"
        return f"<RelationRegistry {self.table_name!r} {state} {list(self._relations)}>"

    @property
    def sealed(self) -> bool:
        return self._sealed

    def add(self, relation: Relation) -> None:
        """Declare *relation*; a later declaration with the same key replaces it."""
        if self._sealed:
            raise RegistrySealed(self.table_name, relation.relation_key)

        assert isinstance(self._relations, dict)
        self._relations[relation.relation_key] = relation
        logger.debug(
            "Declared %s relation %r on table %r",
            type(relation).__name__,
            relation.relation_key,
            self.table_name,
        )

    def seal(self) -> None:
        if self._sealed:
            return

        self._relations = frozendict(self._relations)
        self._sealed = True
        logger.debug("Sealed relations of table %r: %s", self.table_name, list(self._relations))
