from __future__ import annotations

import warnings
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Final, Literal, Union

from .datastructures import Activation, frozendict
from .errors import UnsupportedOrderSpec
from .predicate import Equals, Predicate


if TYPE_CHECKING:
    from .registry import RelationRegistry

Operation = Literal["get", "post", "put", "del"]
Direction = Literal["ASC", "DESC"]
Transform = Callable[[Any], Any]
RawMap = Callable[[Any, Any], Any]
CountRequest = Union[str, Literal[True], None]

DEFAULT_PRIMARY_KEY: Final[tuple[str, ...]] = ("id",)
_DIRECTIONS: Final[frozenset[str]] = frozenset({"ASC", "DESC"})


@dataclass(frozen=True, slots=True)
class QueryDescriptor:
    """Immutable description of one intended storage operation.

    Every builder call derives a new descriptor with :meth:`evolve`; the only
    object shared between derived descriptors is :attr:`relations`, the
    sealed registry of the table binding they all come from.
    """

    table_name: str
    relations: RelationRegistry = field(compare=False, repr=False)
    pk: tuple[str, ...] = DEFAULT_PRIMARY_KEY
    where: Predicate = field(default_factory=Predicate)
    columns: tuple[str, ...] = ()
    writable_columns: tuple[str, ...] | None = None
    aliases: frozendict[str, str] = field(default_factory=frozendict)
    order_by: tuple[tuple[str, Direction], ...] = ()
    limit: int | None = None
    offset: int = 0
    operation: Operation = "get"
    returns_collection: bool = True
    payload: Any = None
    with_related: Activation = field(default_factory=frozendict)
    transforms: tuple[Transform, ...] = ()
    raw_maps: tuple[RawMap, ...] = ()
    count: CountRequest = None

    def __post_init__(self) -> None:
        if not self.pk:
            raise ValueError(f"Primary key of table {self.table_name!r} must not be empty")

    def evolve(self, **changes: Any) -> QueryDescriptor:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)

    def where_from_id(self, id_: Any) -> Predicate:
        """Equality predicate on the primary key; *id_* is a scalar or one value per pk column."""
        values = tuple(id_) if isinstance(id_, (list, tuple)) else (id_,)
        if len(values) != len(self.pk):
            raise ValueError(
                f"Table {self.table_name!r} has primary key {list(self.pk)}, "
                f"got {len(values)} value(s): {values!r}"
            )

        return Predicate({column: Equals(column, value) for column, value in zip(self.pk, values)})

    def writable_payload(self, data: Any) -> Any:
        """Project a write payload onto ``pk ∪ (writable_columns or columns)``.

        With neither list configured the payload is kept as is, minus keys
        naming a registered relation (those are never columns).
        """
        if data is None:
            return None

        if isinstance(data, (list, tuple)):
            return [self.writable_payload(item) for item in data]

        allowed = self.writable_columns if self.writable_columns is not None else self.columns
        if allowed or self.writable_columns is not None:
            keep = {*self.pk, *allowed}
            return {k: v for k, v in data.items() if k in keep}

        return {k: v for k, v in data.items() if k not in self.relations}


def parse_order_by(spec: str | Sequence[str]) -> tuple[tuple[str, Direction], ...]:
    """Parse ``"col dir"`` or a list of such strings into ``(column, direction)`` pairs.

    Raises:
        UnsupportedOrderSpec: If *spec* is neither a string nor a list/tuple of strings.
    """
    if isinstance(spec, str):
        return parse_order_by([spec])

    if not isinstance(spec, (list, tuple)) or not all(isinstance(s, str) for s in spec):
        raise UnsupportedOrderSpec(spec)

    out: list[tuple[str, Direction]] = []
    for entry in spec:
        column, _, direction = entry.strip().partition(" ")
        direction = direction.strip().upper() or "ASC"
        if direction not in _DIRECTIONS:
            warnings.warn(
                f"Unknown order direction {direction!r} for column {column!r}. Using ASC.",
                stacklevel=3,
            )
            direction = "ASC"
        out.append((column, direction))  # type: ignore[arg-type]

    return tuple(out)
