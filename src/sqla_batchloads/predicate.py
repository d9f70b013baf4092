"""Filter conditions as a small tagged AST.

A :class:`Predicate` is a conjunction of per-column conditions keyed by
column name. Merging two predicates overrides by key, which is what makes
``query.where({"a": 1}).where({"a": 2})`` mean ``a = 2`` while
``query.where({"a": 1}).where({"b": 2})`` means ``a = 1 AND b = 2``.

Adapters translate the conditions into their native form; nothing in here
knows about SQL.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Union

from .datastructures import frozendict


@dataclass(frozen=True, slots=True)
class Equals:
    column: str
    value: Any


@dataclass(frozen=True, slots=True)
class IsNull:
    column: str


@dataclass(frozen=True, slots=True)
class In:
    column: str
    values: tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class Empty:
    """Matches nothing. Produced for an ``In`` over an empty set."""

    column: str


@dataclass(frozen=True, slots=True)
class Like:
    """Case-insensitive *contains* match on the textual value of ``column``."""

    column: str
    pattern: str


@dataclass(frozen=True, slots=True)
class Custom:
    """Arbitrary test built by ``fn``.

    The SQL adapter calls ``fn`` with the column expression and expects a
    boolean clause back, the memory adapter calls it with the stored value.
    Operators both sides understand (``lambda c: c > 3``) work everywhere.
    """

    column: str
    fn: Callable[[Any], Any]


Condition = Union[Equals, IsNull, In, Empty, Like, Custom]
CONDITION_TYPES = (Equals, IsNull, In, Empty, Like, Custom)


class Predicate(Mapping[str, Condition]):
    """Conjunction of conditions keyed by column. Empty matches every row."""

    __slots__ = ("_conditions",)

    def __init__(self, conditions: Mapping[str, Condition] | None = None) -> None:
        self._conditions: frozendict[str, Condition] = frozendict(conditions or {})

    def __getitem__(self, column: str) -> Condition:
        return self._conditions[column]

    def __iter__(self) -> Iterator[str]:
        return iter(self._conditions)

    def __len__(self) -> int:
        return len(self._conditions)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Predicate):
            return self._conditions == other._conditions

        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._conditions)

    def __repr__(self) -> str:
        inner = ", ".join(repr(c) for c in self._conditions.values())
        return f"Predicate({inner})"

    def __and__(self, other: Predicate) -> Predicate:
        return self.merge(other)

    def merge(self, other: Mapping[str, Condition]) -> Predicate:
        """Return a new predicate; conditions of *other* override by column."""
        return Predicate(self._conditions.merge(other))

    def without(self, *columns: str) -> Predicate:
        return Predicate(self._conditions.without(*columns))

    def is_empty_set(self) -> bool:
        """Whether some condition can never match (an empty ``In``)."""
        return any(isinstance(c, Empty) for c in self._conditions.values())


def condition_for(column: str, value: Any, *, like: bool = False) -> Condition:
    """Build the condition a plain ``where`` mapping value stands for.

    ``None`` tests for null, a list/tuple/set is a membership test (empty ->
    :class:`Empty`), a mapping with a ``"like"`` field is a pattern match and
    anything else is an equality. With ``like=True`` strings become patterns.
    """
    if isinstance(value, CONDITION_TYPES):
        return dataclasses.replace(value, column=column)

    if value is None:
        return IsNull(column)

    if isinstance(value, (list, tuple, set, frozenset)):
        values = tuple(dict.fromkeys(value))
        return In(column, values) if values else Empty(column)

    if isinstance(value, Mapping) and "like" in value:
        return Like(column, str(value["like"]))

    if like and isinstance(value, str):
        return Like(column, value)

    return Equals(column, value)


def to_predicate(
    where: Mapping[str, Any] | None,
    aliases: Mapping[str, str] | None = None,
    *,
    like: bool = False,
) -> Predicate:
    """Coerce a plain mapping into a :class:`Predicate`.

    Keys are resolved through *aliases* first, so callers can filter on a
    public name that maps onto a differently named column.
    """
    if where is None:
        return Predicate()

    if isinstance(where, Predicate):
        return where

    aliases = aliases or {}
    conditions: dict[str, Condition] = {}
    for key, value in where.items():
        column = aliases.get(key, key)
        conditions[column] = condition_for(column, value, like=like)

    return Predicate(conditions)
