from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from typing import Any, Final, TypeVar


Row = dict[str, Any]
_T = TypeVar("_T")

KEY_SEPARATOR: Final[str] = "|||"
FOREIGN_KEY_TEMPLATE: Final[str] = "{table}Id"
PLURAL_TEMPLATE: Final[str] = "{table}s"


def unique(values: Iterable[_T]) -> list[_T]:
    """Deduplicate *values* keeping first-seen order; ``None`` is dropped."""
    return [v for v in dict.fromkeys(values) if v is not None]


def composite_key(row: Mapping[str, Any], columns: Sequence[str]) -> str:
    """String key of *row* over *columns*, used to compare rows by identity.

    Example:
        >>> composite_key({"a": 1, "b": 2, "c": 3}, ("a", "b"))
        '1|||2'
    """
    return KEY_SEPARATOR.join(str(row.get(column)) for column in columns)


def project(row: Mapping[str, Any], columns: Iterable[str]) -> Row:
    """Pick *columns* out of *row*, silently skipping the missing ones."""
    return {column: row[column] for column in columns if column in row}


def key_by(rows: Iterable[Row], key: str | Callable[[Row], Hashable]) -> dict[Any, Row]:
    """Index *rows* by *key*; the last row wins on duplicates."""
    get = key if callable(key) else (lambda row: row.get(key))
    return {get(row): row for row in rows}


def group_by(rows: Iterable[Row], key: str | Callable[[Row], Hashable]) -> dict[Any, list[Row]]:
    """Group *rows* by *key*, keeping row order inside each group."""
    get = key if callable(key) else (lambda row: row.get(key))
    out: dict[Any, list[Row]] = {}
    for row in rows:
        out.setdefault(get(row), []).append(row)

    return out


def default_key(template: str, table: str) -> str:
    """Render a naming template such as ``"{table}Id"`` for *table*."""
    return template.format(table=table)
