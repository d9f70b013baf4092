from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class BatchloadsError(Exception):
    """Base class for every error raised by sqla_batchloads itself.

    Adapter and driver errors (``sqlalchemy.exc.*``, connection failures) are
    never wrapped; they reach the caller of the terminal operation as raised.
    """


class MissingPayload(BatchloadsError, ValueError):
    """``put``/``post`` was called without usable data."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"No data provided for {operation}")


class UnknownRelation(BatchloadsError, LookupError):
    """An activated relation key is not registered on the queried table."""

    def __init__(self, key: str, table: str, known: Iterable[str]) -> None:
        self.key = key
        self.table = table
        self.known = tuple(known)
        super().__init__(
            f"Unknown relation {key!r} for query on table {table!r}, "
            f"possible relations are: {', '.join(repr(k) for k in self.known) or 'none'}"
        )


class UnsupportedOrderSpec(BatchloadsError, TypeError):
    def __init__(self, spec: Any) -> None:
        self.spec = spec
        super().__init__(
            f"order_by expects a 'column [ASC|DESC]' string or a list of them, "
            f"got {type(spec).__name__}"
        )


class RegistrySealed(BatchloadsError, RuntimeError):
    """A relation was declared after the registry was sealed."""

    def __init__(self, table: str, key: str) -> None:
        self.table = table
        self.key = key
        super().__init__(
            f"Cannot declare relation {key!r} on table {table!r}: relations are "
            "sealed once the first query has been dispatched"
        )


class DuplicateKey(BatchloadsError):
    """Raised by :class:`~sqla_batchloads.adapters.MemoryAdapter` on a primary key clash."""

    def __init__(self, table: str, key: tuple[Any, ...]) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Row with key {key!r} already exists in {table!r}")
