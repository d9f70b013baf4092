from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from ..descriptor import QueryDescriptor
    from ..tools import Row


class StorageAdapter(ABC):
    """
    Interface the query builder dispatches terminal operations to.

    Every method receives the immutable descriptor of the operation. Writes
    find their (already projected) data in ``descriptor.payload``. Errors are
    raised as the backend raises them; the builder never catches them.
    """

    @abstractmethod
    async def get(self, descriptor: QueryDescriptor) -> Any:
        """
        Read rows matching ``descriptor.where``.

        Returns:
            The number of rows in count mode (``descriptor.count`` set), the
            list of rows for collection reads, otherwise the first row or None.
        """
        ...

    @abstractmethod
    async def post(self, descriptor: QueryDescriptor) -> Row | list[Row]:
        """Insert the payload; returns the inserted row(s) with generated primary keys."""
        ...

    @abstractmethod
    async def put(self, descriptor: QueryDescriptor) -> None:
        """Apply the payload to every row matching ``descriptor.where``."""
        ...

    @abstractmethod
    async def delete(self, descriptor: QueryDescriptor) -> None:
        """Remove every row matching ``descriptor.where``."""
        ...
