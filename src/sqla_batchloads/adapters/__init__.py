from .base import StorageAdapter
from .memory import MemoryAdapter
from .sql import SqlAdapter


__all__ = (
    "MemoryAdapter",
    "SqlAdapter",
    "StorageAdapter",
)
