"""Batched relation loading on top of an immutable query builder.

sqla_batchloads builds queries with ``Store(adapter)("table")`` and chains
immutable refinements (``where``, ``order_by``, ``with_`` ...) onto them.
Relations declared between table queries (``belongs_to``, ``has_many``,
``has_many_through`` ...) are resolved with one batched lookup per relation
instead of one per row, and writes keep many-to-many link tables in sync
with the related lists they carry.
"""

from ._version import __version__, __version_tuple__
from .adapters import MemoryAdapter, SqlAdapter, StorageAdapter
from .builder import DEFAULT_METHODS, Query, Store
from .datastructures import frozendict
from .descriptor import QueryDescriptor
from .errors import (
    BatchloadsError,
    DuplicateKey,
    MissingPayload,
    RegistrySealed,
    UnknownRelation,
    UnsupportedOrderSpec,
)
from .predicate import Custom, Empty, Equals, In, IsNull, Like, Predicate, to_predicate
from .reconcile import LinkPlan, plan_links, reconcile_links
from .registry import RelationRegistry
from .relations import BelongsTo, ExtendWith, HasMany, HasManyThrough, HasOne, Relation, fetch_relations


__all__ = (
    "DEFAULT_METHODS",
    "BatchloadsError",
    "BelongsTo",
    "Custom",
    "DuplicateKey",
    "Empty",
    "Equals",
    "ExtendWith",
    "HasMany",
    "HasManyThrough",
    "HasOne",
    "In",
    "IsNull",
    "Like",
    "LinkPlan",
    "MemoryAdapter",
    "MissingPayload",
    "Predicate",
    "Query",
    "QueryDescriptor",
    "RegistrySealed",
    "Relation",
    "RelationRegistry",
    "SqlAdapter",
    "StorageAdapter",
    "Store",
    "UnknownRelation",
    "UnsupportedOrderSpec",
    "__version__",
    "__version_tuple__",
    "fetch_relations",
    "frozendict",
    "plan_links",
    "reconcile_links",
    "to_predicate",
)
