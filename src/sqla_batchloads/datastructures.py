from __future__ import annotations

import sys
from collections.abc import Iterable, Iterator, Mapping
from typing import Any, Literal, TypeVar, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")

PATH_SEPARATOR = ":"
WILDCARD = "*"


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for every structure a :class:`~sqla_batchloads.descriptor.QueryDescriptor`
    carries by value (predicates, alias tables, relation activation trees) and
    for sealed relation registries, so that deriving a new descriptor can never
    leak a change into an older one.

    The hash is computed on first use, which lets a frozendict hold values
    that are themselves unhashable as long as nobody hashes it.

    Example:
        >>> fd = frozendict({"a": 1, "b": 2})
        >>> fd["a"]
        1
        >>> fd.copy(c=3)
        <frozendict {'a': 1, 'b': 2, 'c': 3}>
        >>> fd.without("a")
        <frozendict {'b': 2}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Create a new frozendict with additional or replaced items.

        Args:
            **add_or_replace: Keyword arguments for items to add or replace.

        Returns:
            New frozendict instance with the merged items.
        """
        return type(self)(self, **add_or_replace)

    def merge(self, other: Mapping[K, V]) -> Self:
        """Return a new frozendict where keys of *other* override keys of ``self``."""
        return type(self)({**self._dict, **other})

    def without(self, *keys: K) -> Self:
        """Return a new frozendict without *keys* (missing keys are ignored)."""
        return type(self)({k: v for k, v in self._dict.items() if k not in keys})

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


# Relation activation trees: relation key -> True (leaf) or a nested tree.
Activation = frozendict[str, Union[Literal[True], "Activation"]]


def parse_path(path: str) -> tuple[str, ...]:
    """Split an ``"a:b:c"`` activation path into its segments."""
    segments = tuple(segment.strip() for segment in path.split(PATH_SEPARATOR))
    if not all(segments):
        raise ValueError(f"Invalid relation path {path!r}")

    return segments


def _set_in(tree: Activation, segments: tuple[str, ...]) -> Activation:
    head, *rest = segments
    if not rest:
        # an already nested subtree stays as it is
        return tree if head in tree else tree.copy(**{head: True})

    current = tree.get(head)
    subtree: Activation = current if isinstance(current, frozendict) else frozendict()

    return tree.copy(**{head: _set_in(subtree, tuple(rest))})


def _unset_in(tree: Activation, segments: tuple[str, ...]) -> Activation:
    head, *rest = segments
    if head not in tree:
        return tree

    if not rest:
        return tree.without(head)

    current = tree[head]
    if not isinstance(current, frozendict):
        return tree

    subtree = _unset_in(current, tuple(rest))

    return tree.copy(**{head: subtree if subtree else True})


def to_activation(tree: Mapping[str, Any]) -> Activation:
    """Convert a (possibly nested, mutable) mapping into an activation tree.

    Falsy values deactivate their key, nested mappings become subtrees and
    any other truthy value activates the key as a leaf.
    """
    out: dict[str, Any] = {}
    for key, value in tree.items():
        if isinstance(value, Mapping):
            out[key] = to_activation(value) if value else True
        elif value:
            out[key] = True

    return frozendict(out)


def activate(tree: Activation, paths: Iterable[str | Mapping[str, Any]]) -> Activation:
    """Return *tree* with every path in *paths* activated."""
    for path in paths:
        if isinstance(path, str):
            tree = _set_in(tree, parse_path(path))
        elif isinstance(path, Mapping):
            for leaf in activation_paths(to_activation(path)):
                tree = _set_in(tree, parse_path(leaf))
        else:
            raise TypeError(
                f"Relation paths must be strings or mappings, got {type(path).__name__}"
            )

    return tree


def deactivate(tree: Activation, paths: Iterable[str]) -> Activation:
    """Return *tree* with every path in *paths* removed; ``"*"`` clears everything."""
    for path in paths:
        if path == WILDCARD:
            tree = frozendict()
            continue
        tree = _unset_in(tree, parse_path(path))

    return tree


def activation_paths(tree: Activation, prefix: str = "") -> tuple[str, ...]:
    """Flatten *tree* into ``"a:b"`` leaf paths, mostly for logging."""
    out: list[str] = []
    for key, value in tree.items():
        path = f"{prefix}{PATH_SEPARATOR}{key}" if prefix else key
        if isinstance(value, frozendict):
            out.extend(activation_paths(value, path))
        else:
            out.append(path)

    return tuple(out)
