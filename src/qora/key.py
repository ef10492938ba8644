"""Query key normalization.

Keys are ordered sequences of JSON-like parts (scalars, nested sequences,
string-keyed maps). normalize_key() turns any accepted representation into
an immutable QueryKey with deep structural equality:

- sequences compare in order
- maps compare by key, regardless of insertion order
- scalars compare by type and value (True != 1, 1 != 1.0)
- anything unhashable degrades to identity for that element only
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

from qora.types import RawKey


class FrozenMap(Mapping[Any, Any]):
    """Immutable, hashable mapping used for map parts of a key."""

    __slots__ = ("_hash", "_items")

    def __init__(self, items: Mapping[Any, Any]) -> None:
        # Stable iteration order so equal maps render identically.
        self._items = dict(sorted(items.items(), key=lambda kv: repr(kv[0])))
        self._hash = _deep_hash(self)

    def __getitem__(self, key: Any) -> Any:
        return self._items[key]

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        return _deep_equals(self, other)

    def __hash__(self) -> int:
        return self._hash

    def __repr__(self) -> str:
        return f"FrozenMap({self._items!r})"


class QueryKey:
    """A normalized, immutable, deeply comparable cache key."""

    __slots__ = ("_hash", "_parts")

    def __init__(self, parts: Sequence[Any] = ()) -> None:
        if isinstance(parts, (str, bytes)) or not isinstance(parts, Sequence):
            raise TypeError(
                f"Key parts must be a list or tuple, got {type(parts).__name__}"
            )
        self._parts: tuple[Any, ...] = tuple(_freeze(p) for p in parts)
        self._hash = _deep_hash(self._parts)

    @classmethod
    def of(cls, *parts: Any) -> QueryKey:
        """QueryKey.of("users", 1) -> ["users", 1]"""
        return cls(parts)

    @classmethod
    def with_id(cls, entity: str, id: Any) -> QueryKey:
        return cls((entity, id))

    @classmethod
    def with_filter(cls, entity: str, filters: Mapping[str, Any]) -> QueryKey:
        return cls((entity, filters))

    @property
    def parts(self) -> tuple[Any, ...]:
        return self._parts

    def starts_with(self, prefix: RawKey) -> bool:
        """Check if prefix is a leading slice of this key (for invalidation)."""
        other = normalize_key(prefix)
        if len(other) > len(self):
            return False
        return all(
            _deep_equals(a, b) for a, b in zip(self._parts, other._parts, strict=False)
        )

    def to_list(self) -> list[Any]:
        """Mutable deep copy of the key as plain lists and dicts."""
        return [_thaw(p) for p in self._parts]

    def __iter__(self) -> Iterator[Any]:
        return iter(self._parts)

    def __len__(self) -> int:
        return len(self._parts)

    def __getitem__(self, index: int) -> Any:
        return self._parts[index]

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, QueryKey):
            return NotImplemented
        return self._hash == other._hash and _deep_equals(self._parts, other._parts)

    def __hash__(self) -> int:
        return self._hash

    def __repr__(self) -> str:
        return f"QueryKey({self.to_list()!r})"

    def __str__(self) -> str:
        return json.dumps(self.to_list(), default=repr)


def normalize_key(key: RawKey) -> QueryKey:
    """Normalize a QueryKey, list or tuple into a QueryKey.

    Raises TypeError for anything else, including None and bare strings.
    """
    if isinstance(key, QueryKey):
        return key
    if isinstance(key, (list, tuple)):
        return QueryKey(key)
    raise TypeError(
        f"Key must be a QueryKey, list or tuple, got {type(key).__name__}"
    )


def equals_key(a: RawKey, b: RawKey) -> bool:
    """Deep structural equality between two keys in any accepted form."""
    return normalize_key(a) == normalize_key(b)


def hash_key(key: RawKey) -> int:
    """Deep hash consistent with equals_key."""
    return hash(normalize_key(key))


# -----------------------------------------------------------------------------
# Internal helpers
# -----------------------------------------------------------------------------


def _freeze(value: Any) -> Any:
    if isinstance(value, QueryKey):
        return value.parts
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, FrozenMap):
        return value
    if isinstance(value, Mapping):
        return FrozenMap({_freeze(k): _freeze(v) for k, v in value.items()})
    if isinstance(value, (set, frozenset)):
        return frozenset(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    if isinstance(value, FrozenMap):
        return {_thaw(k): _thaw(v) for k, v in value.items()}
    return value


def _is_hashable(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return True


def _deep_equals(a: Any, b: Any) -> bool:
    if a is b:
        return True
    if type(a) is not type(b):
        return False

    if isinstance(a, tuple):
        if len(a) != len(b):
            return False
        return all(_deep_equals(x, y) for x, y in zip(a, b, strict=True))

    if isinstance(a, FrozenMap):
        if len(a) != len(b):
            return False
        for k, v in a.items():
            if k not in b:
                return False
            if not _deep_equals(v, b[k]):
                return False
        return True

    if not _is_hashable(a):
        # No structural identity available: reference equality only.
        return False
    return bool(a == b)


def _deep_hash(value: Any) -> int:
    if isinstance(value, tuple):
        return hash(("seq", *(_deep_hash(v) for v in value)))
    if isinstance(value, FrozenMap):
        return hash(
            ("map", frozenset((_deep_hash(k), _deep_hash(v)) for k, v in value._items.items()))
        )
    try:
        return hash(value)
    except TypeError:
        return id(value)


__all__ = [
    "FrozenMap",
    "QueryKey",
    "equals_key",
    "hash_key",
    "normalize_key",
]
