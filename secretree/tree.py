"""The ordered key/value tree that holds a document's cleartext structure.

A branch is an ordered list of items; values are scalars, nested branches,
plain lists or comments. Keys are strings, or comments for formats that
keep them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

__all__ = [
    "Comment",
    "TreeItem",
    "TreeBranch",
    "KeyNotFoundError",
    "equals",
    "to_bytes",
    "emit_as_map",
]

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Comment:
    """A comment kept in the tree for formats that support comments."""

    value: str


@dataclass
class TreeItem:
    """One key/value pair of a branch."""

    key: Any
    value: Any = None


class KeyNotFoundError(LookupError):
    """A path component named a key or index that the tree does not have."""

    def __init__(self, key: Any, msg: str) -> None:
        self.key = key
        self.msg = msg
        super().__init__(msg % (key,))

    def __str__(self) -> str:
        return self.msg % (self.key,)


def _is_index(component: Any) -> bool:
    return isinstance(component, int) and not isinstance(component, bool)


def _same(one: Any, other: Any) -> bool:
    return type(one) is type(other) and one == other


def equals(one: Any, other: Any) -> bool:
    """Compare two tree values structurally, including item order."""
    if isinstance(one, TreeBranch):
        if not isinstance(other, TreeBranch) or len(one) != len(other):
            return False
        return all(
            equals(a.key, b.key) and equals(a.value, b.value)
            for a, b in zip(one, other)
        )
    if isinstance(one, list):
        if not isinstance(other, list) or isinstance(other, TreeBranch):
            return False
        if len(one) != len(other):
            return False
        return all(equals(a, b) for a, b in zip(one, other))
    if isinstance(one, Comment):
        return isinstance(other, Comment) and one.value == other.value
    return _same(one, other)


def _value_from_path_and_leaf(path: Sequence[Any], leaf: Any) -> Any:
    component = path[0]
    child = leaf if len(path) == 1 else _value_from_path_and_leaf(path[1:], leaf)
    if _is_index(component):
        return [child]
    return TreeBranch([TreeItem(component, child)])


def _set(branch: Any, path: Sequence[Any], value: Any) -> tuple[Any, bool]:
    if isinstance(branch, TreeBranch):
        for item in branch:
            if _same(item.key, path[0]):
                if len(path) == 1:
                    changed = not equals(item.value, value)
                    item.value = value
                else:
                    item.value, changed = _set(item.value, path[1:], value)
                return branch, changed
        new_value = _value_from_path_and_leaf(path, value)
        if isinstance(new_value, TreeBranch) and new_value:
            branch.append(new_value[0])
        return branch, True
    if isinstance(branch, list):
        position = path[0]
        if not _is_index(position):
            raise TypeError(f"path component {position!r} is not a list index")
        if position < 0:
            raise IndexError(f"index {position} is negative")
        if len(path) == 1:
            if position >= len(branch):
                branch.append(value)
                return branch, True
            changed = not equals(branch[position], value)
            branch[position] = value
            return branch, changed
        if position >= len(branch):
            branch.append(_value_from_path_and_leaf(path[1:], value))
            return branch, True
        branch[position], changed = _set(branch[position], path[1:], value)
        return branch, changed
    new_value = _value_from_path_and_leaf(path, value)
    return new_value, not equals(branch, new_value)


def _unset(branch: Any, path: Sequence[Any]) -> Any:
    if isinstance(branch, TreeBranch):
        for index, item in enumerate(branch):
            if _same(item.key, path[0]):
                if len(path) == 1:
                    del branch[index]
                else:
                    item.value = _unset(item.value, path[1:])
                return branch
        raise KeyNotFoundError(path[0], "Key not found: %s")
    if isinstance(branch, list):
        position = path[0]
        if not _is_index(position):
            raise TypeError(f"path component {position!r} is not a list index")
        if position < 0 or position >= len(branch):
            raise KeyNotFoundError(position, "Index %d out of bounds")
        if len(path) == 1:
            del branch[position]
        else:
            branch[position] = _unset(branch[position], path[1:])
        return branch
    raise TypeError(f"Unsupported type: {type(branch).__name__} for item '{path[0]}'")


class TreeBranch(list):
    """An ordered list of TreeItems."""

    def __repr__(self) -> str:
        return f"TreeBranch({list.__repr__(self)})"

    def equals(self, other: Any) -> bool:
        """Compare this branch with another one, structurally."""
        return equals(self, other)

    def set(self, path: Sequence[Any], value: Any) -> tuple["TreeBranch", bool]:
        """Set the value at path, creating missing levels.

        Returns the branch and whether anything changed.
        """
        result, changed = _set(self, list(path), value)
        return result, changed

    def unset(self, path: Sequence[Any]) -> "TreeBranch":
        """Remove the value at path; raises KeyNotFoundError if it is absent."""
        return _unset(self, list(path))

    def truncate(self, path: Sequence[Any]) -> Any:
        """Return the part of the tree found at path."""
        _log.info("Truncating tree at path %r", list(path))
        current: Any = self
        for component in path:
            if isinstance(component, str):
                if not isinstance(current, TreeBranch):
                    raise TypeError(
                        f"component ['{component}'] is a key, but tree part is not a branch"
                    )
                for item in current:
                    if _same(item.key, component):
                        current = item.value
                        break
                else:
                    raise KeyNotFoundError(component, "component ['%s'] not found")
            elif _is_index(component):
                if not isinstance(current, (list, tuple)):
                    raise TypeError(
                        f"component [{component}] is integer, but tree part is not a slice"
                    )
                if component < 0 or len(current) <= component:
                    raise IndexError(f"component [{component}] accesses out of bounds")
                current = current[component]
        return current


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return format(Decimal(repr(value)).normalize(), "f")


def _format_time(value: datetime) -> str:
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if offset is None or not offset:
        return text + "Z"
    seconds = int(offset.total_seconds())
    sign = "+" if seconds >= 0 else "-"
    hours, minutes = divmod(abs(seconds) // 60, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def to_bytes(value: Any) -> bytes:
    """Return the byte form of a leaf value, as used for the MAC."""
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, bool):
        return b"True" if value else b"False"
    if isinstance(value, int):
        return str(value).encode("ascii")
    if isinstance(value, float):
        return _format_float(value).encode("ascii")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, datetime):
        return _format_time(value).encode("ascii")
    if isinstance(value, Comment):
        return to_bytes(value.value)
    raise TypeError(f"Could not convert unknown type {type(value).__name__} to bytes")


def _encode_value_for_map(value: Any) -> Any:
    if isinstance(value, TreeBranch):
        return emit_as_map([value])
    return value


def emit_as_map(branches: Iterable[TreeBranch]) -> dict[str, Any]:
    """Merge the branches into one dict, dropping comments."""
    data: dict[str, Any] = {}
    for branch in branches:
        for item in branch:
            if isinstance(item.key, Comment):
                continue
            if not isinstance(item.key, str):
                raise TypeError(f"non-string key {item.key!r} cannot be emitted as a map key")
            data[item.key] = _encode_value_for_map(item.value)
    return data


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)