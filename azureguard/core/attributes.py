"""Safe access to dynamically shaped attribute bags.

Attribute values are a recursive variant of scalar | list | mapping. Terraform
renders nested blocks either as a mapping or as a list of mappings, so path
lookup descends into the first element of a block list when the next path
segment is not an index.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any


class _Absent:
    """Marker for a path that does not exist in the attribute bag."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Any = _Absent()


def is_absent(value: Any) -> bool:
    """True for a missing path and for an explicit null."""
    return value is ABSENT or value is None


def get_path(attrs: Any, path: str) -> Any:
    """Look up a dot-separated *path*; return ABSENT when any segment is missing."""
    value = attrs
    for part in path.split("."):
        if isinstance(value, Mapping):
            if part not in value:
                return ABSENT
            value = value[part]
        elif isinstance(value, list):
            if part.isdigit():
                idx = int(part)
                if idx >= len(value):
                    return ABSENT
                value = value[idx]
            elif value and isinstance(value[0], Mapping) and part in value[0]:
                value = value[0][part]
            else:
                return ABSENT
        else:
            return ABSENT
    return value


def as_list(value: Any) -> list[Any]:
    if is_absent(value):
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def as_str_list(value: Any) -> list[str]:
    return [str(v) for v in as_list(value) if not is_absent(v)]


def blocks(value: Any) -> list[Mapping[str, Any]]:
    """Normalize a nested block in scalar or list form to a list of mappings."""
    return [v for v in as_list(value) if isinstance(v, Mapping)]


def first_block(value: Any) -> Mapping[str, Any] | None:
    found = blocks(value)
    return found[0] if found else None


def text(value: Any) -> str | None:
    """Return *value* if it is a non-empty string, else None."""
    if isinstance(value, str) and value:
        return value
    return None


def truthy(value: Any) -> bool:
    """Presence test matching a JavaScript-style truthiness check on a block."""
    if is_absent(value):
        return False
    if isinstance(value, list | dict | str):
        return len(value) > 0
    return bool(value)


def iter_strings(value: Any, prefix: str = "") -> Iterator[tuple[str, str]]:
    """Yield (path, string) for every string leaf under *value*."""
    if isinstance(value, str):
        yield prefix, value
    elif isinstance(value, Mapping):
        for k in sorted(value, key=str):
            child = f"{prefix}.{k}" if prefix else str(k)
            yield from iter_strings(value[k], child)
    elif isinstance(value, list):
        for i, item in enumerate(value):
            child = f"{prefix}.{i}" if prefix else str(i)
            yield from iter_strings(item, child)


def to_int(value: Any, default: int | None = None) -> int | None:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default
