"""Dotted-path lookups into phase outputs.

Paths are dot separated; a segment that is a decimal integer indexes into a
list. ``resolve_path`` raises ``KeyError`` when any segment is missing so that
callers can tell "absent" apart from a falsy value.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


def split_path(path: str) -> list[str]:
    return [segment for segment in path.strip().split(".") if segment]


def resolve_path(root: Any, path: str | list[str]) -> Any:
    segments = split_path(path) if isinstance(path, str) else list(path)
    current = root
    walked: list[str] = []
    for segment in segments:
        walked.append(segment)
        if isinstance(current, Mapping):
            if segment not in current:
                raise KeyError(".".join(walked))
            current = current[segment]
            continue
        if isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError) as exc:
                raise KeyError(".".join(walked)) from exc
            continue
        raise KeyError(".".join(walked))
    return current


def select_items(items: Any, where: Mapping[str, Any] | None = None) -> list[Any]:
    if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
        raise TypeError(f"expected a list, got {type(items).__name__}")
    if not where:
        return list(items)
    selected: list[Any] = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        if all(_matches(item.get(key), expected) for key, expected in where.items()):
            selected.append(item)
    return selected


def _matches(value: Any, expected: Any) -> bool:
    if isinstance(expected, str) and isinstance(value, str):
        return value.lower() == expected.lower()
    if isinstance(expected, (list, tuple)):
        return any(_matches(value, option) for option in expected)
    return value == expected
