"""Field mask path helpers.

End devices travel as nested JSON objects together with a field mask: a list
of dotted paths (``ids.dev_eui``, ``root_keys.app_key.key``) naming the fields
a request writes. These helpers read, write and project nested dicts by path.
"""

import copy
from typing import Any, Iterable, Iterator

_MISSING = object()


def get_path(data: dict, path: str, default: Any = None) -> Any:
    """Return the value at a dotted path, or ``default`` when any part is absent."""
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_path(data: dict, path: str, value: Any) -> None:
    """Set the value at a dotted path, creating intermediate objects."""
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def select_paths(data: dict, paths: Iterable[str]) -> dict:
    """Project ``data`` onto ``paths``: a new dict holding only those fields.

    Paths absent from ``data`` are skipped. Values are deep-copied.
    """
    result: dict = {}
    for path in paths:
        value = get_path(data, path, _MISSING)
        if value is not _MISSING:
            set_path(result, path, copy.deepcopy(value))
    return result


def leaf_paths(data: dict, prefix: str = "") -> Iterator[str]:
    """Yield the dotted paths of every leaf in ``data``.

    Nested objects are walked; lists, scalars and empty objects are leaves.
    """
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            yield from leaf_paths(value, path)
        else:
            yield path


def covers(mask: Iterable[str], path: str) -> bool:
    """Check whether ``mask`` includes ``path`` itself or one of its parents."""
    for entry in mask:
        if entry == path or path.startswith(entry + "."):
            return True
    return False
