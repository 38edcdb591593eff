"""
Best-effort field extraction from vendor JSON.

The vendors move fields around between releases (``run.thread_id`` vs
``thread_id`` vs ``thread.thread_id``). Callers declare every acceptable
location for a concept and take the first non-empty one.
"""

import json
from collections.abc import Iterable
from typing import Any

Path = str | tuple[str | int, ...]


def get_path(data: Any, path: Path) -> Any:
    """
    Follow a dotted path (``"video.download_url"``) or a tuple of keys/indexes.

    Returns None as soon as a hop is missing.
    """
    parts: Iterable[str | int] = path.split(".") if isinstance(path, str) else path
    node = data
    for part in parts:
        if isinstance(node, dict):
            node = node.get(part)  # type: ignore[arg-type]
        elif isinstance(node, list) and isinstance(part, int):
            node = node[part] if -len(node) <= part < len(node) else None
        else:
            return None
        if node is None:
            return None
    return node


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def first_present(data: Any, *paths: Path) -> Any:
    """Value at the first path that holds a non-empty value, else None."""
    for path in paths:
        value = get_path(data, path)
        if _is_present(value):
            return value
    return None


def first_string(*candidates: Any) -> str:
    """First candidate that renders to a non-empty string, stripped."""
    for candidate in candidates:
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text:
            return text
    return ""


def find_value_by_keys(data: Any, keys: Iterable[str]) -> str | None:
    """
    Depth-first search for the first non-empty value stored under any of ``keys``.

    Key matching is case-insensitive. Strings that look like embedded JSON
    documents are parsed and searched too, since some responses carry
    JSON-in-a-string payloads.
    """
    wanted = {key.lower() for key in keys}
    seen: set[int] = set()

    def walk(node: Any) -> str | None:
        if node is None:
            return None
        if isinstance(node, str):
            if "{" in node and "}" in node:
                try:
                    return walk(json.loads(node))
                except ValueError:
                    return None
            return None
        if not isinstance(node, (dict, list)):
            return None
        if id(node) in seen:
            return None
        seen.add(id(node))

        if isinstance(node, list):
            for item in node:
                found = walk(item)
                if found:
                    return found
            return None

        for key, value in node.items():
            if str(key).lower() in wanted and value is not None:
                text = str(value).strip()
                if text:
                    return text

        for value in node.values():
            found = walk(value)
            if found:
                return found
        return None

    return walk(data)
