"""Dot-notation path helpers shared by the mapping engine and transforms.

``billing.email`` walks nested dicts; a numeric segment indexes a list
(``line_items.0.sku``). A trailing ``[]`` marks an array field and is
stripped before walking.
"""

from __future__ import annotations

from typing import Any

ARRAY_MARKER = "[]"


def split_path(path: str) -> list[str]:
    if path.endswith(ARRAY_MARKER):
        path = path[: -len(ARRAY_MARKER)]
    return [segment for segment in path.split(".") if segment]


def get_path(data: Any, path: str) -> Any:
    """Return the value at ``path`` or None when any segment is missing."""
    segments = split_path(path)
    if not segments:
        return None
    current = data
    for segment in segments:
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def set_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Assign ``value`` at ``path``, creating intermediate dicts."""
    segments = split_path(path)
    if not segments:
        raise ValueError("empty target path")
    current = target
    for segment in segments[:-1]:
        nxt = current.get(segment)
        if not isinstance(nxt, dict):
            nxt = {}
            current[segment] = nxt
        current = nxt
    current[segments[-1]] = value


def project(data: dict[str, Any], template: dict[str, Any]) -> dict[str, Any]:
    """Restrict ``data`` to the key structure of ``template``.

    Used to compare a remote copy against the payload last written to it,
    ignoring fields the target adds on its own (ids, sync tokens, ...).
    """
    result: dict[str, Any] = {}
    for key, template_value in template.items():
        if key not in data:
            continue
        value = data[key]
        if isinstance(template_value, dict) and isinstance(value, dict):
            result[key] = project(value, template_value)
        elif (
            isinstance(template_value, list)
            and isinstance(value, list)
            and len(template_value) == len(value)
            and all(isinstance(t, dict) and isinstance(v, dict) for t, v in zip(template_value, value))
        ):
            result[key] = [project(v, t) for t, v in zip(template_value, value)]
        else:
            result[key] = value
    return result
