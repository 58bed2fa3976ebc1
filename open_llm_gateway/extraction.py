from __future__ import annotations

import json
from typing import Any, Iterable

PATH_SEPARATOR = "|"
SEGMENT_SEPARATOR = "."


def split_path_spec(path_spec: str | None) -> list[str]:
    if not path_spec:
        return []
    return [
        candidate.strip()
        for candidate in path_spec.split(PATH_SEPARATOR)
        if candidate.strip()
    ]


def _walk(data: Any, path: str) -> Any:
    current = data
    for segment in path.split(SEGMENT_SEPARATOR):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
            continue
        if isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
            continue
        return None
    return current


def pick_path(data: Any, path_spec: str | None) -> Any:
    """Return the value at the first path in ``path_spec`` that is present.

    ``path_spec`` holds one or more dot-delimited paths joined with ``|``.
    Paths are tried left to right and a path resolving to ``None`` counts as
    absent. Traversal never raises: a missing key or a non-container
    intermediate value ends that candidate.
    """
    for path in split_path_spec(path_spec):
        value = _walk(data, path)
        if value is not None:
            return value
    return None


def pick_first(data: Any, path_specs: Iterable[str]) -> Any:
    for path_spec in path_specs:
        value = pick_path(data, path_spec)
        if value is not None:
            return value
    return None


def stringify_body(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, sort_keys=False, default=str)


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return stringify_body(value)


def parse_json_body(raw: bytes | str) -> tuple[Any, bool]:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text.strip():
        return text, False
    try:
        return json.loads(text), True
    except ValueError:
        return text, False


def body_text(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw
