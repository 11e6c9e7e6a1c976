"""
Path accessors over untyped custom-resource attribute trees.

Custom resources come back from the cluster as nested dicts, lists and
scalars. The helpers here walk a path of keys (str) and list indexes (int)
and return a default instead of raising when any step is missing or has the
wrong shape.
"""

from datetime import datetime
from typing import Any, Optional, Union

PathKey = Union[str, int]

_MISSING = object()


def nested_get(obj: Any, *path: PathKey, default: Any = None) -> Any:
    """Return the value at ``path`` or ``default`` if any step is absent."""
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return default
            current = current[key]
        else:
            if not isinstance(current, dict):
                return default
            current = current.get(key, _MISSING)
            if current is _MISSING:
                return default
    return current


def nested_str(obj: Any, *path: PathKey, default: str = "") -> str:
    value = nested_get(obj, *path)
    return value if isinstance(value, str) else default


def nested_int(obj: Any, *path: PathKey, default: int = 0) -> int:
    value = nested_get(obj, *path)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    return default


def nested_bool(obj: Any, *path: PathKey, default: bool = False) -> bool:
    value = nested_get(obj, *path)
    return value if isinstance(value, bool) else default


def nested_list(obj: Any, *path: PathKey) -> list:
    value = nested_get(obj, *path)
    return value if isinstance(value, list) else []


def nested_map(obj: Any, *path: PathKey) -> dict:
    value = nested_get(obj, *path)
    return value if isinstance(value, dict) else {}


def set_nested(obj: dict, value: Any, *path: str) -> None:
    """Set ``value`` at ``path``, creating intermediate dicts as needed."""
    if not path:
        raise ValueError("path must not be empty")
    current = obj
    for key in path[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[path[-1]] = value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as written by the API server."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
