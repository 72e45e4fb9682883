"""Helpers for reading values out of fetched records."""

import re
from typing import Any, Dict, Optional, Tuple

_INDEX_RE = re.compile(r"(.+)\[(\d+)\]$")
_GID_RE = re.compile(r"/(\d+)$")


def resolve_path(data: Any, path: str) -> Tuple[bool, Any]:
    """Look up a dot path, returning ``(found, value)``.

    A literal key equal to the whole path wins (flattened records carry keys
    like ``product.id``). Array notation like ``images[0]`` is supported.
    """
    if not isinstance(data, dict) or not path:
        return False, None
    if path in data:
        return True, data[path]

    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return False, None
        match = _INDEX_RE.match(part)
        if match:
            key, index = match.groups()
            items = value.get(key)
            if not isinstance(items, list) or int(index) >= len(items):
                return False, None
            value = items[int(index)]
        elif part in value:
            value = value[part]
        else:
            return False, None
    return True, value


def get_nested_value(data: Optional[Dict[str, Any]], path: str) -> Any:
    """Get value from a record using dot notation; None when absent."""
    return resolve_path(data, path)[1]


def set_nested_value(data: Dict[str, Any], path: str, value: Any) -> None:
    """Set value in nested dictionary using dot notation."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def flatten_record(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested dicts into dot-path keys; lists are kept as values."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten_record(value, path))
        else:
            flat[path] = value
    return flat


def extract_gid_id(value: Any) -> Optional[str]:
    """Numeric tail of ``gid://shopify/Product/123`` style ids."""
    if value is None:
        return None
    match = _GID_RE.search(str(value))
    return match.group(1) if match else None
