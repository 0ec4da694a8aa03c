"""
Invoice Hub - Path Resolver

Reads and writes values at dot-separated paths inside nested dict/list
structures. Used by the mapping engine to pull values out of an invoice
context and to assemble outbound payloads.

    get_path({"client": {"name": "Ana"}}, "client.name")  -> "Ana"
    get_path({"items": [{"qty": 2}]}, "items.0.qty")       -> 2
    get_path({}, "client.name")                             -> MISSING

Missing keys never raise; callers compare against the MISSING sentinel.
"""

from typing import Any, Dict, List


class _Missing:
    """Sentinel type for a path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def split_path(path: str) -> List[str]:
    """Split a dotted path into segments, ignoring empty ones."""
    if not isinstance(path, str):
        return []
    return [segment for segment in path.strip().split(".") if segment]


def get_path(context: Any, path: str) -> Any:
    """
    Resolve a dotted path against a nested structure.

    Returns MISSING if the path is empty or any segment is absent.
    Numeric segments index into lists.
    """
    segments = split_path(path)
    if not segments:
        return MISSING

    current = context
    for segment in segments:
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                index = int(segment)
            except ValueError:
                return MISSING
            if index < -len(current) or index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def has_path(context: Any, path: str) -> bool:
    return get_path(context, path) is not MISSING


def set_path(target: Dict[str, Any], path: str, value: Any) -> Dict[str, Any]:
    """
    Assign value at a dotted path, creating intermediate dicts as needed.

    An intermediate that exists but is not a dict is replaced (last write wins).
    Returns the target for chaining.
    """
    segments = split_path(path)
    if not segments:
        return target

    current = target
    for segment in segments[:-1]:
        child = current.get(segment)
        if not isinstance(child, dict):
            child = {}
            current[segment] = child
        current = child
    current[segments[-1]] = value
    return target
