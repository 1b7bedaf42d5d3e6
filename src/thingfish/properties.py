"""
Resource Properties
===================

Property names reserved for the storage layer and helpers for working with
property values.

A property value is either a single scalar or a list of values. Lists are
produced explicitly by :func:`append_value`; nothing collapses or expands
values implicitly.

Usage:
    from thingfish.properties import append_value, strip_operational

    append_value("blue", "green")          # -> ["blue", "green"]
    append_value(["blue", "green"], "red")  # -> ["blue", "green", "red"]

    strip_operational({"title": "x", "checksum": "abc"})  # -> {"title": "x"}
"""

from typing import Any, Dict, Iterable, Mapping

#: Keys set by the store from request context, never from caller metadata
OPERATIONAL_METADATA_KEYS = frozenset(
    [
        "format",
        "extent",
        "checksum",
        "created",
        "modified",
        "useragent",
        "uploadaddress",
    ]
)

#: Keys a related resource must carry
REQUIRED_RELATED_METADATA_KEYS = frozenset(["relationship"])

RELATION_KEY = "relation"


def is_operational(key: str) -> bool:
    return key in OPERATIONAL_METADATA_KEYS


def strip_operational(properties: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``properties`` without any operational keys."""
    return {key: value for key, value in properties.items() if not is_operational(key)}


def is_multi(value: Any) -> bool:
    return isinstance(value, list)


def as_values(value: Any) -> list:
    """View a property value as a list of its individual values."""
    if value is None:
        return []
    if is_multi(value):
        return list(value)
    return [value]


def append_value(existing: Any, new: Any) -> Any:
    """
    Add ``new`` to a property value.

    An unset value becomes ``new``; a single value is upgraded to a
    two-element list; a list is extended. Appending a list appends each of
    its members.
    """
    if existing is None:
        return list(new) if is_multi(new) else new
    return as_values(existing) + as_values(new)


def merge_appending(
    current: Mapping[str, Any], additions: Mapping[str, Any]
) -> Dict[str, Any]:
    """Return ``current`` with every value in ``additions`` appended."""
    merged = dict(current)
    for key, value in additions.items():
        merged[key] = append_value(merged.get(key), value)
    return merged


def copy_properties(properties: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy a property map so that list values are not shared."""
    return {
        key: list(value) if is_multi(value) else value
        for key, value in properties.items()
    }


def select_keys(properties: Mapping[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    """Return the subset of ``properties`` named by ``keys``, skipping absent ones."""
    return {key: properties[key] for key in keys if key in properties}
