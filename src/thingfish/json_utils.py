"""
High-Performance JSON Utilities
===============================

Provides JSON serialization using orjson, plus a typed encoding for
property values so that timestamps survive a round trip through stores
that persist values as text.

orjson renders datetimes as ISO-8601 strings; ``encode_value`` tags them so
``decode_value`` can restore the original ``datetime``.
"""

from datetime import datetime
from typing import Any, Union

import orjson


DATETIME_TAG = "__datetime__"


def dumps(obj: Any, sort_keys: bool = False, default: Any = None) -> str:
    """
    Serialize object to JSON string using orjson.

    Args:
        obj: Object to serialize
        sort_keys: Whether to sort dictionary keys (for consistent output)
        default: Function to handle non-serializable objects

    Returns:
        JSON string
    """
    option = 0
    if sort_keys:
        option |= orjson.OPT_SORT_KEYS

    # orjson returns bytes, decode to string for text columns
    return orjson.dumps(obj, option=option, default=default).decode("utf-8")


def loads(s: Union[str, bytes]) -> Any:
    """
    Deserialize JSON string using orjson.

    Args:
        s: JSON string or bytes to deserialize

    Returns:
        Deserialized object
    """
    return orjson.loads(s)


def _tag(value: Any) -> Any:
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, (list, tuple)):
        return [_tag(item) for item in value]
    return value


def _untag(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {DATETIME_TAG}:
        return datetime.fromisoformat(value[DATETIME_TAG])
    if isinstance(value, list):
        return [_untag(item) for item in value]
    return value


def encode_value(value: Any) -> str:
    """Encode a property value to JSON, preserving datetimes."""
    return dumps(_tag(value), default=str)


def decode_value(text: Union[str, bytes]) -> Any:
    """Decode a property value produced by :func:`encode_value`."""
    return _untag(loads(text))
