"""
Metadata Search
===============

The filtering and ordering algorithm shared by every metastore backend.

Backends feed ``(oid, properties)`` pairs in insertion order; this module
narrows them by criteria, sorts them by one or more property names, and
applies offset/limit:

    from thingfish.search import search_resources

    oids = search_resources(
        metastore.iter_resources(),
        criteria={"format": "audio/mp3"},
        order=["title", "created"],
        limit=10,
    )

Ordering uses each value's natural order: numbers numerically, datetimes
chronologically, strings lexicographically. Values of different kinds sort
in that sequence, and missing values sort last. Ties break on OID.
"""

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .properties import as_values, is_multi
from .utils import glob_to_regexp

Resource = Tuple[str, Mapping[str, Any]]


def _active_criteria(criteria: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {key: value for key, value in (criteria or {}).items() if value is not None}


def value_matches(stored: Any, expected: Any) -> bool:
    """Exact comparison of a stored property value with an expected one."""
    if stored is None:
        return False
    if is_multi(stored):
        return stored == expected or expected in stored
    return stored == expected


def pattern_matches(stored: Any, patterns: Any) -> bool:
    """
    Glob comparison of a stored value with one or more ``*`` patterns.

    Every pattern must match; a multi-valued property matches a pattern if
    any of its values does.
    """
    if stored is None:
        return False
    candidates = [str(value) for value in as_values(stored)]
    for pattern in as_values(patterns):
        regexp = glob_to_regexp(str(pattern))
        if not any(regexp.match(candidate) for candidate in candidates):
            return False
    return True


def filter_exact(
    resources: Iterable[Resource], criteria: Optional[Mapping[str, Any]]
) -> List[Resource]:
    """Keep resources whose values equal every criterion."""
    active = _active_criteria(criteria)
    return [
        (oid, properties)
        for oid, properties in resources
        if all(value_matches(properties.get(key), value) for key, value in active.items())
    ]


def filter_matching(
    resources: Iterable[Resource], criteria: Optional[Mapping[str, Any]]
) -> List[Resource]:
    """Keep resources whose values match every criterion's glob pattern(s)."""
    active = _active_criteria(criteria)
    return [
        (oid, properties)
        for oid, properties in resources
        if all(pattern_matches(properties.get(key), value) for key, value in active.items())
    ]


def sort_key(value: Any) -> Tuple:
    """Build a sort key giving ``value`` its natural position."""
    if is_multi(value):
        value = value[0] if value else None
    if value is None:
        return (9, 0)
    if isinstance(value, bool):
        return (3, str(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, datetime):
        return (1, value.timestamp())
    if isinstance(value, date):
        return (1, datetime(value.year, value.month, value.day).timestamp())
    if isinstance(value, str):
        return (2, value)
    return (3, str(value))


def order_resources(
    resources: Sequence[Resource], order: Union[str, Sequence[str], None]
) -> List[Resource]:
    """Stable-sort resources by the named properties, then by OID."""
    if not order:
        return list(resources)
    if isinstance(order, str):
        order = [order]

    def key(resource: Resource) -> Tuple:
        oid, properties = resource
        return tuple(sort_key(properties.get(name)) for name in order) + ((0, oid),)

    return sorted(resources, key=key)


def search_resources(
    resources: Iterable[Resource],
    criteria: Optional[Mapping[str, Any]] = None,
    order: Union[str, Sequence[str], None] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    reverse: bool = False,
) -> List[str]:
    """
    Run a metadata query and return matching OIDs.

    Args:
        resources: ``(oid, properties)`` pairs in insertion order
        criteria: Property name to expected value; all must match
        order: Property name or names to sort by
        limit: Maximum number of results
        offset: Number of results to skip before applying ``limit``
        reverse: Return results in descending order

    Returns:
        List of matching OIDs
    """
    if limit is not None and limit < 0:
        raise ValueError(f"limit must be non-negative, got {limit}")
    if offset < 0:
        raise ValueError(f"offset must be non-negative, got {offset}")

    matched = order_resources(filter_exact(resources, criteria), order)
    if reverse:
        matched.reverse()

    oids = [oid for oid, _ in matched][offset:]
    if limit is not None:
        oids = oids[:limit]
    return oids


def find_exact(
    resources: Iterable[Resource], criteria: Optional[Mapping[str, Any]]
) -> List[str]:
    """OIDs whose properties equal every criterion. Empty criteria match nothing."""
    if not _active_criteria(criteria):
        return []
    return [oid for oid, _ in filter_exact(resources, criteria)]


def find_matching(
    resources: Iterable[Resource], criteria: Optional[Mapping[str, Any]]
) -> List[str]:
    """OIDs whose properties match every glob criterion. Empty criteria match nothing."""
    if not _active_criteria(criteria):
        return []
    return [oid for oid, _ in filter_matching(resources, criteria)]
