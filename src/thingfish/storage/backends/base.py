"""
Abstract Base Class for Metastores
==================================

Defines the interface that all metadata backends must implement.

A metastore keeps a property dictionary per object id. Backends implement a
small set of primitives (save/merge/fetch/remove/include/size/oids); search,
relation lookup, multi-value appends, safe property updates and
import/export are built on top of them here and may be overridden where a
backend can do better.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from ...error_handling import ProtectedPropertyError, not_implemented
from ...properties import (
    RELATION_KEY,
    as_values,
    is_operational,
    merge_appending,
    strip_operational,
)
from ...resource import RequestContext, ResourceProxy
from ...search import find_exact, find_matching, search_resources
from ...utils import normalize_oid


class Metastore(ABC):
    """
    Abstract base class for metadata stores.

    Object ids are normalized with :func:`thingfish.utils.normalize_oid`
    before use, so callers may pass any case variant. Iteration order is the
    order in which each object was first saved.

    The default :meth:`transaction` is a passthrough with no isolation;
    backends that can do better document the guarantee they provide.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(type(self).__module__)

    # -- primitives ---------------------------------------------------------

    @abstractmethod
    def save(self, oid: str, properties: Mapping[str, Any]) -> None:
        """
        Replace the entire property set for ``oid``.

        Args:
            oid: Object id
            properties: New properties; any existing ones are discarded
        """
        raise not_implemented(self, "save")

    @abstractmethod
    def merge(self, oid: str, properties: Mapping[str, Any]) -> None:
        """
        Shallow-merge ``properties`` into the property set for ``oid``.

        Keys not mentioned are preserved. An unknown ``oid`` is created.
        """
        raise not_implemented(self, "merge")

    @abstractmethod
    def fetch(self, oid: str, *keys: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the properties for ``oid``.

        Args:
            oid: Object id
            *keys: If given, return only these keys (absent ones are omitted)

        Returns:
            A copy of the property dict, or None for an unknown object
        """
        raise not_implemented(self, "fetch")

    @abstractmethod
    def fetch_value(self, oid: str, key: str) -> Any:
        """Return a single property value, or None if the object or key is absent."""
        raise not_implemented(self, "fetch_value")

    @abstractmethod
    def remove(self, oid: str, *keys: str) -> None:
        """
        Remove properties.

        With no keys the whole property set for ``oid`` is removed; otherwise
        only the named keys are. Absent objects and keys are ignored.
        """
        raise not_implemented(self, "remove")

    @abstractmethod
    def remove_except(self, oid: str, *keys: str) -> None:
        """Remove every property of ``oid`` except the named keys."""
        raise not_implemented(self, "remove_except")

    @abstractmethod
    def include(self, oid: str) -> bool:
        """Check whether ``oid`` has a property set."""
        raise not_implemented(self, "include")

    @abstractmethod
    def size(self) -> int:
        """Number of objects with a property set."""
        raise not_implemented(self, "size")

    @abstractmethod
    def oids(self) -> List[str]:
        """Every stored object id, in first-save order."""
        raise not_implemented(self, "oids")

    # -- iteration ----------------------------------------------------------

    def each_oid(self) -> Iterator[str]:
        """Iterate over stored object ids; each call starts from the beginning."""
        return iter(self.oids())

    def iter_resources(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Iterate over ``(oid, properties)`` pairs in first-save order."""
        for oid in self.oids():
            properties = self.fetch(oid)
            if properties is not None:
                yield oid, properties

    def __contains__(self, oid: str) -> bool:
        return self.include(oid)

    def __iter__(self) -> Iterator[str]:
        return self.each_oid()

    def __len__(self) -> int:
        return self.size()

    def __getitem__(self, oid: str) -> ResourceProxy:
        return self.oid_properties(oid)

    # -- transactions -------------------------------------------------------

    @contextmanager
    def transaction(self):
        """Run a block of operations; the default provides no isolation."""
        yield self

    # -- derived operations -------------------------------------------------

    def has_property(self, oid: str, key: str) -> bool:
        properties = self.fetch(oid, key)
        return bool(properties) and key in properties

    def append(self, oid: str, properties: Mapping[str, Any]) -> None:
        """
        Add values to properties, keeping the ones already there.

        A single existing value becomes a list; see
        :func:`thingfish.properties.append_value`.
        """
        with self.transaction():
            current = self.fetch(oid, *properties.keys()) or {}
            self.merge(oid, merge_appending(current, properties))

    def oid_properties(self, oid: str) -> ResourceProxy:
        """Return a live proxy for the properties of ``oid``."""
        return ResourceProxy(oid, self)

    def extract_default_metadata(self, oid: str, context: RequestContext) -> ResourceProxy:
        """Set operational metadata for ``oid`` from request context."""
        proxy = self.oid_properties(oid)
        proxy.extract_default_metadata(context)
        return proxy

    def fetch_related_oids(self, oid: str) -> Set[str]:
        """Object ids whose ``relation`` property refers to ``oid``."""
        target = normalize_oid(oid)
        return {
            related
            for related, properties in self.iter_resources()
            if any(
                normalize_oid(value) == target
                for value in as_values(properties.get(RELATION_KEY))
            )
        }

    def search(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        order: Union[str, Sequence[str], None] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        reverse: bool = False,
    ) -> List[str]:
        """
        Search for objects by property values.

        Args:
            criteria: Property name to expected value; every pair must match exactly
            order: Property name or names to sort by; insertion order if omitted
            limit: Maximum number of results
            offset: Number of results to skip
            reverse: Return results in descending order

        Returns:
            List of matching object ids
        """
        return search_resources(
            self.iter_resources(),
            criteria=criteria,
            order=order,
            limit=limit,
            offset=offset,
            reverse=reverse,
        )

    def find_by_exact_properties(self, criteria: Mapping[str, Any]) -> List[str]:
        """Object ids whose properties equal every criterion. ``{}`` finds nothing."""
        return find_exact(self.iter_resources(), criteria)

    def find_by_matching_properties(self, criteria: Mapping[str, Any]) -> List[str]:
        """
        Object ids whose properties match every glob criterion, ignoring case.

        A criterion value may be a list of patterns, all of which must match.
        ``{}`` finds nothing.
        """
        return find_matching(self.iter_resources(), criteria)

    # -- safe property updates ----------------------------------------------

    def merge_safe(self, oid: str, properties: Mapping[str, Any]) -> None:
        """Merge caller-supplied properties, dropping operational keys."""
        self.merge(oid, strip_operational(properties))

    def remove_safe(self, oid: str, *keys: str) -> None:
        """Remove caller-named properties, leaving operational keys alone."""
        keys = tuple(key for key in keys if not is_operational(key))
        if keys:
            self.remove(oid, *keys)

    def set_safe_value(self, oid: str, key: str, value: Any) -> None:
        """
        Set one caller-supplied property.

        Raises:
            ProtectedPropertyError: If ``key`` is reserved for the system
        """
        if is_operational(key):
            raise ProtectedPropertyError(
                f"Property {key!r} is used by the system and can't be set",
                {"oid": normalize_oid(oid), "key": key},
            )
        self.merge(oid, {key: value})

    # -- bulk operations ----------------------------------------------------

    def get_all_property_keys(self) -> List[str]:
        """Every distinct property key in the store, sorted."""
        keys = set()
        for _, properties in self.iter_resources():
            keys.update(properties.keys())
        return sorted(keys)

    def get_all_property_values(self, key: str) -> List[Any]:
        """Every distinct value of ``key`` in the store, in first-seen order."""
        values: List[Any] = []
        for _, properties in self.iter_resources():
            for value in as_values(properties.get(key)):
                if value not in values:
                    values.append(value)
        return values

    def dump_store(self) -> Dict[str, Dict[str, Any]]:
        """Export every property set as a dict keyed by object id."""
        return dict(self.iter_resources())

    def load_store(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        """Replace the store's contents with ``data`` (as from :meth:`dump_store`)."""
        with self.transaction():
            self.clear()
            for oid, properties in data.items():
                self.save(oid, properties)
        self.logger.debug(f"Loaded {len(data)} property sets into {type(self).__name__}")

    def migrate_from(self, other: "Metastore") -> None:
        """Replace the store's contents with those of another metastore."""
        self.load_store(other.dump_store())

    def clear(self) -> int:
        """Remove every property set and return how many were removed."""
        with self.transaction():
            oids = self.oids()
            for oid in oids:
                self.remove(oid)
        return len(oids)

    def close(self) -> None:
        """
        Close and clean up any resources.

        Default implementation does nothing. Override in backends that hold
        resources like database connections or file handles.
        """
        pass

    def __enter__(self):
        """Support context manager protocol."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Ensure resources are cleaned up."""
        self.close()
        return False
