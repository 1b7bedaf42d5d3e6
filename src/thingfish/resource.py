"""
Resource Proxies
================

A ``ResourceProxy`` is a live view of one object's properties in a
metastore. It holds nothing but the object id and the store, so every read
goes to the store and every write lands there immediately.

Usage:
    proxy = metastore["8c2d5e2e-7f6a-4b1e-9d3a-0b3c2f1e4a5d"]
    proxy["title"] = "report.txt"
    proxy.update({"author": "mahlon"})

    if "title" in proxy:
        print(proxy.title, proxy.format)

    proxy.extract_default_metadata(RequestContext.from_environ(environ))
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional, Tuple

from .utils import normalize_oid

if TYPE_CHECKING:
    from .storage.backends.base import Metastore


@dataclass
class RequestContext:
    """The parts of an inbound request that become operational metadata."""

    content_type: Optional[str] = None
    content_length: Optional[int] = None
    user_agent: Optional[str] = None
    remote_addr: Optional[str] = None

    @classmethod
    def from_environ(cls, environ: Mapping[str, Any]) -> "RequestContext":
        """Build a context from CGI-style request variables."""
        length = environ.get("CONTENT_LENGTH")
        return cls(
            content_type=environ.get("CONTENT_TYPE"),
            content_length=int(length) if length not in (None, "") else None,
            user_agent=environ.get("HTTP_USER_AGENT"),
            remote_addr=environ.get("REMOTE_ADDR"),
        )


def _accessor(key: str, doc: str) -> property:
    def getter(self: "ResourceProxy") -> Any:
        return self[key]

    def setter(self: "ResourceProxy", value: Any) -> None:
        self[key] = value

    return property(getter, setter, doc=doc)


class ResourceProxy:
    """Per-object view of a metastore's properties."""

    __slots__ = ("oid", "metastore")

    def __init__(self, oid: str, metastore: "Metastore"):
        self.oid = normalize_oid(oid)
        self.metastore = metastore

    format = _accessor("format", "MIME type of the content")
    extent = _accessor("extent", "Content length in bytes")
    checksum = _accessor("checksum", "Digest of the stored content")
    created = _accessor("created", "When the object was first stored")
    modified = _accessor("modified", "When the object was last stored")
    useragent = _accessor("useragent", "User agent of the last upload")
    uploadaddress = _accessor("uploadaddress", "Address of the last uploader")
    title = _accessor("title", "Human-readable title")
    relation = _accessor("relation", "Object id this one is related to")

    def __getitem__(self, key: str) -> Any:
        return self.metastore.fetch_value(self.oid, key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.metastore.merge(self.oid, {key: value})

    def __delitem__(self, key: str) -> None:
        self.metastore.remove(self.oid, key)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_dict())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceProxy):
            return NotImplemented
        return self.oid == other.oid

    def __hash__(self) -> int:
        return hash(self.oid)

    def __repr__(self) -> str:
        return f"<ResourceProxy {self.oid} ({type(self.metastore).__name__})>"

    def get(self, key: str, default: Any = None) -> Any:
        value = self[key]
        return default if value is None else value

    def has(self, key: str) -> bool:
        """Check whether the object has a value for ``key``."""
        return self.metastore.has_property(self.oid, key)

    def items(self) -> Iterator[Tuple[str, Any]]:
        return iter(self.to_dict().items())

    def to_dict(self) -> Dict[str, Any]:
        """Return the object's current properties (empty if it has none)."""
        return self.metastore.fetch(self.oid) or {}

    def update(self, properties: Mapping[str, Any]) -> None:
        """Merge ``properties`` into the object's stored properties."""
        self.metastore.merge(self.oid, dict(properties))

    def extract_default_metadata(
        self, context: RequestContext, now: Optional[datetime] = None
    ) -> None:
        """
        Set operational metadata from an inbound request.

        Sets ``format``, ``extent``, ``useragent`` and ``uploadaddress`` from
        the context fields that are present, ``created`` only if the object
        does not have it yet, and always refreshes ``modified``.

        Args:
            context: Request details supplied by the transport layer
            now: Timestamp to record (defaults to the current UTC time)
        """
        now = now or datetime.now(timezone.utc)
        values = {
            "format": context.content_type,
            "extent": context.content_length,
            "useragent": context.user_agent,
            "uploadaddress": context.remote_addr,
        }
        values = {key: value for key, value in values.items() if value is not None}

        if not self.has("created"):
            values["created"] = now
        values["modified"] = now

        self.update(values)
