"""
ObjectStore - Blob and Metadata Coordination
============================================

Binds a datastore (bytes) and a metastore (properties) together under one
object id and keeps them in step.

Storing an object writes the blob first, then records the caller's
metadata together with the operational fields (checksum, format, extent,
timestamps) inside a metastore transaction. If the metadata can't be
written for a new object, its blob is removed again so no orphan is left
behind; if that cleanup fails too, or the object already existed, a
:class:`~thingfish.error_handling.StoreIntegrityError` tells the caller the
two stores disagree.

Usage:
    from thingfish.storage import ObjectStore
    from thingfish.resource import RequestContext

    store = ObjectStore.from_config()

    oid = store.store(
        b"hello world",
        metadata={"title": "greeting.txt"},
        context=RequestContext(content_type="text/plain", remote_addr="10.0.0.1"),
    )

    result = store.fetch(oid)
    print(result.metadata["checksum"], result.body.read())

    store.update_metadata(oid, {"author": "mahlon"})
    store.search(criteria={"format": "text/plain"}, order="title")

    report = store.verify_integrity(repair=True)
    store.remove(oid)
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Mapping, Optional, Sequence, Set, Union

from ..config import ThingfishConfig
from ..error_handling import (
    InvalidObjectIdError,
    ObjectNotFoundError,
    StoreIntegrityError,
    store_operation_context,
)
from ..properties import (
    OPERATIONAL_METADATA_KEYS,
    RELATION_KEY,
    REQUIRED_RELATED_METADATA_KEYS,
    strip_operational,
)
from ..resource import RequestContext
from ..utils import is_valid_oid, normalize_oid
from .backends import Datastore, Metastore, get_datastore, get_metastore
from .backends.blob_backends import BlobData


@dataclass
class FetchResult:
    """Outcome of :meth:`ObjectStore.fetch`."""

    oid: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    body: Optional[BinaryIO] = None
    not_modified: bool = False


class ObjectStore:
    """
    Coordinates a datastore and a metastore.

    The two stores are independent; this class owns the rule that every
    blob should have metadata. It adds no locking of its own: thread and
    process safety come from the backends, and metadata writes are grouped
    with the metastore's :meth:`transaction`.

    Attributes:
        datastore: Blob storage backend
        metastore: Metadata storage backend
        logger: Logger for debug traces
    """

    def __init__(
        self,
        datastore: Datastore,
        metastore: Metastore,
        logger: Optional[logging.Logger] = None,
    ):
        self.datastore = datastore
        self.metastore = metastore
        self.logger = logger or logging.getLogger(__name__)
        self.logger.debug(
            f"ObjectStore initialized ({type(datastore).__name__} + "
            f"{type(metastore).__name__})"
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[ThingfishConfig] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "ObjectStore":
        """Create both stores through the backend registries."""
        config = config or ThingfishConfig()
        datastore = get_datastore(
            config.datastore.backend, **config.datastore.backend_options()
        )
        metastore = get_metastore(
            config.metastore.backend, **config.metastore.backend_options()
        )
        return cls(datastore, metastore, logger=logger)

    # -- storing ------------------------------------------------------------

    def store(
        self,
        data: BlobData,
        metadata: Optional[Mapping[str, Any]] = None,
        oid: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> str:
        """
        Store an object's content and metadata.

        Args:
            data: Content as bytes or a readable binary stream
            metadata: Caller properties; operational keys are ignored
            oid: Object id to replace, or None to create a new object
            context: Request details for the operational metadata

        Returns:
            The object id

        Raises:
            QuotaExceededError: If the datastore has no room; metadata is untouched
            StoreIntegrityError: If blob and metadata could not be kept in step
        """
        if oid is not None:
            if not is_valid_oid(oid):
                raise InvalidObjectIdError(f"Invalid object id: {oid!r}", {"oid": oid})
            oid = normalize_oid(oid)

        is_new = oid is None or not self.datastore.include(oid)

        with store_operation_context("store", self.logger, oid=oid, new=is_new):
            if oid is None:
                oid = self.datastore.save(data)
            else:
                self.datastore.replace(oid, data)
            checksum = self.datastore.digest(oid)

            try:
                self._write_metadata(oid, metadata or {}, context, checksum, is_new)
            except Exception as error:
                if not is_new:
                    raise StoreIntegrityError(
                        f"Content for {oid} was replaced but its metadata could "
                        f"not be updated: {error}",
                        {"oid": oid, "checksum": checksum},
                    ) from error
                self._discard_blob(oid, error)
                raise

        return oid

    def _write_metadata(
        self,
        oid: str,
        metadata: Mapping[str, Any],
        context: Optional[RequestContext],
        checksum: Optional[str],
        is_new: bool,
    ) -> None:
        context = context or RequestContext()
        if context.content_length is None:
            context = dataclasses.replace(
                context, content_length=self.datastore.size(oid)
            )

        with self.metastore.transaction():
            if is_new:
                self.metastore.save(oid, strip_operational(metadata))
            else:
                self.metastore.merge_safe(oid, metadata)
            proxy = self.metastore.extract_default_metadata(oid, context)
            proxy.checksum = checksum

    def _discard_blob(self, oid: str, cause: Exception) -> None:
        """Remove the blob of a new object whose metadata write failed."""
        try:
            self.datastore.remove(oid)
        except Exception as cleanup_error:
            raise StoreIntegrityError(
                f"Metadata for new object {oid} could not be written and its "
                f"content could not be removed: {cleanup_error}",
                {"oid": oid, "metadata_error": str(cause)},
            ) from cleanup_error
        self.logger.debug(f"Discarded content of {oid} after metadata failure")

    def store_related(
        self,
        oid: str,
        data: BlobData,
        metadata: Mapping[str, Any],
        context: Optional[RequestContext] = None,
    ) -> str:
        """
        Store a new object related to an existing one (e.g. a thumbnail).

        ``metadata`` must name the ``relationship``; the new object's
        ``relation`` is set to ``oid``.

        Returns:
            The related object's id

        Raises:
            ObjectNotFoundError: If ``oid`` has no metadata
            ValueError: If required related metadata is missing
        """
        oid = normalize_oid(oid)
        if not self.metastore.include(oid):
            raise ObjectNotFoundError(f"No such object {oid}", {"oid": oid})

        missing = REQUIRED_RELATED_METADATA_KEYS - set(metadata)
        if missing:
            raise ValueError(f"Related metadata is missing {sorted(missing)}")

        related_metadata = dict(metadata)
        related_metadata[RELATION_KEY] = oid
        return self.store(data, related_metadata, context=context)

    # -- reading ------------------------------------------------------------

    def fetch(self, oid: str, etag: Optional[str] = None) -> Optional[FetchResult]:
        """
        Fetch an object's metadata and content.

        Args:
            oid: Object id
            etag: Checksum the caller already has; if it still matches, the
                result is marked ``not_modified`` and carries no body

        Returns:
            FetchResult, or None if the object has no metadata
        """
        oid = normalize_oid(oid)
        metadata = self.metastore.fetch(oid)
        if metadata is None:
            return None

        if etag is not None and etag.strip('"') == metadata.get("checksum"):
            return FetchResult(oid, metadata, not_modified=True)

        body = self.datastore.fetch(oid)
        if body is None:
            self.logger.debug(f"Metadata for {oid} has no content")
        return FetchResult(oid, metadata, body)

    def fetch_metadata(self, oid: str) -> Optional[Dict[str, Any]]:
        return self.metastore.fetch(oid)

    def include(self, oid: str) -> bool:
        """True if both content and metadata exist for ``oid``."""
        return self.metastore.include(oid) and self.datastore.include(oid)

    def search(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        order: Union[str, Sequence[str], None] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        reverse: bool = False,
    ) -> List[str]:
        return self.metastore.search(
            criteria=criteria, order=order, limit=limit, offset=offset, reverse=reverse
        )

    def fetch_related(self, oid: str) -> Set[str]:
        return self.metastore.fetch_related_oids(oid)

    # -- metadata updates ---------------------------------------------------

    def update_metadata(self, oid: str, metadata: Mapping[str, Any]) -> bool:
        """
        Merge caller metadata into an existing object.

        Returns:
            True if successful, False if the object has no metadata
        """
        if not self.metastore.include(oid):
            return False
        self.metastore.merge_safe(oid, metadata)
        return True

    def replace_metadata(self, oid: str, metadata: Mapping[str, Any]) -> bool:
        """
        Replace all caller metadata of an object, keeping operational fields.

        Returns:
            True if successful, False if the object has no metadata
        """
        if not self.metastore.include(oid):
            return False
        with self.metastore.transaction():
            self.metastore.remove_except(oid, *OPERATIONAL_METADATA_KEYS)
            self.metastore.merge_safe(oid, metadata)
        return True

    def remove_metadata(self, oid: str, *keys: str) -> bool:
        """
        Remove caller metadata keys from an object.

        Returns:
            True if successful, False if the object has no metadata
        """
        if not self.metastore.include(oid):
            return False
        self.metastore.remove_safe(oid, *keys)
        return True

    # -- removal ------------------------------------------------------------

    def remove(self, oid: str, remove_related: bool = True) -> None:
        """
        Remove an object's metadata and content.

        An object present in only one of the stores is removed from that
        one without complaint.

        Args:
            oid: Object id
            remove_related: Also remove objects whose ``relation`` is ``oid``

        Raises:
            ObjectNotFoundError: If the object is in neither store
        """
        oid = normalize_oid(oid)
        with store_operation_context("remove", self.logger, oid=oid):
            related = self.metastore.fetch_related_oids(oid) if remove_related else set()

            if not self._remove_one(oid):
                raise ObjectNotFoundError(f"No such object {oid}", {"oid": oid})

            for related_oid in sorted(related):
                self._remove_one(related_oid)

    def _remove_one(self, oid: str) -> bool:
        had_metadata = self.metastore.include(oid)
        if had_metadata:
            self.metastore.remove(oid)
        had_blob = self.datastore.remove(oid)
        return had_metadata or had_blob

    # -- integrity verification ---------------------------------------------

    def verify_integrity(
        self, repair: bool = False, verify_checksums: bool = True
    ) -> Dict[str, Any]:
        """
        Cross-check the datastore and metastore.

        Detects:
        - Orphaned blobs: content with no metadata
        - Dangling entries: metadata with no content
        - Checksum mismatches: stored checksum != content digest

        Args:
            repair: If True, remove orphaned blobs and dangling entries
            verify_checksums: If False, skip re-hashing stored content

        Returns:
            Dict with keys: orphaned_blobs, dangling_entries,
            checksum_mismatches, repaired (if repair)
        """
        blob_oids = set(self.datastore.each_oid())
        metadata_oids = list(self.metastore.each_oid())
        known = set(metadata_oids)

        orphaned_blobs = sorted(blob_oids - known)
        dangling_entries = [oid for oid in metadata_oids if oid not in blob_oids]

        checksum_mismatches = []
        if verify_checksums:
            for oid in metadata_oids:
                if oid not in blob_oids:
                    continue
                expected = self.metastore.fetch_value(oid, "checksum")
                actual = self.datastore.digest(oid)
                if expected is not None and expected != actual:
                    checksum_mismatches.append(
                        {"oid": oid, "expected": expected, "actual": actual}
                    )

        repaired = {"orphans_removed": 0, "dangling_removed": 0}
        if repair:
            for oid in orphaned_blobs:
                if self.datastore.remove(oid):
                    repaired["orphans_removed"] += 1
            for oid in dangling_entries:
                self.metastore.remove(oid)
                repaired["dangling_removed"] += 1

        report: Dict[str, Any] = {
            "orphaned_blobs": orphaned_blobs,
            "dangling_entries": dangling_entries,
            "checksum_mismatches": checksum_mismatches,
        }
        if repair:
            report["repaired"] = repaired

        total_issues = (
            len(orphaned_blobs) + len(dangling_entries) + len(checksum_mismatches)
        )
        if total_issues == 0:
            self.logger.info("Object store integrity check passed")
        else:
            self.logger.warning(
                f"Object store integrity check found {total_issues} issue(s): "
                f"{len(orphaned_blobs)} orphaned, {len(dangling_entries)} dangling"
                f", {len(checksum_mismatches)} checksum mismatches"
            )

        return report

    def close(self):
        """Close both stores and release resources."""
        self.metastore.close()
        self.datastore.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
