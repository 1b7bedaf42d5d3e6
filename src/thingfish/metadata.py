"""
Metastore Backends
==================

Dictionary-based metadata backends:

- MemoryMetastore: in-process dict guarded by a reentrant lock
- MarshalledMetastore: a pickled dict in a data directory, with a single
  lock file serializing writers across processes

The SQLite backend lives in :mod:`thingfish.storage.backends.sqlite_backend`.

Usage:
    from thingfish.metadata import MemoryMetastore, MarshalledMetastore

    metastore = MemoryMetastore()
    metastore.save(oid, {"format": "text/plain", "extent": 1024})
    metastore.merge(oid, {"title": "report.txt"})

    # Persistent, shared between processes
    metastore = MarshalledMetastore("/var/lib/thingfish/metastore")
    with metastore.transaction():
        metastore.merge(oid, {"checksum": digest})
        metastore.merge(oid, {"modified": now})
"""

import logging
import os
import pickle
import threading
from abc import abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .error_handling import MetastoreError, validate_directory
from .properties import copy_properties, select_keys
from .storage.backends.base import Metastore
from .storage.locking import FileLock
from .utils import normalize_oid


Storage = Dict[str, Dict[str, Any]]


class DictMetastore(Metastore):
    """
    Metastore operations over an insertion-ordered dict of property sets.

    Subclasses decide where the dict lives by providing ``_reading`` and
    ``_writing`` context managers that yield it.
    """

    @abstractmethod
    def _reading(self) -> Iterator[Storage]:
        """Yield the storage dict for a read."""

    @abstractmethod
    def _writing(self) -> Iterator[Storage]:
        """Yield the storage dict for a mutation."""

    def save(self, oid: str, properties: Mapping[str, Any]) -> None:
        oid = normalize_oid(oid)
        with self._writing() as storage:
            storage[oid] = copy_properties(properties)

    def merge(self, oid: str, properties: Mapping[str, Any]) -> None:
        oid = normalize_oid(oid)
        with self._writing() as storage:
            storage.setdefault(oid, {}).update(copy_properties(properties))

    def fetch(self, oid: str, *keys: str) -> Optional[Dict[str, Any]]:
        with self._reading() as storage:
            properties = storage.get(normalize_oid(oid))
            if properties is None:
                return None
            if keys:
                properties = select_keys(properties, keys)
            return copy_properties(properties)

    def fetch_value(self, oid: str, key: str) -> Any:
        properties = self.fetch(oid, key)
        return properties.get(key) if properties else None

    def remove(self, oid: str, *keys: str) -> None:
        oid = normalize_oid(oid)
        with self._writing() as storage:
            if not keys:
                storage.pop(oid, None)
            elif oid in storage:
                for key in keys:
                    storage[oid].pop(key, None)

    def remove_except(self, oid: str, *keys: str) -> None:
        oid = normalize_oid(oid)
        with self._writing() as storage:
            if oid in storage:
                storage[oid] = select_keys(storage[oid], keys)

    def include(self, oid: str) -> bool:
        with self._reading() as storage:
            return normalize_oid(oid) in storage

    def size(self) -> int:
        with self._reading() as storage:
            return len(storage)

    def oids(self) -> List[str]:
        with self._reading() as storage:
            return list(storage.keys())

    def iter_resources(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        with self._reading() as storage:
            snapshot = [(oid, copy_properties(props)) for oid, props in storage.items()]
        return iter(snapshot)

    def clear(self) -> int:
        with self._writing() as storage:
            count = len(storage)
            storage.clear()
        return count


class MemoryMetastore(DictMetastore):
    """
    In-memory metastore.

    Every operation runs under a reentrant lock; :meth:`transaction` holds
    that lock for the whole block, so a transaction is isolated from other
    threads using the same instance. The outermost transaction copies the
    store on entry and restores that copy if the block raises. Data is lost
    when the instance goes away.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self._lock = threading.RLock()
        self._storage: Storage = {}
        self._backup: Optional[Storage] = None
        self.logger.debug("MemoryMetastore initialized")

    @contextmanager
    def _reading(self) -> Iterator[Storage]:
        with self._lock:
            yield self._storage

    @contextmanager
    def _writing(self) -> Iterator[Storage]:
        with self._lock:
            yield self._storage

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._backup is not None:
                yield self
                return

            self._backup = {
                oid: copy_properties(props) for oid, props in self._storage.items()
            }
            try:
                yield self
            except Exception:
                self._storage.clear()
                self._storage.update(self._backup)
                self.logger.debug("MemoryMetastore transaction rolled back")
                raise
            finally:
                self._backup = None


class MarshalledMetastore(DictMetastore):
    """
    Metastore persisted as a single pickled dict.

    Layout inside ``datadir``:

    - ``metadata``: the pickled ``{oid: properties}`` dict
    - ``metadata.lock``: held while a writer is working

    Each mutation takes the lock, loads the file, applies the change and
    atomically replaces the file. Inside :meth:`transaction` the file is
    loaded once, every operation works on that snapshot, and the result is
    written once when the block succeeds; if the block raises, nothing is
    written. Readers outside a transaction never take the lock.

    A lock that can't be acquired within ``lock_timeout`` seconds raises
    :class:`~thingfish.error_handling.LockTimeoutError`.
    """

    DATAFILE = "metadata"
    LOCKFILE = "metadata.lock"

    def __init__(
        self,
        datadir: Union[str, Path],
        lock_timeout: Optional[float] = 30.0,
        lock_retry: float = 0.1,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize marshalled metastore.

        Args:
            datadir: Directory holding the data and lock files
            lock_timeout: Seconds to wait for the lock (None waits forever)
            lock_retry: Seconds between lock attempts
            logger: Logger for diagnostics
        """
        super().__init__(logger)
        self.datadir = validate_directory(datadir, "datadir")
        self.path = self.datadir / self.DATAFILE
        self.lock = FileLock(
            self.datadir / self.LOCKFILE, timeout=lock_timeout, retry_interval=lock_retry
        )
        self._local = threading.local()
        self.logger.debug(f"MarshalledMetastore initialized at {self.path}")

    def _snapshot(self) -> Optional[Storage]:
        return getattr(self._local, "snapshot", None)

    def _load(self) -> Storage:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "rb") as f:
                return pickle.load(f)
        except (OSError, pickle.UnpicklingError, EOFError) as e:
            raise MetastoreError(
                f"Unable to read metadata from {self.path}: {e}",
                {"path": str(self.path)},
            ) from e

    def _dump(self, storage: Storage) -> None:
        temp_path = self.path.with_name(self.path.name + ".new")
        try:
            with open(temp_path, "wb") as f:
                pickle.dump(storage, f, protocol=pickle.HIGHEST_PROTOCOL)
            os.replace(temp_path, self.path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise MetastoreError(
                f"Unable to write metadata to {self.path}: {e}",
                {"path": str(self.path)},
            ) from e

    @contextmanager
    def transaction(self):
        with self.lock:
            if self._snapshot() is not None:
                yield self
                return

            self._local.snapshot = self._load()
            self._local.dirty = False
            try:
                yield self
                if self._local.dirty:
                    self._dump(self._local.snapshot)
            finally:
                self._local.snapshot = None

    @contextmanager
    def _reading(self) -> Iterator[Storage]:
        snapshot = self._snapshot()
        yield snapshot if snapshot is not None else self._load()

    @contextmanager
    def _writing(self) -> Iterator[Storage]:
        with self.transaction():
            self._local.dirty = True
            yield self._local.snapshot
