"""
Datastore Backends
==================

Abstract interface and registry for blob storage backends.

A datastore keeps raw bytes keyed by object id and knows nothing about
metadata; the two are composed by :class:`thingfish.storage.ObjectStore`.

Built-in backends:
- MemoryDatastore: dict of bytes with a size quota (default 256 KiB)
- FilesystemDatastore: one file per object under hashed directories,
  written through a spool directory so partial writes are never visible

Usage:
    from thingfish.storage.backends.blob_backends import (
        Datastore,
        get_datastore,
        register_datastore,
        list_datastores,
    )

    datastore = get_datastore("filesystem", datadir="/var/lib/thingfish/data")
    oid = datastore.save(open("photo.jpg", "rb"))
    with datastore.fetch(oid) as stream:
        data = stream.read()

    # Register a custom backend
    class S3Datastore(Datastore):
        ...

    register_datastore("s3", S3Datastore)
"""

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from io import BytesIO
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Type, Union

from ...error_handling import (
    ConfigurationError,
    DatastoreError,
    InvalidObjectIdError,
    QuotaExceededError,
    not_implemented,
    validate_directory,
)
from ...utils import (
    CHUNK_SIZE,
    hash_file_content,
    hash_stream,
    is_valid_oid,
    make_oid,
    normalize_oid,
)
from ..locking import FileLock

logger = logging.getLogger(__name__)

BlobData = Union[bytes, bytearray, memoryview, BinaryIO]


# =============================================================================
# Input helpers
# =============================================================================


@contextmanager
def preserved_position(stream: Any):
    """Restore a seekable stream's read position when the block exits."""
    position = None
    seekable = getattr(stream, "seekable", None)
    if seekable is not None and seekable():
        position = stream.tell()
    try:
        yield stream
    finally:
        if position is not None:
            stream.seek(position)


def iter_chunks(data: BlobData, bufsize: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield the content of ``data`` in chunks of at most ``bufsize`` bytes.

    ``data`` may be a bytes-like object or a readable binary stream. A
    seekable stream is returned to its starting position once the
    generator finishes or is closed.

    Raises:
        TypeError: If ``data`` is neither bytes-like nor a binary stream
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        view = memoryview(data).cast("B")
        for start in range(0, len(view), bufsize):
            yield bytes(view[start : start + bufsize])
        return

    if not hasattr(data, "read"):
        raise TypeError(
            f"Expected bytes or a readable binary stream, got {type(data).__name__}"
        )

    with preserved_position(data):
        while True:
            chunk = data.read(bufsize)
            if not chunk:
                break
            if isinstance(chunk, str):
                raise TypeError("Expected a binary stream, got a text stream")
            yield chunk


def read_all(data: BlobData) -> bytes:
    """Read the whole content of ``data`` into a byte string."""
    with closing(iter_chunks(data)) as chunks:
        return b"".join(chunks)


# =============================================================================
# Abstract Base Class
# =============================================================================


class Datastore(ABC):
    """
    Abstract base class for blob datastores.

    Object ids are normalized before use, so callers may pass any case
    variant. ``replace`` of an unknown id creates it.

    Backends with a ``maxsize`` reject writes that would take the total
    stored size past it with :class:`QuotaExceededError`; a rejected write
    leaves no trace.

    The default :meth:`transaction` is a passthrough with no isolation.
    """

    maxsize: Optional[int] = None

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(type(self).__module__)

    @abstractmethod
    def save(self, data: BlobData) -> str:
        """
        Store new content under a freshly generated object id.

        Args:
            data: Bytes-like object or readable binary stream. A seekable
                stream is returned to its original position.

        Returns:
            The new object id
        """
        raise not_implemented(self, "save")

    @abstractmethod
    def replace(self, oid: str, data: BlobData) -> None:
        """
        Overwrite the content stored for ``oid``, creating it if necessary.

        Args:
            oid: Object id
            data: Bytes-like object or readable binary stream
        """
        raise not_implemented(self, "replace")

    @abstractmethod
    def fetch(self, oid: str) -> Optional[BinaryIO]:
        """
        Open the content stored for ``oid``.

        Returns:
            An independent readable binary stream, or None if not found
        """
        raise not_implemented(self, "fetch")

    @abstractmethod
    def remove(self, oid: str) -> bool:
        """
        Delete the content stored for ``oid``.

        Returns:
            True if content was deleted, False if there was none
        """
        raise not_implemented(self, "remove")

    @abstractmethod
    def include(self, oid: str) -> bool:
        """Check whether content is stored for ``oid``."""
        raise not_implemented(self, "include")

    @abstractmethod
    def each_oid(self) -> Iterator[str]:
        """Iterate over every stored object id; each call starts afresh."""
        raise not_implemented(self, "each_oid")

    @abstractmethod
    def size(self, oid: str) -> Optional[int]:
        """Size of the content stored for ``oid`` in bytes, or None."""
        raise not_implemented(self, "size")

    @property
    @abstractmethod
    def total_size(self) -> int:
        """Total size of all stored content in bytes."""
        raise not_implemented(self, "total_size")

    def digest(self, oid: str) -> Optional[str]:
        """
        Calculate the XXH3_64 checksum of the content stored for ``oid``.

        Default implementation reads the content through :meth:`fetch`.
        """
        stream = self.fetch(oid)
        if stream is None:
            return None
        with stream:
            return hash_stream(stream)

    @contextmanager
    def transaction(self):
        """Run a block of operations; the default provides no isolation."""
        yield self

    def _check_quota(
        self,
        new_size: int,
        old_size: int = 0,
        oid: Optional[str] = None,
        in_use: Optional[int] = None,
    ):
        """
        Raise QuotaExceededError if storing ``new_size`` bytes won't fit.

        ``in_use`` overrides :attr:`total_size` when the caller already
        holds a current figure.
        """
        if self.maxsize is None:
            return
        if in_use is None:
            in_use = self.total_size
        projected = in_use - old_size + new_size
        if projected > self.maxsize:
            raise QuotaExceededError(
                f"Storing {new_size} bytes would exceed the datastore quota of "
                f"{self.maxsize} bytes ({in_use} in use)",
                {
                    "oid": oid,
                    "size": new_size,
                    "total_size": in_use,
                    "maxsize": self.maxsize,
                },
            )

    def __contains__(self, oid: str) -> bool:
        return self.include(oid)

    def __iter__(self) -> Iterator[str]:
        return self.each_oid()

    def close(self) -> None:
        """
        Close and clean up any resources.

        Default implementation does nothing. Override in backends that
        hold connections or other resources.
        """
        pass

    def __enter__(self):
        """Support context manager protocol."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Ensure resources are cleaned up."""
        self.close()
        return False


# =============================================================================
# In-Memory Backend Implementation
# =============================================================================


class MemoryDatastore(Datastore):
    """
    In-memory datastore with a size quota.

    Stores blobs in a dictionary guarded by a reentrant lock. Fetches return
    a fresh ``BytesIO`` per call. Data is lost when the instance goes away.
    """

    DEFAULT_MAXSIZE = 2 ** 18

    def __init__(
        self,
        maxsize: Optional[int] = DEFAULT_MAXSIZE,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize in-memory datastore.

        Args:
            maxsize: Maximum total bytes stored, or None for no limit
            logger: Logger for diagnostics
        """
        super().__init__(logger)
        if maxsize is not None and maxsize < 0:
            raise ConfigurationError(f"maxsize must be non-negative, got {maxsize}")

        self.maxsize = maxsize
        self._storage: Dict[str, bytes] = {}
        self._lock = threading.RLock()
        self.logger.debug(f"MemoryDatastore initialized (maxsize={maxsize})")

    def save(self, data: BlobData) -> str:
        oid = make_oid()
        self._write(oid, data)
        return oid

    def replace(self, oid: str, data: BlobData) -> None:
        self._write(normalize_oid(oid), data)

    def _write(self, oid: str, data: BlobData) -> None:
        content = read_all(data)
        with self._lock:
            old_size = len(self._storage.get(oid, b""))
            self._check_quota(len(content), old_size, oid)
            self._storage[oid] = content
        self.logger.debug(f"Stored {len(content)} bytes for {oid}")

    def fetch(self, oid: str) -> Optional[BinaryIO]:
        with self._lock:
            content = self._storage.get(normalize_oid(oid))
        if content is None:
            return None
        return BytesIO(content)

    def remove(self, oid: str) -> bool:
        with self._lock:
            removed = self._storage.pop(normalize_oid(oid), None) is not None
        if removed:
            self.logger.debug(f"Removed blob {normalize_oid(oid)}")
        return removed

    def include(self, oid: str) -> bool:
        with self._lock:
            return normalize_oid(oid) in self._storage

    def each_oid(self) -> Iterator[str]:
        with self._lock:
            oids = list(self._storage.keys())
        return iter(oids)

    def size(self, oid: str) -> Optional[int]:
        with self._lock:
            content = self._storage.get(normalize_oid(oid))
        return None if content is None else len(content)

    @property
    def total_size(self) -> int:
        with self._lock:
            return sum(len(content) for content in self._storage.values())

    def clear(self) -> int:
        """Clear all blobs from memory. Returns count of blobs cleared."""
        with self._lock:
            count = len(self._storage)
            self._storage.clear()
        return count


# =============================================================================
# Filesystem Backend Implementation
# =============================================================================


class FilesystemDatastore(Datastore):
    """
    Filesystem-based datastore.

    Each blob is a file named by its object id, placed under directories
    derived from the first eight characters of the id so that no single
    directory grows too large. With ``hashdepth=4``:

        "8c2d5e2e-7f6a-..." -> datadir/8c/2d/5e/2e/8c2d5e2e-7f6a-...

    Writes stream into a uniquely named file in ``spooldir`` and are renamed
    into place when complete, so readers never see partial content. The
    spool directory must be on the same filesystem as ``datadir``.

    Object ids that are not UUIDs are reported as absent by read
    operations and rejected by writes.

    Usage is recorded in ``datadir/.size`` and every commit or removal
    updates it while holding ``datadir/.lock``, so all instances sharing a
    ``datadir`` (across threads or processes) enforce one quota. The size
    file is rebuilt from the blobs on disk whenever an instance starts.
    """

    VALID_HASHDEPTHS = (0, 1, 2, 4, 8)
    SIZEFILE = ".size"
    LOCKFILE = ".lock"

    def __init__(
        self,
        datadir: Union[str, Path],
        spooldir: Union[str, Path, None] = None,
        maxsize: Optional[int] = None,
        hashdepth: int = 4,
        bufsize: int = CHUNK_SIZE,
        lock_timeout: Optional[float] = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize filesystem datastore.

        Args:
            datadir: Directory where blobs are stored
            spooldir: Directory for in-progress writes (default: datadir/.spool)
            maxsize: Maximum total bytes stored, or None for no limit
            hashdepth: Number of directory levels (0, 1, 2, 4 or 8)
            bufsize: Chunk size for streaming writes
            lock_timeout: Seconds to wait for the size lock (None waits forever)
            logger: Logger for diagnostics
        """
        super().__init__(logger)
        if hashdepth not in self.VALID_HASHDEPTHS:
            raise ConfigurationError(
                f"hashdepth must be one of {self.VALID_HASHDEPTHS}, got {hashdepth}",
                {"hashdepth": hashdepth},
            )
        if bufsize <= 0:
            raise ConfigurationError(f"bufsize must be positive, got {bufsize}")
        if maxsize is not None and maxsize < 0:
            raise ConfigurationError(f"maxsize must be non-negative, got {maxsize}")

        self.datadir = validate_directory(datadir, "datadir")
        self.spooldir = validate_directory(
            spooldir if spooldir is not None else self.datadir / ".spool", "spooldir"
        )
        self.maxsize = maxsize
        self.hashdepth = hashdepth
        self.bufsize = bufsize
        self._size_path = self.datadir / self.SIZEFILE
        self._lock = FileLock(self.datadir / self.LOCKFILE, timeout=lock_timeout)

        with self._lock:
            total_size = self._scan_total_size()
            self._write_total_size(total_size)

        self.logger.debug(
            f"FilesystemDatastore initialized at {self.datadir} "
            f"(hashdepth={hashdepth}, maxsize={maxsize}, total_size={total_size})"
        )

    def hashed_path(self, oid: str) -> Path:
        """
        Return the file path for ``oid``.

        Raises:
            InvalidObjectIdError: If ``oid`` is not a UUID
        """
        oid = normalize_oid(oid)
        if not is_valid_oid(oid):
            raise InvalidObjectIdError(f"Invalid object id: {oid!r}", {"oid": oid})

        if self.hashdepth == 0:
            return self.datadir / oid

        width = 8 // self.hashdepth
        parts = [oid[start : start + width] for start in range(0, 8, width)]
        return self.datadir.joinpath(*parts, oid)

    def _existing_path(self, oid: str) -> Optional[Path]:
        if not is_valid_oid(oid):
            return None
        path = self.hashed_path(oid)
        return path if path.is_file() else None

    def _iter_blob_paths(self) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(self.datadir):
            current = Path(dirpath)
            if current == self.spooldir:
                dirnames[:] = []
                continue
            for filename in filenames:
                if is_valid_oid(filename) and filename == normalize_oid(filename):
                    yield current / filename

    def _scan_total_size(self) -> int:
        return sum(path.stat().st_size for path in self._iter_blob_paths())

    def _read_total_size(self) -> int:
        try:
            return int(self._size_path.read_text())
        except (FileNotFoundError, ValueError):
            return self._scan_total_size()

    def _write_total_size(self, total_size: int) -> None:
        # Callers hold self._lock
        temp_path = self._size_path.with_name(self.SIZEFILE + ".new")
        temp_path.write_text(str(total_size))
        os.replace(temp_path, self._size_path)

    def save(self, data: BlobData) -> str:
        oid = make_oid()
        self._write(oid, data)
        return oid

    def replace(self, oid: str, data: BlobData) -> None:
        self._write(normalize_oid(oid), data)

    def _write(self, oid: str, data: BlobData) -> None:
        target = self.hashed_path(oid)
        old_size = self.size(oid) or 0
        # Early estimate; the authoritative check happens under the lock
        in_use = self.total_size if self.maxsize is not None else 0
        fd, spool_name = tempfile.mkstemp(prefix=f"{oid}.", dir=self.spooldir)
        spool_path = Path(spool_name)
        written = 0

        try:
            with os.fdopen(fd, "wb") as spool, closing(
                iter_chunks(data, self.bufsize)
            ) as chunks:
                for chunk in chunks:
                    written += len(chunk)
                    self._check_quota(written, old_size, oid, in_use)
                    spool.write(chunk)

            with self._lock:
                in_use = self._read_total_size()
                old_size = target.stat().st_size if target.is_file() else 0
                self._check_quota(written, old_size, oid, in_use)
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(spool_path, target)
                self._write_total_size(in_use - old_size + written)
        except OSError as e:
            raise DatastoreError(
                f"Unable to store {oid}: {e}", {"oid": oid, "path": str(target)}
            ) from e
        finally:
            if spool_path.exists():
                spool_path.unlink()

        self.logger.debug(f"Stored {written} bytes for {oid} at {target}")

    def fetch(self, oid: str) -> Optional[BinaryIO]:
        path = self._existing_path(oid)
        if path is None:
            return None
        try:
            return open(path, "rb")
        except FileNotFoundError:
            return None

    def remove(self, oid: str) -> bool:
        path = self._existing_path(oid)
        if path is None:
            return False

        with self._lock:
            try:
                size = path.stat().st_size
                path.unlink()
            except FileNotFoundError:
                return False
            self._write_total_size(max(self._read_total_size() - size, 0))

        self.logger.debug(f"Removed blob {normalize_oid(oid)}")
        return True

    def include(self, oid: str) -> bool:
        return self._existing_path(oid) is not None

    def each_oid(self) -> Iterator[str]:
        return (path.name for path in self._iter_blob_paths())

    def size(self, oid: str) -> Optional[int]:
        path = self._existing_path(oid)
        if path is None:
            return None
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return None

    @property
    def total_size(self) -> int:
        """Bytes stored by every instance sharing this ``datadir``."""
        return self._read_total_size()

    def digest(self, oid: str) -> Optional[str]:
        path = self._existing_path(oid)
        if path is None:
            return None
        try:
            return hash_file_content(path)
        except FileNotFoundError:
            return None


# =============================================================================
# Datastore Registry
# =============================================================================

# Registry storage: name -> backend class
_datastore_registry: Dict[str, Type[Datastore]] = {}
_builtin_datastores = {"filesystem", "memory"}


def _initialize_builtin_datastores():
    """Initialize registry with built-in backends."""
    _datastore_registry["filesystem"] = FilesystemDatastore
    _datastore_registry["memory"] = MemoryDatastore


# Initialize on module load
_initialize_builtin_datastores()


def register_datastore(
    name: str, backend_class: Type[Datastore], force: bool = False
) -> None:
    """
    Register a custom datastore backend.

    Args:
        name: Unique name for the backend (e.g., "s3")
        backend_class: Class that implements the Datastore interface
        force: If True, overwrite existing registration

    Raises:
        ConfigurationError: If name already registered and force=False
        ConfigurationError: If backend_class doesn't inherit from Datastore
    """
    if not isinstance(backend_class, type):
        raise ConfigurationError(
            f"backend_class must be a class, got {type(backend_class)}"
        )

    if not issubclass(backend_class, Datastore):
        raise ConfigurationError(
            f"Backend class {backend_class.__name__} must inherit from Datastore"
        )

    if name in _datastore_registry and not force:
        raise ConfigurationError(
            f"Datastore '{name}' already registered. "
            f"Use force=True to overwrite or unregister_datastore() first."
        )

    _datastore_registry[name] = backend_class
    logger.info(f"Registered datastore '{name}' ({backend_class.__name__})")


def unregister_datastore(name: str) -> bool:
    """
    Unregister a datastore backend.

    Returns:
        True if backend was unregistered, False if not found
    """
    if name in _datastore_registry:
        del _datastore_registry[name]
        logger.info(f"Unregistered datastore '{name}'")
        return True

    logger.warning(f"Datastore '{name}' not found for unregistration")
    return False


def get_datastore(name: str, **options) -> Datastore:
    """
    Get a datastore instance by name.

    Args:
        name: Name of the registered backend
        **options: Backend-specific configuration options

    Returns:
        Configured Datastore instance

    Raises:
        ConfigurationError: If the name isn't registered or the options are bad

    Example:
        >>> datastore = get_datastore("memory", maxsize=1024 * 1024)
        >>> datastore = get_datastore("filesystem", datadir="./data", hashdepth=2)
    """
    if name not in _datastore_registry:
        available = list(_datastore_registry.keys())
        raise ConfigurationError(
            f"Unknown datastore: '{name}'. Available backends: {available}",
            {"name": name, "available": available},
        )

    backend_class = _datastore_registry[name]

    try:
        return backend_class(**options)
    except TypeError as e:
        raise ConfigurationError(
            f"Failed to create datastore '{name}' with options {options}: {e}",
            {"name": name},
        ) from e


def list_datastores() -> List[Dict[str, Any]]:
    """
    List all registered datastore backends.

    Returns:
        List of dictionaries with backend info:
        - name: Backend name
        - class: Backend class name
        - is_builtin: Whether it's a built-in backend
    """
    result = []

    for name in sorted(_builtin_datastores):
        if name in _datastore_registry:
            result.append(
                {
                    "name": name,
                    "class": _datastore_registry[name].__name__,
                    "is_builtin": True,
                }
            )

    for name in sorted(_datastore_registry.keys()):
        if name not in _builtin_datastores:
            result.append(
                {
                    "name": name,
                    "class": _datastore_registry[name].__name__,
                    "is_builtin": False,
                }
            )

    return result


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    # Base class
    "Datastore",
    # Built-in implementations
    "FilesystemDatastore",
    "MemoryDatastore",
    # Helpers
    "iter_chunks",
    "read_all",
    # Registry functions
    "register_datastore",
    "unregister_datastore",
    "get_datastore",
    "list_datastores",
]
