"""
thingfish - Object storage core: blobs, their metadata, and search.

Every stored object has an id (a UUID), a blob of bytes kept by a
datastore, and a property set kept by a metastore. The two stores are
pluggable and are kept consistent by :class:`ObjectStore`.

Key Features:
- Memory and hashed-filesystem datastores with size quotas
- Memory, marshalled-file and SQLite metastores
- Exact and case-insensitive glob search with ordering and paging
- Related objects (e.g. thumbnails) linked by a ``relation`` property
- Integrity verification between blobs and metadata

Quick Start:
    >>> from thingfish import ObjectStore, RequestContext
    >>>
    >>> store = ObjectStore.from_config()
    >>> oid = store.store(b"hello", context=RequestContext(content_type="text/plain"))
    >>> store.fetch(oid).metadata["format"]
    'text/plain'
    >>> store.search(criteria={"format": "text/plain"})
    [...]
"""

# Storage must load before thingfish.metadata, which builds on its base class
from .storage import (
    Datastore,
    FetchResult,
    FileLock,
    FilesystemDatastore,
    MemoryDatastore,
    Metastore,
    ObjectStore,
)
from .storage.backends import (
    SqliteMetastore,
    get_datastore,
    get_metastore,
    list_datastores,
    list_metastores,
    register_datastore,
    register_metastore,
)
from .metadata import MarshalledMetastore, MemoryMetastore
from .config import DatastoreConfig, MetastoreConfig, ThingfishConfig, create_thingfish_config
from .resource import RequestContext, ResourceProxy
from .error_handling import (
    ConfigurationError,
    DatastoreError,
    InvalidObjectIdError,
    LockTimeoutError,
    MetastoreError,
    NotImplementedOperationError,
    ObjectNotFoundError,
    ProtectedPropertyError,
    QuotaExceededError,
    StoreIntegrityError,
    ThingfishError,
)

__version__ = "0.1.0"

__all__ = [
    "ObjectStore",
    "FetchResult",
    "RequestContext",
    "ResourceProxy",
    # Backends
    "Metastore",
    "MemoryMetastore",
    "MarshalledMetastore",
    "SqliteMetastore",
    "Datastore",
    "MemoryDatastore",
    "FilesystemDatastore",
    "FileLock",
    "get_metastore",
    "get_datastore",
    "register_metastore",
    "register_datastore",
    "list_metastores",
    "list_datastores",
    # Configuration
    "ThingfishConfig",
    "DatastoreConfig",
    "MetastoreConfig",
    "create_thingfish_config",
    # Errors
    "ThingfishError",
    "ConfigurationError",
    "NotImplementedOperationError",
    "InvalidObjectIdError",
    "ObjectNotFoundError",
    "StoreIntegrityError",
    "LockTimeoutError",
    "DatastoreError",
    "QuotaExceededError",
    "MetastoreError",
    "ProtectedPropertyError",
]
