"""
Storage Layer
=============

Object storage infrastructure providing:
- Pluggable metastores (memory, marshalled file, SQLite)
- Pluggable datastores (memory, hashed filesystem tree)
- Cross-process file locking
- ObjectStore, which keeps blobs and their metadata in step

Usage:
    # Coordinated storage
    from thingfish.storage import ObjectStore

    store = ObjectStore.from_config()
    oid = store.store(b"data", metadata={"title": "notes.txt"})
    result = store.fetch(oid)

    # Access backends directly
    from thingfish.storage.backends import FilesystemDatastore, SqliteMetastore
"""

# Backends first; thingfish.metadata depends on the Metastore base class
from .backends import (
    Datastore,
    FilesystemDatastore,
    MemoryDatastore,
    Metastore,
    get_datastore,
    get_metastore,
)

from .locking import FileLock

from .blob_store import FetchResult, ObjectStore

__all__ = [
    # Coordination
    "ObjectStore",
    "FetchResult",
    # Backends
    "Metastore",
    "Datastore",
    "MemoryDatastore",
    "FilesystemDatastore",
    "get_metastore",
    "get_datastore",
    # Locking
    "FileLock",
]
