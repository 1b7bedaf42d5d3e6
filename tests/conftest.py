"""
Shared fixtures for the thingfish test suite.

Backend fixtures are parametrized so every contract test runs against each
built-in datastore and metastore.
"""

import logging

import pytest

from thingfish.metadata import MarshalledMetastore, MemoryMetastore
from thingfish.storage import ObjectStore
from thingfish.storage.backends import (
    FilesystemDatastore,
    MemoryDatastore,
    SqliteMetastore,
)

DATASTORE_BACKENDS = ["memory", "filesystem"]
METASTORE_BACKENDS = ["memory", "marshalled", "sqlite"]


def build_datastore(kind, base_dir, **options):
    """Create a datastore of the given kind rooted under ``base_dir``."""
    if kind == "memory":
        options.setdefault("maxsize", None)
        return MemoryDatastore(**options)
    if kind == "filesystem":
        return FilesystemDatastore(base_dir / "data", **options)
    raise ValueError(f"Unknown datastore kind: {kind}")


def build_metastore(kind, base_dir, **options):
    """Create a metastore of the given kind rooted under ``base_dir``."""
    if kind == "memory":
        return MemoryMetastore(**options)
    if kind == "marshalled":
        options.setdefault("lock_timeout", 5.0)
        options.setdefault("lock_retry", 0.01)
        return MarshalledMetastore(base_dir / "metastore", **options)
    if kind == "sqlite":
        return SqliteMetastore(base_dir / "metastore.db", **options)
    raise ValueError(f"Unknown metastore kind: {kind}")


@pytest.fixture(params=DATASTORE_BACKENDS)
def datastore(request, tmp_path):
    """Each built-in datastore, with no quota."""
    store = build_datastore(request.param, tmp_path)
    yield store
    store.close()


@pytest.fixture(params=METASTORE_BACKENDS)
def metastore(request, tmp_path):
    """Each built-in metastore."""
    store = build_metastore(request.param, tmp_path)
    yield store
    store.close()


@pytest.fixture
def object_store(datastore, metastore):
    """An ObjectStore over every datastore/metastore combination."""
    return ObjectStore(datastore, metastore)


@pytest.fixture
def memory_store():
    """A plain in-memory ObjectStore for coordination tests."""
    with ObjectStore(MemoryDatastore(maxsize=None), MemoryMetastore()) as store:
        yield store


@pytest.fixture
def debug_logging(caplog):
    """Capture thingfish debug records."""
    caplog.set_level(logging.DEBUG, logger="thingfish")
    return caplog
