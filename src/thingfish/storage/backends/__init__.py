"""
Storage Backends
================

Pluggable backends for object metadata and blob data.

Metastores:
- MemoryMetastore: in-process dict
- MarshalledMetastore: pickled dict on disk with a cross-process lock file
- SqliteMetastore: SQLite database via SQLAlchemy

Datastores:
- MemoryDatastore: in-process dict with a size quota
- FilesystemDatastore: hashed directory tree with spooled writes

Registry APIs:
- Metadata: register_metastore(), get_metastore(), list_metastores()
- Blobs: register_datastore(), get_datastore(), list_datastores()

Usage:
    from thingfish.storage.backends import get_metastore, get_datastore

    metastore = get_metastore("sqlite", db_file="metastore.db")
    datastore = get_datastore("filesystem", datadir="./data")

    # Register a custom metastore
    from thingfish.storage.backends import Metastore, register_metastore

    class RedisMetastore(Metastore):
        ...

    register_metastore("redis", RedisMetastore)
"""

import logging
from typing import Any, Dict, List, Type

from ...error_handling import ConfigurationError
from .base import Metastore

# Implementations live in thingfish.metadata; import after the base class
from thingfish.metadata import DictMetastore, MarshalledMetastore, MemoryMetastore

from .sqlite_backend import SqliteMetastore

logger = logging.getLogger(__name__)


# =============================================================================
# Metastore Registry
# =============================================================================

# Registry storage
_metastore_registry: Dict[str, Type[Metastore]] = {}
_builtin_metastores = {"memory", "marshalled", "sqlite"}


def _initialize_builtin_metastores():
    """Initialize registry with built-in backends."""
    _metastore_registry["memory"] = MemoryMetastore
    _metastore_registry["marshalled"] = MarshalledMetastore
    _metastore_registry["sqlite"] = SqliteMetastore


# Initialize on module load
_initialize_builtin_metastores()


def register_metastore(
    name: str, backend_class: Type[Metastore], force: bool = False
) -> None:
    """
    Register a custom metastore backend.

    Args:
        name: Unique name for the backend (e.g., "postgresql", "redis")
        backend_class: Class that implements the Metastore interface
        force: If True, overwrite existing registration

    Raises:
        ConfigurationError: If name already registered and force=False
        ConfigurationError: If backend_class doesn't inherit from Metastore
    """
    if not isinstance(backend_class, type):
        raise ConfigurationError(
            f"backend_class must be a class, got {type(backend_class)}"
        )

    if not issubclass(backend_class, Metastore):
        raise ConfigurationError(
            f"Backend class {backend_class.__name__} must inherit from Metastore"
        )

    if name in _metastore_registry and not force:
        raise ConfigurationError(
            f"Metastore '{name}' already registered. "
            f"Use force=True to overwrite or unregister_metastore() first."
        )

    _metastore_registry[name] = backend_class
    logger.info(f"Registered metastore '{name}' ({backend_class.__name__})")


def unregister_metastore(name: str) -> bool:
    """
    Unregister a metastore backend.

    Returns:
        True if backend was unregistered, False if not found

    Note:
        Built-in backends can be unregistered but will be re-registered on
        module reload.
    """
    if name in _metastore_registry:
        del _metastore_registry[name]
        logger.info(f"Unregistered metastore '{name}'")
        return True

    logger.warning(f"Metastore '{name}' not found for unregistration")
    return False


def get_metastore(name: str, **options) -> Metastore:
    """
    Get a metastore instance by name.

    Args:
        name: Name of the registered backend
        **options: Backend-specific configuration options

    Returns:
        Configured Metastore instance

    Raises:
        ConfigurationError: If the name isn't registered or the options are bad

    Example:
        >>> metastore = get_metastore("memory")
        >>> metastore = get_metastore("marshalled", datadir="./meta", lock_timeout=5)
    """
    if name not in _metastore_registry:
        available = list(_metastore_registry.keys())
        raise ConfigurationError(
            f"Unknown metastore: '{name}'. Available backends: {available}",
            {"name": name, "available": available},
        )

    backend_class = _metastore_registry[name]

    try:
        return backend_class(**options)
    except TypeError as e:
        raise ConfigurationError(
            f"Failed to create metastore '{name}' with options {options}: {e}",
            {"name": name},
        ) from e


def list_metastores() -> List[Dict[str, Any]]:
    """
    List all registered metastore backends.

    Returns:
        List of dictionaries with backend information:
        - name: Backend name
        - class: Backend class name
        - is_builtin: Whether it's a built-in backend
    """
    return [
        {
            "name": name,
            "class": backend_class.__name__,
            "is_builtin": name in _builtin_metastores,
        }
        for name, backend_class in _metastore_registry.items()
    ]


# =============================================================================
# Datastore Registry
# =============================================================================

from .blob_backends import (  # noqa: F401, E402
    Datastore,
    FilesystemDatastore,
    MemoryDatastore,
    get_datastore,
    list_datastores,
    register_datastore,
    unregister_datastore,
)


__all__ = [
    # Metastore - Base interface
    "Metastore",
    "DictMetastore",
    # Metastore - Built-in backends
    "MemoryMetastore",
    "MarshalledMetastore",
    "SqliteMetastore",
    # Metastore - Registry API
    "register_metastore",
    "unregister_metastore",
    "get_metastore",
    "list_metastores",
    # Datastore - Base interface
    "Datastore",
    # Datastore - Built-in backends
    "FilesystemDatastore",
    "MemoryDatastore",
    # Datastore - Registry API
    "register_datastore",
    "unregister_datastore",
    "get_datastore",
    "list_datastores",
]
