"""
Configuration Management for Thingfish
======================================

Configuration is split into one dataclass per store, combined by
``ThingfishConfig``. Each dataclass validates itself on construction and
knows how to turn itself into the keyword arguments its backend's
constructor expects.

Usage:
    from thingfish.config import ThingfishConfig, DatastoreConfig, MetastoreConfig

    config = ThingfishConfig(
        datastore=DatastoreConfig(backend="filesystem", datadir="/srv/data"),
        metastore=MetastoreConfig(backend="sqlite", db_file="/srv/meta.db"),
    )

    # Or from a plain mapping, e.g. parsed from a config file
    config = ThingfishConfig.from_dict(
        {"datastore": {"backend": "memory", "maxsize": 1048576}}
    )
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .error_handling import ConfigurationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class DatastoreConfig:
    """Configuration for the blob datastore."""

    backend: str = "memory"
    datadir: Optional[PathLike] = None
    spooldir: Optional[PathLike] = None
    maxsize: Optional[int] = 2 ** 18
    hashdepth: int = 4
    bufsize: int = 8192

    def __post_init__(self):
        """Validate datastore configuration."""
        if not self.backend:
            raise ConfigurationError("datastore backend must be named")

        if self.maxsize is not None and self.maxsize < 0:
            raise ConfigurationError("maxsize must be non-negative")

        if self.hashdepth not in (0, 1, 2, 4, 8):
            raise ConfigurationError(
                f"hashdepth must be one of 0, 1, 2, 4, 8; got {self.hashdepth}"
            )

        if self.bufsize <= 0:
            raise ConfigurationError("bufsize must be positive")

        if self.backend == "filesystem" and self.datadir is None:
            raise ConfigurationError("filesystem datastore requires datadir")

        logger.debug(
            f"Datastore configured: backend={self.backend}, maxsize={self.maxsize}"
        )

    def backend_options(self) -> Dict[str, Any]:
        """Keyword arguments for the configured backend's constructor."""
        if self.backend == "memory":
            return {"maxsize": self.maxsize}
        if self.backend == "filesystem":
            return {
                "datadir": self.datadir,
                "spooldir": self.spooldir,
                "maxsize": self.maxsize,
                "hashdepth": self.hashdepth,
                "bufsize": self.bufsize,
            }
        # Custom backends get every option that was set
        return {
            key: value
            for key, value in {
                "datadir": self.datadir,
                "spooldir": self.spooldir,
                "maxsize": self.maxsize,
            }.items()
            if value is not None
        }


@dataclass
class MetastoreConfig:
    """Configuration for the metadata store."""

    backend: str = "memory"
    datadir: Optional[PathLike] = None
    db_file: PathLike = ":memory:"
    lock_timeout: Optional[float] = 30.0
    lock_retry: float = 0.1

    def __post_init__(self):
        """Validate metastore configuration."""
        if not self.backend:
            raise ConfigurationError("metastore backend must be named")

        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ConfigurationError("lock_timeout must be non-negative")

        if self.lock_retry <= 0:
            raise ConfigurationError("lock_retry must be positive")

        if self.backend == "marshalled" and self.datadir is None:
            raise ConfigurationError("marshalled metastore requires datadir")

        logger.debug(f"Metastore configured: backend={self.backend}")

    def backend_options(self) -> Dict[str, Any]:
        """Keyword arguments for the configured backend's constructor."""
        if self.backend == "memory":
            return {}
        if self.backend == "marshalled":
            return {
                "datadir": self.datadir,
                "lock_timeout": self.lock_timeout,
                "lock_retry": self.lock_retry,
            }
        if self.backend == "sqlite":
            return {"db_file": self.db_file}
        return {"datadir": self.datadir} if self.datadir is not None else {}


@dataclass
class ThingfishConfig:
    """Complete configuration for an object store."""

    datastore: DatastoreConfig = field(default_factory=DatastoreConfig)
    metastore: MetastoreConfig = field(default_factory=MetastoreConfig)

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "ThingfishConfig":
        """
        Build a configuration from nested mappings.

        Unknown top-level sections and unknown options raise
        ConfigurationError.
        """
        unknown = set(options) - {"datastore", "metastore"}
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")

        try:
            return cls(
                datastore=DatastoreConfig(**dict(options.get("datastore") or {})),
                metastore=MetastoreConfig(**dict(options.get("metastore") or {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration option: {e}") from e


def create_thingfish_config(**overrides) -> ThingfishConfig:
    """
    Create a configuration with flat overrides.

    Keys are prefixed with the section they belong to, for example
    ``datastore_backend="filesystem"`` or ``metastore_lock_timeout=5``.
    """
    sections: Dict[str, Dict[str, Any]] = {"datastore": {}, "metastore": {}}
    for key, value in overrides.items():
        section, _, option = key.partition("_")
        if section not in sections or not option:
            raise ConfigurationError(f"Unknown configuration option: {key}")
        sections[section][option] = value
    return ThingfishConfig.from_dict(sections)
