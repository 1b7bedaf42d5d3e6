"""
SQLite Metastore
================

Metadata backend storing property sets in SQLite through SQLAlchemy.

Schema:
- ``resources``: one row per object id; the autoincrement id records the
  order in which objects were first saved
- ``properties``: one row per (resource, key), the value encoded with
  :func:`thingfish.json_utils.encode_value` so integers, floats, lists and
  datetimes come back with their original types

Usage:
    from thingfish.storage.backends.sqlite_backend import SqliteMetastore

    metastore = SqliteMetastore("metastore.db")
    with metastore.transaction():
        metastore.save(oid, {"format": "image/png", "extent": 4096})
        metastore.merge(oid, {"title": "logo"})

A transaction shares one session for the whole block and commits or rolls
back as a unit.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ...error_handling import MetastoreError, with_error_handling
from ...json_utils import decode_value, encode_value
from ...utils import normalize_oid
from .base import Metastore


Base = declarative_base()


class ResourceRecord(Base):
    """SQLAlchemy model for a stored object."""

    __tablename__ = "resources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    oid = Column(String(36), nullable=False, unique=True)


class PropertyRecord(Base):
    """SQLAlchemy model for one property of a stored object."""

    __tablename__ = "properties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_id = Column(
        Integer, ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("resource_id", "key", name="uq_property_key"),
        Index("idx_property_key", "key"),
    )


class SqliteMetastore(Metastore):
    """SQLite database-based metastore using SQLAlchemy ORM."""

    def __init__(
        self,
        db_file: Union[str, Path] = ":memory:",
        echo: bool = False,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize SQLite metastore.

        Args:
            db_file: Path to SQLite database file, or ":memory:"
            echo: Whether to echo SQL queries (for debugging)
            logger: Logger for diagnostics
        """
        super().__init__(logger)
        self.db_file = str(db_file)
        in_memory = self.db_file == ":memory:"

        if in_memory:
            # One shared connection, otherwise each connection gets its own database
            self.engine = create_engine(
                "sqlite://",
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            Path(self.db_file).parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                f"sqlite:///{self.db_file}",
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine
        )
        self._lock = threading.RLock()
        self._local = threading.local()

        Base.metadata.create_all(self.engine)
        self.logger.debug(f"SqliteMetastore initialized: {self.db_file}")

    # -- sessions -----------------------------------------------------------

    def _current_session(self):
        return getattr(self._local, "session", None)

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._current_session() is not None:
                yield self
                return

            session = self.SessionLocal()
            self._local.session = session
            try:
                yield self
                session.commit()
            except BaseException:
                session.rollback()
                raise
            finally:
                self._local.session = None
                session.close()

    @contextmanager
    def _writing(self):
        with self.transaction():
            yield self._current_session()

    @contextmanager
    def _reading(self):
        with self._lock:
            session = self._current_session()
            if session is not None:
                yield session
            else:
                with self.SessionLocal() as session:
                    yield session

    def _resource(self, session, oid: str, create: bool = False) -> Optional[ResourceRecord]:
        record = session.execute(
            select(ResourceRecord).where(ResourceRecord.oid == oid)
        ).scalar_one_or_none()
        if record is None and create:
            record = ResourceRecord(oid=oid)
            session.add(record)
            session.flush()
        return record

    def _set_properties(self, session, record: ResourceRecord, properties: Mapping[str, Any]):
        if not properties:
            return
        session.execute(
            delete(PropertyRecord).where(
                PropertyRecord.resource_id == record.id,
                PropertyRecord.key.in_(list(properties.keys())),
            )
        )
        session.add_all(
            PropertyRecord(resource_id=record.id, key=key, value=encode_value(value))
            for key, value in properties.items()
        )
        session.flush()

    # -- primitives ---------------------------------------------------------

    @with_error_handling(MetastoreError)
    def save(self, oid: str, properties: Mapping[str, Any]) -> None:
        with self._writing() as session:
            record = self._resource(session, normalize_oid(oid), create=True)
            session.execute(
                delete(PropertyRecord).where(PropertyRecord.resource_id == record.id)
            )
            self._set_properties(session, record, properties)

    @with_error_handling(MetastoreError)
    def merge(self, oid: str, properties: Mapping[str, Any]) -> None:
        with self._writing() as session:
            record = self._resource(session, normalize_oid(oid), create=True)
            self._set_properties(session, record, properties)

    @with_error_handling(MetastoreError)
    def fetch(self, oid: str, *keys: str) -> Optional[Dict[str, Any]]:
        with self._reading() as session:
            record = self._resource(session, normalize_oid(oid))
            if record is None:
                return None

            query = select(PropertyRecord.key, PropertyRecord.value).where(
                PropertyRecord.resource_id == record.id
            )
            if keys:
                query = query.where(PropertyRecord.key.in_(keys))
            rows = session.execute(query.order_by(PropertyRecord.id)).all()
            return {key: decode_value(value) for key, value in rows}

    @with_error_handling(MetastoreError)
    def fetch_value(self, oid: str, key: str) -> Any:
        with self._reading() as session:
            value = session.execute(
                select(PropertyRecord.value)
                .join(ResourceRecord, PropertyRecord.resource_id == ResourceRecord.id)
                .where(ResourceRecord.oid == normalize_oid(oid), PropertyRecord.key == key)
            ).scalar_one_or_none()
            return None if value is None else decode_value(value)

    @with_error_handling(MetastoreError)
    def remove(self, oid: str, *keys: str) -> None:
        with self._writing() as session:
            record = self._resource(session, normalize_oid(oid))
            if record is None:
                return

            statement = delete(PropertyRecord).where(PropertyRecord.resource_id == record.id)
            if keys:
                session.execute(statement.where(PropertyRecord.key.in_(keys)))
            else:
                session.execute(statement)
                session.execute(delete(ResourceRecord).where(ResourceRecord.id == record.id))

    @with_error_handling(MetastoreError)
    def remove_except(self, oid: str, *keys: str) -> None:
        with self._writing() as session:
            record = self._resource(session, normalize_oid(oid))
            if record is None:
                return

            statement = delete(PropertyRecord).where(PropertyRecord.resource_id == record.id)
            if keys:
                statement = statement.where(PropertyRecord.key.not_in(keys))
            session.execute(statement)

    @with_error_handling(MetastoreError)
    def include(self, oid: str) -> bool:
        with self._reading() as session:
            return self._resource(session, normalize_oid(oid)) is not None

    @with_error_handling(MetastoreError)
    def size(self) -> int:
        with self._reading() as session:
            return session.execute(select(func.count(ResourceRecord.id))).scalar_one()

    @with_error_handling(MetastoreError)
    def oids(self) -> List[str]:
        with self._reading() as session:
            return list(
                session.execute(
                    select(ResourceRecord.oid).order_by(ResourceRecord.id)
                ).scalars()
            )

    # -- bulk operations ----------------------------------------------------

    @with_error_handling(MetastoreError)
    def iter_resources(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        with self._reading() as session:
            rows = session.execute(
                select(ResourceRecord.oid, PropertyRecord.key, PropertyRecord.value)
                .outerjoin(PropertyRecord, PropertyRecord.resource_id == ResourceRecord.id)
                .order_by(ResourceRecord.id, PropertyRecord.id)
            ).all()

        resources: Dict[str, Dict[str, Any]] = {}
        for oid, key, value in rows:
            properties = resources.setdefault(oid, {})
            if key is not None:
                properties[key] = decode_value(value)
        return iter(resources.items())

    @with_error_handling(MetastoreError)
    def clear(self) -> int:
        with self._writing() as session:
            count = session.execute(select(func.count(ResourceRecord.id))).scalar_one()
            session.execute(delete(PropertyRecord))
            session.execute(delete(ResourceRecord))
        self.logger.debug(f"Cleared {count} property sets")
        return count

    def close(self) -> None:
        """Dispose of the engine's connections."""
        self.engine.dispose()
