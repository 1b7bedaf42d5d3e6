"""
Tests for the Metastore interface and built-in backends.

Every test in the contract classes runs against the memory, marshalled and
SQLite metastores.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from thingfish.error_handling import (
    ConfigurationError,
    MetastoreError,
    NotImplementedOperationError,
    ProtectedPropertyError,
)
from thingfish.metadata import MarshalledMetastore, MemoryMetastore
from thingfish.resource import RequestContext, ResourceProxy
from thingfish.storage.backends import Metastore, SqliteMetastore
from thingfish.utils import make_oid

from conftest import METASTORE_BACKENDS, build_metastore


class TestMetastorePrimitives:
    """save/merge/fetch/remove behaviour."""

    def test_save_and_fetch(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"format": "text/plain", "extent": 42})
        assert metastore.fetch(oid) == {"format": "text/plain", "extent": 42}

    def test_merge_versus_save(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1, "b": 2})
        metastore.merge(oid, {"b": 3})
        assert metastore.fetch(oid) == {"a": 1, "b": 3}

        metastore.save(oid, {"c": 4})
        assert metastore.fetch(oid) == {"c": 4}

    def test_merge_unknown_oid_creates_it(self, metastore):
        oid = make_oid()
        metastore.merge(oid, {"title": "new"})
        assert metastore.include(oid)
        assert metastore.oids() == [oid]
        assert metastore.fetch(oid) == {"title": "new"}

    def test_fetch_unknown_returns_none(self, metastore):
        assert metastore.fetch(make_oid()) is None
        assert metastore.fetch(make_oid(), "title") is None

    def test_fetch_subset_omits_absent_keys(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1, "b": 2, "c": 3})
        assert metastore.fetch(oid, "a", "c", "missing") == {"a": 1, "c": 3}
        assert metastore.fetch(oid, "missing") == {}

    def test_fetch_value(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"title": "report.txt"})
        assert metastore.fetch_value(oid, "title") == "report.txt"
        assert metastore.fetch_value(oid, "missing") is None
        assert metastore.fetch_value(make_oid(), "title") is None

    def test_fetch_returns_a_copy(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"tags": ["a", "b"], "title": "x"})
        fetched = metastore.fetch(oid)
        fetched["title"] = "changed"
        fetched["tags"].append("c")
        assert metastore.fetch(oid) == {"tags": ["a", "b"], "title": "x"}

    def test_save_copies_input(self, metastore):
        oid = make_oid()
        properties = {"tags": ["a"]}
        metastore.save(oid, properties)
        properties["tags"].append("b")
        assert metastore.fetch_value(oid, "tags") == ["a"]

    def test_remove_keys(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1, "b": 2, "c": 3})
        metastore.remove(oid, "a", "b")
        assert metastore.fetch(oid) == {"c": 3}
        assert metastore.include(oid)

    def test_remove_absent_key_is_noop(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1})
        metastore.remove(oid, "missing")
        metastore.remove(oid, "missing")
        assert metastore.fetch(oid) == {"a": 1}

    def test_remove_whole_set(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1})
        metastore.remove(oid)
        assert not metastore.include(oid)
        assert metastore.fetch(oid) is None
        assert metastore.size() == 0

    def test_remove_unknown_oid_is_noop(self, metastore):
        metastore.remove(make_oid())
        metastore.remove(make_oid(), "title")
        assert metastore.size() == 0

    def test_remove_except(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1, "b": 2, "c": 3})
        metastore.remove_except(oid, "a")
        assert metastore.fetch(oid) == {"a": 1}

    def test_remove_except_nothing_kept(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"a": 1, "b": 2})
        metastore.remove_except(oid)
        assert metastore.fetch(oid) == {}
        assert metastore.include(oid)

    def test_oids_are_case_insensitive(self, metastore):
        oid = make_oid()
        upper = oid.upper()
        metastore.save(upper, {"title": "shouting"})
        assert metastore.include(oid)
        assert oid in metastore
        assert metastore.fetch(oid) == {"title": "shouting"}
        assert metastore.oids() == [oid]

        metastore.merge(oid, {"extent": 1})
        assert metastore.fetch_value(upper, "extent") == 1
        metastore.remove(upper)
        assert not metastore.include(oid)

    def test_insertion_order(self, metastore):
        oids = [make_oid() for _ in range(5)]
        for oid in oids:
            metastore.save(oid, {"title": oid})
        # Re-saving keeps the original position
        metastore.save(oids[0], {"title": "again"})

        assert metastore.oids() == oids
        assert list(metastore.each_oid()) == oids
        assert list(metastore) == oids
        assert metastore.size() == len(metastore) == 5

    def test_typed_values_round_trip(self, metastore):
        oid = make_oid()
        created = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
        properties = {
            "extent": 1024,
            "ratio": 0.5,
            "flag": True,
            "created": created,
            "tags": ["a", "b"],
            "title": "naïve café",
        }
        metastore.save(oid, properties)
        fetched = metastore.fetch(oid)
        assert fetched == properties
        assert isinstance(fetched["extent"], int)
        assert isinstance(fetched["created"], datetime)

    def test_append_upgrades_to_multi_value(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"tag": "blue"})
        metastore.append(oid, {"tag": "green"})
        assert metastore.fetch_value(oid, "tag") == ["blue", "green"]

        metastore.append(oid, {"tag": "red", "author": "mahlon"})
        assert metastore.fetch(oid) == {
            "tag": ["blue", "green", "red"],
            "author": "mahlon",
        }

    def test_has_property(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"title": "x"})
        assert metastore.has_property(oid, "title")
        assert not metastore.has_property(oid, "format")
        assert not metastore.has_property(make_oid(), "title")

    def test_oid_properties_proxy(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"title": "x"})
        proxy = metastore[oid]
        assert isinstance(proxy, ResourceProxy)
        assert proxy.oid == oid
        assert proxy.title == "x"
        assert metastore.oid_properties(oid.upper()) == proxy

    def test_extract_default_metadata(self, metastore):
        oid = make_oid()
        context = RequestContext(
            content_type="image/png",
            content_length=2048,
            user_agent="curl/8.0",
            remote_addr="10.0.0.5",
        )
        proxy = metastore.extract_default_metadata(oid, context)
        properties = metastore.fetch(oid)
        assert proxy.format == "image/png"
        assert properties["extent"] == 2048
        assert properties["useragent"] == "curl/8.0"
        assert properties["uploadaddress"] == "10.0.0.5"
        assert properties["created"] == properties["modified"]

    def test_iter_resources(self, metastore):
        first, second = make_oid(), make_oid()
        metastore.save(first, {"n": 1})
        metastore.save(second, {"n": 2})
        assert list(metastore.iter_resources()) == [(first, {"n": 1}), (second, {"n": 2})]


class TestRelations:
    """Related object lookup."""

    def test_fetch_related_oids(self, metastore):
        parent, child_b, child_c, other = (make_oid() for _ in range(4))
        metastore.save(parent, {"title": "A"})
        metastore.save(child_b, {"relation": parent, "relationship": "thumbnail"})
        metastore.save(child_c, {"relation": parent.upper(), "relationship": "preview"})
        metastore.save(other, {"relation": make_oid()})

        assert metastore.fetch_related_oids(parent) == {child_b, child_c}
        assert metastore.fetch_related_oids(parent.upper()) == {child_b, child_c}

    def test_no_related(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"title": "lonely"})
        assert metastore.fetch_related_oids(oid) == set()


class TestMetastoreSearch:
    """search() and the find_by_* queries through each backend."""

    @pytest.fixture
    def populated(self, metastore):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        records = [
            {"format": "audio/mp3", "title": "Zebra", "created": base, "extent": 300},
            {"format": "image/png", "title": "apple", "created": base, "extent": 20},
            {"format": "audio/mp3", "title": "Mango", "created": base + timedelta(days=1)},
            {"format": "text/plain", "title": "Mango", "created": base, "extent": 1000},
            {"format": "image/jpeg", "title": "Devil's Tower", "tags": ["rock", "park"]},
        ]
        oids = []
        for record in records:
            oid = make_oid()
            metastore.save(oid, record)
            oids.append(oid)
        return metastore, oids

    def test_search_all_in_insertion_order(self, populated):
        metastore, oids = populated
        assert metastore.search() == oids

    def test_search_criteria_and(self, populated):
        metastore, oids = populated
        found = metastore.search(criteria={"format": "audio/mp3"})
        assert found == [oids[0], oids[2]]
        for oid in found:
            assert metastore.fetch_value(oid, "format") == "audio/mp3"

        assert metastore.search(criteria={"format": "audio/mp3", "title": "Mango"}) == [oids[2]]

    def test_search_ignores_none_criteria(self, populated):
        metastore, oids = populated
        assert metastore.search(criteria={"format": "image/png", "title": None}) == [oids[1]]

    def test_search_matches_list_member(self, populated):
        metastore, oids = populated
        assert metastore.search(criteria={"tags": "park"}) == [oids[4]]

    def test_search_order_by_title_then_created(self, populated):
        metastore, oids = populated
        found = metastore.search(order=["title", "created"])
        # Uppercase titles sort before lowercase ones
        assert found == [oids[4], oids[3], oids[2], oids[0], oids[1]]

    def test_search_order_numeric(self, populated):
        metastore, oids = populated
        found = metastore.search(order="extent")
        assert found[:3] == [oids[1], oids[0], oids[3]]
        assert set(found[3:]) == {oids[2], oids[4]}

    def test_search_limit_offset_reverse(self, populated):
        metastore, oids = populated
        assert metastore.search(limit=2) == oids[:2]
        assert metastore.search(offset=3) == oids[3:]
        assert metastore.search(offset=1, limit=2) == oids[1:3]
        assert metastore.search(offset=10) == []
        assert metastore.search(limit=0) == []
        assert metastore.search(reverse=True) == list(reversed(oids))

    def test_find_by_exact_properties(self, populated):
        metastore, oids = populated
        assert metastore.find_by_exact_properties({"title": "Mango"}) == [oids[2], oids[3]]
        assert metastore.find_by_exact_properties({"title": "mango"}) == []
        assert metastore.find_by_exact_properties({}) == []

    def test_find_by_matching_properties(self, populated):
        metastore, oids = populated
        assert metastore.find_by_matching_properties({"title": "dev*"}) == [oids[4]]
        assert metastore.find_by_matching_properties({"format": "AUDIO/*"}) == [oids[0], oids[2]]
        assert metastore.find_by_matching_properties(
            {"format": "audio/*", "title": "m*"}
        ) == [oids[2]]
        assert metastore.find_by_matching_properties({}) == []

    def test_find_by_matching_list_of_patterns(self, populated):
        metastore, oids = populated
        assert metastore.find_by_matching_properties({"title": ["*a*", "m*"]}) == [
            oids[2],
            oids[3],
        ]
        assert metastore.find_by_matching_properties({"tags": ["r*", "p*"]}) == [oids[4]]


class TestSafeProperties:
    """merge_safe, remove_safe and set_safe_value protect operational keys."""

    def test_merge_safe_drops_operational_keys(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"checksum": "real", "format": "text/plain"})
        metastore.merge_safe(oid, {"checksum": "forged", "title": "ok"})
        assert metastore.fetch(oid) == {
            "checksum": "real",
            "format": "text/plain",
            "title": "ok",
        }

    def test_remove_safe_keeps_operational_keys(self, metastore):
        oid = make_oid()
        metastore.save(oid, {"checksum": "real", "title": "x", "author": "y"})
        metastore.remove_safe(oid, "checksum", "title")
        assert metastore.fetch(oid) == {"checksum": "real", "author": "y"}

    def test_set_safe_value(self, metastore):
        oid = make_oid()
        metastore.set_safe_value(oid, "title", "fine")
        assert metastore.fetch_value(oid, "title") == "fine"

    def test_set_safe_value_rejects_operational_key(self, metastore):
        oid = make_oid()
        with pytest.raises(ProtectedPropertyError, match="used by the system") as exc_info:
            metastore.set_safe_value(oid, "extent", 5)
        assert exc_info.value.status == 403
        assert exc_info.value.context["key"] == "extent"
        assert not metastore.include(oid)


class TestBulkOperations:
    """Export, import, migration and property listings."""

    def test_property_keys_and_values(self, metastore):
        metastore.save(make_oid(), {"format": "a", "title": "x"})
        metastore.save(make_oid(), {"format": "b", "tags": ["x", "y"]})
        metastore.save(make_oid(), {"format": "a"})
        assert metastore.get_all_property_keys() == ["format", "tags", "title"]
        assert metastore.get_all_property_values("format") == ["a", "b"]
        assert metastore.get_all_property_values("tags") == ["x", "y"]
        assert metastore.get_all_property_values("missing") == []

    def test_dump_and_load(self, metastore):
        first, second = make_oid(), make_oid()
        metastore.save(first, {"n": 1})
        metastore.save(second, {"n": 2})
        dumped = metastore.dump_store()
        assert dumped == {first: {"n": 1}, second: {"n": 2}}

        metastore.save(make_oid(), {"n": 3})
        metastore.load_store(dumped)
        assert metastore.oids() == [first, second]

    @pytest.mark.parametrize("target_kind", METASTORE_BACKENDS)
    def test_migrate_between_backends(self, metastore, target_kind, tmp_path):
        first, second = make_oid(), make_oid()
        created = datetime(2024, 5, 1, tzinfo=timezone.utc)
        metastore.save(first, {"title": "one", "created": created})
        metastore.save(second, {"title": "two", "tags": ["x"]})

        target = build_metastore(target_kind, tmp_path / "target")
        target.save(make_oid(), {"stale": True})
        target.migrate_from(metastore)

        assert target.oids() == [first, second]
        assert target.fetch(first) == {"title": "one", "created": created}
        assert target.fetch(second) == {"title": "two", "tags": ["x"]}
        target.close()

    def test_clear(self, metastore):
        for _ in range(3):
            metastore.save(make_oid(), {"n": 1})
        assert metastore.clear() == 3
        assert metastore.size() == 0
        assert metastore.clear() == 0


class TestTransactions:
    """transaction() groups operations."""

    def test_transaction_commits(self, metastore):
        oid = make_oid()
        with metastore.transaction():
            metastore.save(oid, {"a": 1})
            metastore.merge(oid, {"b": 2})
            assert metastore.fetch(oid) == {"a": 1, "b": 2}
        assert metastore.fetch(oid) == {"a": 1, "b": 2}

    def test_nested_transactions(self, metastore):
        oid = make_oid()
        with metastore.transaction():
            with metastore.transaction():
                metastore.save(oid, {"a": 1})
            metastore.merge(oid, {"b": 2})
        assert metastore.fetch(oid) == {"a": 1, "b": 2}

    @pytest.mark.parametrize("kind", ["memory", "marshalled", "sqlite"])
    def test_transaction_rolls_back_on_error(self, kind, tmp_path):
        metastore = build_metastore(kind, tmp_path)
        oid = make_oid()
        metastore.save(oid, {"title": "original"})

        with pytest.raises(RuntimeError):
            with metastore.transaction():
                metastore.merge(oid, {"title": "changed"})
                metastore.save(make_oid(), {"title": "added"})
                raise RuntimeError("boom")

        assert metastore.fetch(oid) == {"title": "original"}
        assert metastore.size() == 1
        metastore.close()


class TestMarshalledMetastore:
    """Persistence and locking of the marshalled backend."""

    def test_persists_between_instances(self, tmp_path):
        oid = make_oid()
        MarshalledMetastore(tmp_path / "meta").save(oid, {"title": "kept"})
        reopened = MarshalledMetastore(tmp_path / "meta")
        assert reopened.fetch(oid) == {"title": "kept"}

    def test_file_layout(self, tmp_path):
        metastore = MarshalledMetastore(tmp_path / "meta")
        metastore.save(make_oid(), {"n": 1})
        assert (tmp_path / "meta" / "metadata").is_file()
        assert not (tmp_path / "meta" / "metadata.lock").exists()
        assert not (tmp_path / "meta" / "metadata.new").exists()

    def test_lock_held_during_transaction(self, tmp_path):
        metastore = MarshalledMetastore(tmp_path / "meta")
        with metastore.transaction():
            assert (tmp_path / "meta" / "metadata.lock").exists()
        assert not (tmp_path / "meta" / "metadata.lock").exists()

    def test_corrupt_file_raises_metastore_error(self, tmp_path):
        metastore = MarshalledMetastore(tmp_path / "meta")
        (tmp_path / "meta" / "metadata").write_bytes(b"\x00\x01 not a pickle")
        with pytest.raises(MetastoreError):
            metastore.fetch(make_oid())

    def test_missing_datadir(self):
        with pytest.raises(ConfigurationError):
            MarshalledMetastore(None)


class TestSqliteMetastore:
    """SQLite specifics."""

    def test_in_memory_database(self):
        metastore = SqliteMetastore()
        oid = make_oid()
        metastore.save(oid, {"title": "memory"})
        assert metastore.fetch(oid) == {"title": "memory"}
        metastore.close()

    def test_persists_between_instances(self, tmp_path):
        oid = make_oid()
        first = SqliteMetastore(tmp_path / "meta.db")
        first.save(oid, {"extent": 12})
        first.close()

        reopened = SqliteMetastore(tmp_path / "meta.db")
        assert reopened.fetch(oid) == {"extent": 12}
        reopened.close()

    def test_database_errors_become_metastore_errors(self, tmp_path):
        metastore = SqliteMetastore(tmp_path / "meta.db")
        with pytest.raises(MetastoreError) as exc_info:
            metastore.save(make_oid(), {None: "keyless"})
        assert exc_info.value.__cause__ is not None
        metastore.close()


class TestAbstractMetastore:
    """The base class can't be used directly."""

    def test_cannot_instantiate_base(self):
        with pytest.raises(TypeError):
            Metastore()

    def test_super_call_raises_not_implemented(self):
        class DelegatingMetastore(MemoryMetastore):
            def merge(self, oid, properties):
                return Metastore.merge(self, oid, properties)

        with pytest.raises(NotImplementedOperationError, match="merge"):
            DelegatingMetastore().merge(make_oid(), {"a": 1})

    def test_injected_logger(self):
        custom = logging.getLogger("tests.custom")
        assert MemoryMetastore(logger=custom).logger is custom

    def test_default_logger_named_after_backend_module(self, tmp_path):
        assert MemoryMetastore().logger.name == "thingfish.metadata"
        assert MarshalledMetastore(tmp_path / "meta").logger.name == "thingfish.metadata"
        with SqliteMetastore() as metastore:
            assert metastore.logger.name == "thingfish.storage.backends.sqlite_backend"
