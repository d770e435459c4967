"""
Unit tests for IdentityMapStore: round trip of entries and exceptions, the
data-version marker and the one-time import of legacy JSON mapping files.
"""

import json

import pytest

from eds_graph_sync.db import ExceptionEntry
from eds_graph_sync.db import IdentityMap
from eds_graph_sync.db import IdentityMapStore
from eds_graph_sync.db import mapping_file_stem
from eds_graph_sync.db import query_status
from eds_graph_sync.models import MappingConsistencyError
from tests.conftest import DEST_CAL_ID
from tests.conftest import USER


class TestIdentityMap:
    def test_add_replaces_previous_owner_of_destination(self):
        """A destination id is owned by at most one source id."""
        identity_map = IdentityMap()
        identity_map.add("A1", "dst-1", "s1")
        identity_map.add("A2", "dst-1", "s2")

        assert "A1" not in identity_map
        assert identity_map.get("A2").destination_id == "dst-1"

    def test_add_resets_exceptions(self):
        identity_map = IdentityMap()
        identity_map.add("S1", "dst-1", "s1")
        identity_map.update_exception("S1", "2026-03-16", None)

        identity_map.add("S1", "dst-2", "s2")

        assert identity_map.get("S1").exceptions == {}

    def test_update_exception_requires_entry(self):
        with pytest.raises(MappingConsistencyError):
            IdentityMap().update_exception("missing", "2026-03-16", "occ-1")

    def test_iteration_allows_removal(self):
        identity_map = IdentityMap()
        identity_map.add("A1", "dst-1", None)
        identity_map.add("A2", "dst-2", None)
        for source_id in identity_map:
            identity_map.remove(source_id)
        assert len(identity_map) == 0


class TestPersistence:
    def test_round_trip(self, map_store):
        identity_map = IdentityMap()
        identity_map.add("A1", "dst-1", "2026-02-24T08:00:00+00:00")
        identity_map.add("S1", "dst-2", "stamp")
        identity_map.update_exception("S1", "2026-03-16", None)
        identity_map.update_exception("S1", "2026-03-23", "occ-1", "stamp-2")

        map_store.save(identity_map)
        loaded = map_store.load()

        assert loaded.get("A1").destination_id == "dst-1"
        assert loaded.get("A1").last_sync_stamp == "2026-02-24T08:00:00+00:00"
        assert loaded.get("S1").exceptions == {
            "2026-03-16": ExceptionEntry(None, None),
            "2026-03-23": ExceptionEntry("occ-1", "stamp-2"),
        }

    def test_save_replaces_previous_content(self, map_store):
        first = IdentityMap()
        first.add("A1", "dst-1", None)
        map_store.save(first)

        second = IdentityMap()
        second.add("A2", "dst-2", None)
        map_store.save(second)

        assert set(map_store.load().entries) == {"A2"}

    def test_data_version(self, map_store):
        assert map_store.get_data_version() is None
        map_store.set_data_version("2.15.0")
        map_store.set_data_version("2.16.0")
        assert map_store.get_data_version() == "2.16.0"

    def test_one_file_per_user_and_calendar(self, tmp_path):
        with IdentityMapStore(tmp_path, USER, "Work") as work:
            identity_map = IdentityMap()
            identity_map.add("A1", "dst-1", None)
            work.save(identity_map)
        with IdentityMapStore(tmp_path, USER, "Family") as family:
            assert len(family.load()) == 0

    def test_file_stem_is_filesystem_safe(self):
        assert mapping_file_stem("someone@example.com", "My / Calendar") == (
            "someone@example.com-My_Calendar"
        )


class TestLegacyMigration:
    def _legacy(self, tmp_path):
        store = IdentityMapStore(tmp_path, USER, DEST_CAL_ID)
        store.legacy_path.write_text(
            json.dumps(
                {
                    "A1": {"Id": "dst-1", "LastSyncTimeStamp": "stamp-1"},
                    "S1": {
                        "Id": "dst-2",
                        "LastSyncTimeStamp": "stamp-2",
                        "ExceptionIds": {
                            "2026-03-16": {"Id": None, "LastSyncTimeStamp": None},
                            "2026-03-23": {"Id": "occ-1", "LastSyncTimeStamp": "stamp-3"},
                        },
                    },
                }
            ),
            encoding="utf-8",
        )
        return store

    def test_legacy_file_imported_once_then_deleted(self, tmp_path):
        store = self._legacy(tmp_path)
        with store:
            identity_map = store.load()

        assert not store.legacy_path.exists()
        assert identity_map.get("A1").destination_id == "dst-1"
        assert identity_map.get("S1").exceptions["2026-03-16"].destination_id is None
        assert identity_map.get("S1").exceptions["2026-03-23"].last_sync_stamp == "stamp-3"

    def test_stale_legacy_file_is_discarded(self, tmp_path):
        with IdentityMapStore(tmp_path, USER, DEST_CAL_ID) as store:
            identity_map = IdentityMap()
            identity_map.add("B1", "dst-9", None)
            store.save(identity_map)

        store = self._legacy(tmp_path)
        with store:
            loaded = store.load()

        assert not store.legacy_path.exists()
        assert set(loaded.entries) == {"B1"}


class TestQueryStatus:
    def test_missing_database(self, tmp_path):
        assert query_status(tmp_path / "nope.mapping.db") is None

    def test_counts(self, map_store):
        identity_map = IdentityMap()
        identity_map.add("S1", "dst-1", None)
        identity_map.update_exception("S1", "2026-03-16", None)
        identity_map.update_exception("S1", "2026-03-23", "occ-1", "s")
        map_store.save(identity_map)
        map_store.set_data_version("2.15.0")

        summary = query_status(map_store.db_path)

        assert summary == {
            "entries": 1,
            "exceptions": 2,
            "deleted_exceptions": 1,
            "data_version": "2.15.0",
        }
