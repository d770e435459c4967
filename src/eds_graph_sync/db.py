"""
Identity map persistence: source appointment id → remote event id.
"""

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from eds_graph_sync.models import CalendarSyncError
from eds_graph_sync.models import MappingConsistencyError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^\w@.+-]+")


@dataclass
class ExceptionEntry:
    """Sync bookkeeping for one occurrence of a recurring series.

    ``destination_id`` is None when the occurrence was synced as deleted.
    """

    destination_id: str | None
    last_sync_stamp: str | None = None


@dataclass
class IdentityMapEntry:
    destination_id: str | None
    last_sync_stamp: str | None = None
    exceptions: dict[str, ExceptionEntry] = field(default_factory=dict)


class IdentityMap:
    """In-memory identity map, owned by the orchestrator for one pass."""

    def __init__(self, entries: dict[str, IdentityMapEntry] | None = None):
        self.entries: dict[str, IdentityMapEntry] = dict(entries or {})

    def __contains__(self, source_id: str) -> bool:
        return source_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(list(self.entries))

    def get(self, source_id: str) -> IdentityMapEntry | None:
        return self.entries.get(source_id)

    def add(self, source_id: str, destination_id: str, stamp: str | None) -> IdentityMapEntry:
        """Map source_id to a freshly created destination item (replaces any entry)."""
        self.remove_destination(destination_id)
        entry = IdentityMapEntry(destination_id=destination_id, last_sync_stamp=stamp)
        self.entries[source_id] = entry
        return entry

    def set_stamp(self, source_id: str, stamp: str | None):
        entry = self.entries.get(source_id)
        if entry is not None:
            entry.last_sync_stamp = stamp

    def remove(self, source_id: str) -> IdentityMapEntry | None:
        return self.entries.pop(source_id, None)

    def find_by_destination(self, destination_id: str) -> str | None:
        for source_id, entry in self.entries.items():
            if entry.destination_id == destination_id:
                return source_id
        return None

    def remove_destination(self, destination_id: str) -> str | None:
        """Drop the entry pointing at destination_id; return its source id."""
        source_id = self.find_by_destination(destination_id)
        if source_id is not None:
            del self.entries[source_id]
        return source_id

    def update_exception(
        self,
        source_id: str,
        original_date: str,
        destination_id: str | None,
        stamp: str | None = None,
    ):
        entry = self.entries.get(source_id)
        if entry is None:
            raise MappingConsistencyError(
                f"Cannot record exception {original_date}: source item {source_id} "
                f"has not been synced"
            )
        entry.exceptions[original_date] = ExceptionEntry(destination_id, stamp)


def mapping_file_stem(user: str, calendar: str) -> str:
    """File name stem for the (user, calendar) pair."""
    return _UNSAFE_FILENAME_RE.sub("_", f"{user}-{calendar}").strip("_")


class IdentityMapStore:
    """One sqlite file per (user, destination calendar) pair."""

    def __init__(self, state_dir: Path, user: str, calendar: str):
        stem = mapping_file_stem(user, calendar)
        self.db_path = state_dir / f"{stem}.mapping.db"
        self.legacy_path = state_dir / f"{stem}.mapping"
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open (creating if needed) the mapping database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
        except (OSError, sqlite3.Error) as e:
            raise CalendarSyncError(f"Cannot open mapping database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        self._init_schema()
        self.migrate_legacy_if_needed()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS mapping (
                source_id TEXT PRIMARY KEY,
                destination_id TEXT,
                last_sync_stamp TEXT
            );
            CREATE TABLE IF NOT EXISTS exception_mapping (
                source_id TEXT NOT NULL,
                original_date TEXT NOT NULL,
                destination_id TEXT,
                last_sync_stamp TEXT,
                PRIMARY KEY (source_id, original_date)
            );
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        self.conn.commit()

    def migrate_legacy_if_needed(self):
        """
        Import a legacy JSON mapping file once, then delete it.

        The legacy format is ``{source_id: {"Id", "LastSyncTimeStamp",
        "ExceptionIds": {date: {"Id", "LastSyncTimeStamp"}}}}``. When the
        database already holds rows the legacy file is stale and only deleted.
        """
        if not self.legacy_path.exists():
            return

        existing = self.conn.execute("SELECT COUNT(*) FROM mapping").fetchone()[0]
        if existing:
            logger.info(f"Discarding stale legacy mapping file {self.legacy_path}")
            self.legacy_path.unlink()
            return

        try:
            raw = json.loads(self.legacy_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read legacy mapping file {self.legacy_path}: {e}")
            return

        entries = {}
        for source_id, info in (raw or {}).items():
            info = info or {}
            exceptions = {
                original_date: ExceptionEntry(
                    (exc or {}).get("Id"), (exc or {}).get("LastSyncTimeStamp")
                )
                for original_date, exc in (info.get("ExceptionIds") or {}).items()
            }
            entries[source_id] = IdentityMapEntry(
                destination_id=info.get("Id"),
                last_sync_stamp=info.get("LastSyncTimeStamp"),
                exceptions=exceptions,
            )

        self.save(IdentityMap(entries))
        self.legacy_path.unlink()
        logger.info(f"Migrated {len(entries)} mapping entries from legacy file")

    def load(self) -> IdentityMap:
        """Read the whole identity map."""
        entries: dict[str, IdentityMapEntry] = {}
        for row in self.conn.execute(
            "SELECT source_id, destination_id, last_sync_stamp FROM mapping"
        ):
            entries[row["source_id"]] = IdentityMapEntry(
                destination_id=row["destination_id"],
                last_sync_stamp=row["last_sync_stamp"],
            )
        for row in self.conn.execute(
            "SELECT source_id, original_date, destination_id, last_sync_stamp "
            "FROM exception_mapping"
        ):
            entry = entries.get(row["source_id"])
            if entry is None:
                continue
            entry.exceptions[row["original_date"]] = ExceptionEntry(
                row["destination_id"], row["last_sync_stamp"]
            )
        return IdentityMap(entries)

    def save(self, identity_map: IdentityMap):
        """Replace the stored map with identity_map in one transaction."""
        with self.conn:
            self.conn.execute("DELETE FROM exception_mapping")
            self.conn.execute("DELETE FROM mapping")
            self.conn.executemany(
                "INSERT INTO mapping (source_id, destination_id, last_sync_stamp) "
                "VALUES (?, ?, ?)",
                [
                    (source_id, entry.destination_id, entry.last_sync_stamp)
                    for source_id, entry in identity_map.entries.items()
                ],
            )
            self.conn.executemany(
                "INSERT INTO exception_mapping "
                "(source_id, original_date, destination_id, last_sync_stamp) "
                "VALUES (?, ?, ?, ?)",
                [
                    (source_id, original_date, exc.destination_id, exc.last_sync_stamp)
                    for source_id, entry in identity_map.entries.items()
                    for original_date, exc in entry.exceptions.items()
                ],
            )

    def get_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str):
        with self.conn:
            self.conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def get_data_version(self) -> str | None:
        return self.get_meta("data_version")

    def set_data_version(self, version: str):
        self.set_meta("data_version", version)

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status(db_path: Path) -> dict[str, object] | None:
    """
    Return aggregate figures for a mapping database without opening it for writes.

    Returns None when the file does not exist.
    """
    if not db_path.exists():
        return None
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        entries = conn.execute("SELECT COUNT(*) FROM mapping").fetchone()[0]
        exceptions = conn.execute("SELECT COUNT(*) FROM exception_mapping").fetchone()[0]
        deleted = conn.execute(
            "SELECT COUNT(*) FROM exception_mapping WHERE destination_id IS NULL"
        ).fetchone()[0]
        row = conn.execute("SELECT value FROM meta WHERE key = 'data_version'").fetchone()
        return {
            "entries": entries,
            "exceptions": exceptions,
            "deleted_exceptions": deleted,
            "data_version": row["value"] if row else None,
        }
    except sqlite3.Error:
        return None
    finally:
        conn.close()
