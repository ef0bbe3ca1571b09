"""
SQLite cache of remote calendar events plus deletion tombstones.
"""

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import date
from datetime import datetime
from pathlib import Path

from caldav_calendar_sync.models import CachedEvent
from caldav_calendar_sync.models import CacheError
from caldav_calendar_sync.models import Event
from caldav_calendar_sync.models import EventStatus
from caldav_calendar_sync.models import EventTransparency
from caldav_calendar_sync.models import EventVisibility
from caldav_calendar_sync.models import GeoPoint
from caldav_calendar_sync.models import SyncStatus
from caldav_calendar_sync.models import Tombstone

logger = logging.getLogger(__name__)

# Event columns in insert order; synced_at is handled separately because its
# value depends on the merge mode.
_EVENT_COLUMNS = (
    "id",
    "title",
    "date",
    "time",
    "dtend",
    "duration",
    "description",
    "location",
    "organizer",
    "attendees",
    "categories",
    "priority",
    "status",
    "visibility",
    "transparency",
    "rrule",
    "geo_lat",
    "geo_lon",
    "url",
    "attachments",
    "timezone",
    "sequence",
    "created",
    "last_modified",
    "is_vacation",
    "calendar_name",
    "calendar_path",
    "caldav_filename",
    "sync_status",
    "local_modified",
)

_COLUMN_LIST = ", ".join(_EVENT_COLUMNS + ("synced_at",))
_PLACEHOLDERS = ", ".join("?" for _ in range(len(_EVENT_COLUMNS) + 1))

# Re-pull: overwrite everything from the remote copy but keep the row's
# original synced_at so staleness bookkeeping survives unchanged events.
# Ids with an unsynced tombstone are never inserted and pending rows are never
# overwritten; both checks run inside the statement.
_UPSERT_PRESERVING_SQL = (
    f"INSERT INTO events ({_COLUMN_LIST}) SELECT {_PLACEHOLDERS} "
    "WHERE NOT EXISTS (SELECT 1 FROM deleted_events "
    "WHERE deleted_events.id = ? AND synced_to_remote = 0) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{col} = excluded.{col}" for col in _EVENT_COLUMNS if col != "id")
    + ", synced_at = COALESCE(events.synced_at, excluded.synced_at) "
    "WHERE events.sync_status != 'pending'"
)

_REPLACE_SQL = f"INSERT OR REPLACE INTO events ({_COLUMN_LIST}) VALUES ({_PLACEHOLDERS})"


def _date_key(value) -> str:
    """Normalise a date/datetime/ISO string to the YYYY-MM-DD key stored in ``date``."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def _dump_list(values: list[str] | None) -> str | None:
    return None if values is None else json.dumps(values)


def _load_list(raw: str | None) -> list[str] | None:
    return None if raw is None else json.loads(raw)


def _enum_or_none(enum_cls, raw):
    if raw is None:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        return None


def _row_params(row: CachedEvent) -> tuple:
    e = row.event
    status = row.sync_status.value if isinstance(row.sync_status, SyncStatus) else row.sync_status
    return (
        e.id,
        e.title,
        e.date,
        e.time or "",
        e.dtend,
        e.duration,
        e.description,
        e.location,
        e.organizer,
        _dump_list(e.attendees),
        _dump_list(e.categories),
        e.priority,
        e.status.value if e.status is not None else None,
        e.visibility.value if e.visibility is not None else None,
        e.transparency.value if e.transparency is not None else None,
        e.rrule,
        e.geo.lat if e.geo is not None else None,
        e.geo.lon if e.geo is not None else None,
        e.url,
        _dump_list(e.attachments),
        e.timezone,
        e.sequence,
        e.created,
        e.last_modified,
        1 if e.is_vacation else 0,
        row.calendar_name,
        row.calendar_path,
        row.caldav_filename,
        status,
        row.local_modified,
    )


def row_to_event(row: sqlite3.Row) -> Event:
    geo = None
    if row["geo_lat"] is not None and row["geo_lon"] is not None:
        geo = GeoPoint(row["geo_lat"], row["geo_lon"])
    return Event(
        id=row["id"],
        title=row["title"],
        date=row["date"],
        time=row["time"],
        dtend=row["dtend"],
        duration=row["duration"],
        description=row["description"],
        location=row["location"],
        organizer=row["organizer"],
        attendees=_load_list(row["attendees"]),
        categories=_load_list(row["categories"]),
        priority=row["priority"],
        status=_enum_or_none(EventStatus, row["status"]),
        visibility=_enum_or_none(EventVisibility, row["visibility"]),
        transparency=_enum_or_none(EventTransparency, row["transparency"]),
        rrule=row["rrule"],
        geo=geo,
        url=row["url"],
        attachments=_load_list(row["attachments"]),
        timezone=row["timezone"],
        sequence=row["sequence"],
        created=row["created"],
        last_modified=row["last_modified"],
        is_vacation=bool(row["is_vacation"]),
    )


def row_to_cached_event(row: sqlite3.Row) -> CachedEvent:
    return CachedEvent(
        event=row_to_event(row),
        calendar_name=row["calendar_name"],
        calendar_path=row["calendar_path"],
        caldav_filename=row["caldav_filename"],
        sync_status=_enum_or_none(SyncStatus, row["sync_status"]) or SyncStatus.SYNCED,
        local_modified=row["local_modified"],
        synced_at=row["synced_at"],
    )


def _row_to_tombstone(row: sqlite3.Row) -> Tombstone:
    return Tombstone(
        id=row["id"],
        deleted_at=row["deleted_at"],
        synced_to_remote=bool(row["synced_to_remote"]),
        calendar_name=row["calendar_name"],
        calendar_path=row["calendar_path"],
        caldav_filename=row["caldav_filename"],
    )


class CacheDatabase:
    """Persistent event cache and tombstone store.

    Every logical write is a single transaction.  A lock serialises access so
    the connection can be shared between the scheduler thread and callers.
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database file and create the schema if needed."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                date TEXT NOT NULL,
                time TEXT NOT NULL DEFAULT '',
                dtend TEXT,
                duration TEXT,
                description TEXT,
                location TEXT,
                organizer TEXT,
                attendees TEXT,
                categories TEXT,
                priority INTEGER,
                status TEXT,
                visibility TEXT,
                transparency TEXT,
                rrule TEXT,
                geo_lat REAL,
                geo_lon REAL,
                url TEXT,
                attachments TEXT,
                timezone TEXT,
                sequence INTEGER,
                created TEXT,
                last_modified TEXT,
                is_vacation INTEGER NOT NULL DEFAULT 0,
                calendar_name TEXT,
                calendar_path TEXT,
                caldav_filename TEXT,
                sync_status TEXT NOT NULL DEFAULT 'synced',
                local_modified INTEGER,
                synced_at INTEGER
            );
            CREATE TABLE IF NOT EXISTS deleted_events (
                id TEXT PRIMARY KEY,
                deleted_at INTEGER NOT NULL,
                synced_to_remote INTEGER NOT NULL DEFAULT 0,
                calendar_name TEXT,
                calendar_path TEXT,
                caldav_filename TEXT
            );
            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_events_date ON events(date);
            CREATE INDEX IF NOT EXISTS idx_events_sync ON events(synced_at);
        """)
        self.conn.commit()

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise CacheError("Cache database is not connected")
        return self.conn

    def _now(self) -> int:
        return int(self.clock())

    @contextmanager
    def _transaction(self, what: str):
        """Run a block as one transaction; roll back and raise CacheError on failure."""
        with self._lock:
            conn = self._require_conn()
            try:
                with conn:
                    yield conn
            except (sqlite3.Error, TypeError, ValueError) as e:
                logger.error(f"Cache transaction '{what}' rolled back: {e}")
                raise CacheError(f"{what} failed: {e}") from e

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            conn = self._require_conn()
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise CacheError(f"Cache read failed: {e}") from e

    # ------------------------------------------------------------------ #
    # Event rows                                                           #
    # ------------------------------------------------------------------ #

    def upsert_many(self, rows: Iterable[CachedEvent], preserve_metadata: bool) -> int:
        """Insert or replace rows by id as one atomic batch.

        With ``preserve_metadata`` (merging a pull) the existing ``synced_at``
        is kept (now for new rows), pending rows are left alone and ids with
        an unsynced tombstone are not re-inserted.  Otherwise every column,
        ``synced_at`` included, is overwritten.

        Returns the number of rows written.
        """
        rows = list(rows)
        if not rows:
            return 0
        now = self._now()
        written = 0
        with self._transaction("upsert_many") as conn:
            for row in rows:
                if preserve_metadata:
                    cur = conn.execute(
                        _UPSERT_PRESERVING_SQL, _row_params(row) + (now, row.id)
                    )
                else:
                    cur = conn.execute(_REPLACE_SQL, _row_params(row) + (now,))
                written += max(cur.rowcount, 0)
        logger.debug(
            f"Upserted {written}/{len(rows)} row(s) (preserve_metadata={preserve_metadata})"
        )
        return written

    def query(
        self,
        start=None,
        end=None,
        calendar_name: str | None = None,
    ) -> list[Event]:
        """Events whose start date is within [start, end], oldest first."""
        conditions = []
        params: list = []
        if start is not None:
            conditions.append("date >= ?")
            params.append(_date_key(start))
        if end is not None:
            conditions.append("date <= ?")
            params.append(_date_key(end))
        if calendar_name:
            conditions.append("calendar_name = ?")
            params.append(calendar_name)
        sql = "SELECT * FROM events"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY date ASC, time ASC"
        return [row_to_event(row) for row in self._read(sql, tuple(params))]

    def get(self, event_id: str) -> CachedEvent | None:
        rows = self._read("SELECT * FROM events WHERE id = ? LIMIT 1", (event_id,))
        return row_to_cached_event(rows[0]) if rows else None

    def get_all_ids(self) -> set[str]:
        return {row["id"] for row in self._read("SELECT id FROM events")}

    def get_all_rows(self) -> list[CachedEvent]:
        return [row_to_cached_event(row) for row in self._read("SELECT * FROM events")]

    def delete(self, event_id: str) -> bool:
        """Remove a row and record an unsynced tombstone in one transaction.

        Returns False when no row exists for the id.
        """
        with self._transaction("delete") as conn:
            row = conn.execute(
                "SELECT calendar_name, calendar_path, caldav_filename FROM events WHERE id = ?",
                (event_id,),
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
            conn.execute(
                "INSERT OR REPLACE INTO deleted_events "
                "(id, deleted_at, synced_to_remote, calendar_name, calendar_path, caldav_filename) "
                "VALUES (?, ?, 0, ?, ?, ?)",
                (
                    event_id,
                    self._now(),
                    row["calendar_name"],
                    row["calendar_path"],
                    row["caldav_filename"],
                ),
            )
        logger.debug(f"Deleted {event_id} locally; tombstone pending")
        return True

    def track_remote_deletion(self, event_id: str) -> bool:
        """Drop a row that vanished remotely and record an already-synced tombstone.

        Returns False, changing nothing, when the row is already gone or has an
        unpushed local write.
        """
        with self._transaction("track_remote_deletion") as conn:
            row = conn.execute(
                "SELECT calendar_name, calendar_path, caldav_filename, sync_status "
                "FROM events WHERE id = ?",
                (event_id,),
            ).fetchone()
            if row is None or row["sync_status"] == SyncStatus.PENDING.value:
                return False
            conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
            conn.execute(
                "INSERT OR REPLACE INTO deleted_events "
                "(id, deleted_at, synced_to_remote, calendar_name, calendar_path, caldav_filename) "
                "VALUES (?, ?, 1, ?, ?, ?)",
                (
                    event_id,
                    self._now(),
                    row["calendar_name"],
                    row["calendar_path"],
                    row["caldav_filename"],
                ),
            )
        return True

    def list_pending_writes(self) -> list[CachedEvent]:
        rows = self._read(
            "SELECT * FROM events WHERE sync_status = ? ORDER BY local_modified ASC",
            (SyncStatus.PENDING.value,),
        )
        return [row_to_cached_event(row) for row in rows]

    def mark_synced(
        self,
        event_id: str,
        caldav_filename: str | None = None,
        expected_modified: float | None = None,
    ) -> bool:
        """Mark a row as pushed; optionally record its new remote filename.

        With ``expected_modified`` the row is only updated if it was not
        modified locally again since that timestamp.  Returns whether a row
        was updated.
        """
        sql = (
            "UPDATE events SET sync_status = ?, "
            "caldav_filename = COALESCE(?, caldav_filename) WHERE id = ?"
        )
        params: tuple = (SyncStatus.SYNCED.value, caldav_filename, event_id)
        if expected_modified is not None:
            sql += " AND local_modified = ?"
            params += (expected_modified,)
        with self._transaction("mark_synced") as conn:
            cursor = conn.execute(sql, params)
        return cursor.rowcount > 0

    # ------------------------------------------------------------------ #
    # Tombstones                                                           #
    # ------------------------------------------------------------------ #

    def list_unsynced_tombstones(self) -> list[Tombstone]:
        rows = self._read(
            "SELECT * FROM deleted_events WHERE synced_to_remote = 0 ORDER BY deleted_at ASC"
        )
        return [_row_to_tombstone(row) for row in rows]

    def unsynced_tombstone_ids(self) -> set[str]:
        rows = self._read("SELECT id FROM deleted_events WHERE synced_to_remote = 0")
        return {row["id"] for row in rows}

    def get_tombstone(self, event_id: str) -> Tombstone | None:
        rows = self._read("SELECT * FROM deleted_events WHERE id = ?", (event_id,))
        return _row_to_tombstone(rows[0]) if rows else None

    def is_tombstoned(self, event_id: str, unsynced_only: bool = False) -> bool:
        sql = "SELECT 1 FROM deleted_events WHERE id = ?"
        if unsynced_only:
            sql += " AND synced_to_remote = 0"
        return bool(self._read(sql, (event_id,)))

    def mark_tombstone_synced(self, event_id: str):
        with self._transaction("mark_tombstone_synced") as conn:
            conn.execute(
                "UPDATE deleted_events SET synced_to_remote = 1 WHERE id = ?", (event_id,)
            )

    # ------------------------------------------------------------------ #
    # Pruning and bookkeeping                                              #
    # ------------------------------------------------------------------ #

    def prune_stale_rows(self, older_than: float) -> int:
        """Delete synced rows whose synced_at is before ``older_than``."""
        with self._transaction("prune_stale_rows") as conn:
            cursor = conn.execute(
                "DELETE FROM events WHERE synced_at < ? AND sync_status = ?",
                (int(older_than), SyncStatus.SYNCED.value),
            )
        return cursor.rowcount

    def prune_synced_tombstones(self, older_than: float) -> int:
        """Delete tombstones that were propagated and are older than ``older_than``."""
        with self._transaction("prune_synced_tombstones") as conn:
            cursor = conn.execute(
                "DELETE FROM deleted_events WHERE synced_to_remote = 1 AND deleted_at < ?",
                (int(older_than),),
            )
        return cursor.rowcount

    def mark_sync_completed(self, at: float | None = None):
        """Record the completion time of a reconciliation pass."""
        with self._transaction("mark_sync_completed") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES ('last_sync', ?)",
                (int(at if at is not None else self.clock()),),
            )

    def last_synced_at(self) -> float | None:
        """Completion time of the last pass, else the newest row's synced_at."""
        marker = self._read("SELECT value FROM sync_meta WHERE key = 'last_sync'")
        if marker and marker[0]["value"] is not None:
            return marker[0]["value"]
        return self._read("SELECT MAX(synced_at) AS ts FROM events")[0]["ts"]

    def calendar_counts(self) -> dict[str, int]:
        rows = self._read(
            "SELECT calendar_name AS name, COUNT(*) AS count FROM events "
            "WHERE calendar_name IS NOT NULL GROUP BY calendar_name"
        )
        return {row["name"]: row["count"] for row in rows}

    def pending_count(self) -> int:
        rows = self._read(
            "SELECT COUNT(*) AS n FROM events WHERE sync_status = ?",
            (SyncStatus.PENDING.value,),
        )
        return rows[0]["n"]

    def tombstone_count(self, unsynced_only: bool = False) -> int:
        sql = "SELECT COUNT(*) AS n FROM deleted_events"
        if unsynced_only:
            sql += " WHERE synced_to_remote = 0"
        return self._read(sql)[0]["n"]

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None


def query_status(db_path: Path) -> dict:
    """
    Summarise a cache database without going through CacheDatabase.

    Returns an empty dict when the file does not exist or has no events table
    yet.
    """
    if not db_path.exists():
        return {}
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "events" not in tables:
            return {}
        counts = {
            row["name"]: row["count"]
            for row in conn.execute(
                "SELECT calendar_name AS name, COUNT(*) AS count FROM events "
                "WHERE calendar_name IS NOT NULL GROUP BY calendar_name ORDER BY calendar_name"
            )
        }
        pending = conn.execute(
            "SELECT COUNT(*) FROM events WHERE sync_status = 'pending'"
        ).fetchone()[0]
        unsynced = 0
        if "deleted_events" in tables:
            unsynced = conn.execute(
                "SELECT COUNT(*) FROM deleted_events WHERE synced_to_remote = 0"
            ).fetchone()[0]
        last_sync = None
        if "sync_meta" in tables:
            marker = conn.execute(
                "SELECT value FROM sync_meta WHERE key = 'last_sync'"
            ).fetchone()
            if marker:
                last_sync = marker[0]
        if last_sync is None:
            last_sync = conn.execute("SELECT MAX(synced_at) FROM events").fetchone()[0]
        return {
            "calendars": counts,
            "pending_writes": pending,
            "unsynced_tombstones": unsynced,
            "last_sync_at": last_sync,
        }
    finally:
        conn.close()
