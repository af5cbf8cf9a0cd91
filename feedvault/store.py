"""
Record Store — SQLite Persistent Backend with Self-Managed Growth

Tables:
    records     - Sanitized records keyed by id (payload is camelCase JSON)
    kv          - Settings and the cached quota snapshot
    event_log   - Bounded ring buffer of {event, timestamp, data}
    schema_meta - Schema metadata

Growth control:
    insert_if_absent   - count limit (oldest-first) + optional age cleanup
    cleanup_by_age     - routine housekeeping
    cleanup_moderate   - age cleanup topped up to a minimum batch
    cleanup_aggressive - oldest max(30%, batch) records

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
Every read-check-write sequence runs inside one lock acquisition and one
transaction. Callers always receive Record copies.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from feedvault.config import Settings, ValidationError
from feedvault.types import (
    InsertResult,
    QueryPage,
    QuotaSnapshot,
    Record,
    VaultEvent,
    _now_iso,
    _parse_iso,
    format_bytes,
    json_size,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SETTINGS_KEY = "settings"
_QUOTA_KEY = "quota_snapshot"

MAX_QUERY_LIMIT = 1000

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
    id          TEXT PRIMARY KEY,
    saved_at    TEXT NOT NULL,               -- canonical UTC ISO-8601, sorts lexically
    author_name TEXT NOT NULL DEFAULT '',
    has_media   INTEGER NOT NULL DEFAULT 0,
    payload     TEXT NOT NULL                -- JSON object (Record.to_dict)
);

CREATE TABLE IF NOT EXISTS kv (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL                      -- JSON
);

CREATE TABLE IF NOT EXISTS event_log (
    seq        INTEGER PRIMARY KEY AUTOINCREMENT,
    event      TEXT NOT NULL,
    timestamp  TEXT NOT NULL,
    data_json  TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_saved_at ON records(saved_at);
CREATE INDEX IF NOT EXISTS idx_records_author ON records(author_name);
"""


class StoreIOError(RuntimeError):
    """Raised when the underlying persistence layer fails."""


def canonical_ts(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 so that string order equals time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _casefold(value: Optional[str]) -> str:
    return value.casefold() if value else ""


@dataclass
class ImportCounts:
    """Counts from Store.import_merge."""

    imported: int = 0
    skipped: int = 0
    evicted: int = 0


# ---------------------------------------------------------------------------
# RecordStore
# ---------------------------------------------------------------------------

class RecordStore:
    """
    SQLite-backed persistent store for sanitized records.

    Thread-safe via explicit lock. Mutations that remove records log an
    event in the bounded event log.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        default_settings: Optional[Settings] = None,
        event_log_capacity: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the SQLite store and create the schema.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            default_settings: Settings written on first run.
            event_log_capacity: Ring buffer size of the event log.
            clock: Returns the current aware datetime (tests inject a fake).
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._default_settings = default_settings or Settings()
        self._event_log_capacity = event_log_capacity
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.create_function("py_casefold", 1, _casefold, deterministic=True)
            if wal_mode and db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'feedvault')",
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreIOError(f"Cannot open store {db_path}: {e}") from e
        logger.info("RecordStore initialized: %s", db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    def now(self) -> datetime:
        return self._clock()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # -- Transactions ------------------------------------------------------

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Lock + transaction. Commits on success, rolls back on any error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreIOError(str(e)) from e
            except BaseException:
                self._conn.rollback()
                raise

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StoreIOError(str(e)) from e

    # -- Insert ------------------------------------------------------------

    def insert_if_absent(
        self, record: Record, *, preserve_saved_at: bool = False,
    ) -> InsertResult:
        """Write record unless its id exists, then enforce limits.

        saved_at is stamped here unless preserve_saved_at is set and the
        record already carries a parsable one (import path).
        """
        with self._write() as conn:
            if self._exists(conn, record.id):
                logger.debug("Record %s already stored, skipping", record.id)
                return InsertResult(record_id=record.id, inserted=False)
            stored = self._stamp(record, preserve_saved_at)
            self._put(conn, stored)
            evicted = self._enforce_limits(conn, self._settings(conn))
        return InsertResult(record_id=record.id, inserted=True, evicted=evicted)

    def import_merge(
        self, records: Iterable[Record], source: str = "unknown",
    ) -> ImportCounts:
        """Insert-if-absent each record, then enforce limits once."""
        counts = ImportCounts()
        imported_at = _now_iso()
        with self._write() as conn:
            for record in records:
                if self._exists(conn, record.id):
                    counts.skipped += 1
                    continue
                stored = self._stamp(record, preserve_saved_at=True)
                stored.imported_at = imported_at
                stored.import_source = source
                self._put(conn, stored)
                counts.imported += 1
            counts.evicted = self._enforce_limits(conn, self._settings(conn))
        return counts

    def _stamp(self, record: Record, preserve_saved_at: bool) -> Record:
        stored = Record.from_dict(record.to_dict())
        saved = _parse_iso(stored.saved_at) if preserve_saved_at else None
        stored.saved_at = canonical_ts(saved or self._clock())
        return stored

    @staticmethod
    def _exists(conn: sqlite3.Connection, record_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM records WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    @staticmethod
    def _put(conn: sqlite3.Connection, record: Record, payload: Optional[Dict[str, Any]] = None) -> None:
        data = payload if payload is not None else record.to_dict()
        conn.execute(
            "INSERT OR REPLACE INTO records (id, saved_at, author_name, has_media, payload) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.id,
                record.saved_at,
                record.author.name,
                1 if record.media else 0,
                json.dumps(data, ensure_ascii=False, separators=(",", ":")),
            ),
        )

    def _enforce_limits(self, conn: sqlite3.Connection, settings: Settings) -> int:
        removed = 0
        excess = self._count(conn) - settings.max_records
        if excess > 0:
            removed += self._delete_oldest(conn, excess)
            logger.info("Removed %d old record(s) to maintain limit of %d",
                        excess, settings.max_records)
        if settings.auto_cleanup:
            aged = self._delete_older_than(conn, settings.cleanup_days)
            if aged:
                logger.info("Auto cleanup removed %d record(s) older than %d days",
                            aged, settings.cleanup_days)
            removed += aged
        return removed

    # -- Read --------------------------------------------------------------

    def get(self, record_id: str) -> Optional[Record]:
        """Return a copy of the record, or None."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT payload FROM records WHERE id = ?", (record_id,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def count(self) -> int:
        with self._read() as conn:
            return self._count(conn)

    @staticmethod
    def _count(conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    def list_records(self) -> List[Record]:
        """All records, oldest first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT payload FROM records ORDER BY saved_at ASC, rowid ASC"
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def query(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 50,
    ) -> QueryPage:
        """Filter (author substring, date range on savedAt, media presence), newest first.

        Raises:
            ValueError: if a date filter is not ISO-8601.
        """
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), MAX_QUERY_LIMIT)
        where, params = self._where(filters or {})
        offset = (page - 1) * limit
        with self._read() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM records{where}", params,
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT payload FROM records{where} "
                "ORDER BY saved_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return QueryPage(
            items=[self._row_to_record(r) for r in rows],
            total_count=total,
            page=page,
            limit=limit,
            has_more=offset + limit < total,
        )

    def search(
        self, text: str, filters: Optional[Dict[str, Any]] = None,
    ) -> List[Record]:
        """Substring search in title, text, and author name.

        Title matches rank first, then newest first.
        """
        term = _casefold(text.strip())
        where, params = self._where(filters or {})
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT payload FROM records{where} ORDER BY saved_at DESC, rowid DESC",
                params,
            ).fetchall()
        hits: List[Tuple[int, Record]] = []
        for row in rows:
            record = self._row_to_record(row)
            in_title = term in _casefold(record.title)
            if in_title or term in _casefold(record.text) or term in _casefold(record.author.name):
                hits.append((0 if in_title else 1, record))
        # sorted() is stable: newest-first order survives within each rank
        return [r for _, r in sorted(hits, key=lambda h: h[0])]

    def _where(self, filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        author = filters.get("author")
        if author:
            clauses.append("instr(py_casefold(author_name), ?) > 0")
            params.append(_casefold(str(author)))
        for key, op in (("date_from", ">="), ("date_to", "<=")):
            value = filters.get(key)
            if value:
                dt = _parse_iso(value)
                if dt is None:
                    raise ValueError(f"Invalid {key}: {value!r}")
                clauses.append(f"saved_at {op} ?")
                params.append(canonical_ts(dt))
        if filters.get("has_media"):
            clauses.append("has_media = 1")
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    # -- Delete / cleanup --------------------------------------------------

    def delete(self, record_id: str) -> bool:
        """Delete a record by id. Returns True if it existed."""
        with self._write() as conn:
            cur = conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        if cur.rowcount:
            logger.info("Record deleted: %s", record_id)
        return cur.rowcount > 0

    def cleanup_by_age(self, days: int) -> int:
        """Delete every record saved more than `days` ago."""
        with self._write() as conn:
            removed = self._delete_older_than(conn, days)
        if removed:
            logger.info("Cleaned up %d record(s) older than %d days", removed, days)
        return removed

    def cleanup_moderate(
        self, days: int, batch_min: int = 50, target: Optional[int] = None,
    ) -> int:
        """Age cleanup, topped up with oldest records until batch_min are removed.

        With a target, the top-up only runs while the store holds more than
        target records.
        """
        with self._write() as conn:
            removed = self._delete_older_than(conn, days)
            if removed < batch_min:
                count = self._count(conn)
                if target is None or count > target:
                    removed += self._delete_oldest(conn, min(batch_min - removed, count))
        if removed:
            logger.info("Moderate cleanup removed %d record(s)", removed)
        return removed

    def cleanup_aggressive(self, fraction: float = 0.3, batch_min: int = 50) -> int:
        """Delete the oldest max(floor(fraction * n), batch_min) records (at most n)."""
        with self._write() as conn:
            n = self._count(conn)
            if n == 0:
                return 0
            k = min(n, max(math.floor(n * fraction), batch_min))
            removed = self._delete_oldest(conn, k)
        logger.info("Aggressive cleanup removed %d of %d record(s)", removed, n)
        return removed

    def _delete_oldest(self, conn: sqlite3.Connection, n: int) -> int:
        if n <= 0:
            return 0
        cur = conn.execute(
            "DELETE FROM records WHERE rowid IN ("
            "SELECT rowid FROM records ORDER BY saved_at ASC, rowid ASC LIMIT ?)",
            (n,),
        )
        return cur.rowcount

    def _delete_older_than(self, conn: sqlite3.Connection, days: int) -> int:
        cutoff = canonical_ts(self._clock() - timedelta(days=days))
        cur = conn.execute("DELETE FROM records WHERE saved_at < ?", (cutoff,))
        return cur.rowcount

    def clear(self) -> int:
        """Delete all records. Settings are kept."""
        with self._write() as conn:
            cur = conn.execute("DELETE FROM records")
        logger.info("Cleared %d record(s)", cur.rowcount)
        return cur.rowcount

    def reset(self) -> int:
        """Full data reset: records, settings, and cached quota snapshot."""
        with self._write() as conn:
            cur = conn.execute("DELETE FROM records")
            conn.execute("DELETE FROM kv WHERE key IN (?, ?)", (_SETTINGS_KEY, _QUOTA_KEY))
        logger.info("All data cleared (%d record(s))", cur.rowcount)
        return cur.rowcount

    # -- Optimize ----------------------------------------------------------

    def optimize(self) -> int:
        """Shrink stored payloads: long text, extra media, empty fields.

        Returns the number of records rewritten.
        """
        optimized = 0
        with self._write() as conn:
            rows = conn.execute("SELECT rowid, payload FROM records").fetchall()
            for row in rows:
                original = json.loads(row["payload"])
                slim = self._optimize_payload(original)
                if json_size(slim) < json_size(original):
                    conn.execute(
                        "UPDATE records SET payload = ?, has_media = ? WHERE rowid = ?",
                        (
                            json.dumps(slim, ensure_ascii=False, separators=(",", ":")),
                            1 if slim.get("media") else 0,
                            row["rowid"],
                        ),
                    )
                    optimized += 1
        if optimized:
            logger.info("Optimized %d record(s)", optimized)
        return optimized

    @staticmethod
    def _optimize_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
        slim = dict(payload)
        text = slim.get("text")
        if isinstance(text, str) and len(text) > 5000:
            slim["text"] = text[:5000] + "... [truncated for storage]"
        media = slim.get("media")
        if isinstance(media, list) and len(media) > 3:
            slim["media"] = media[:3]
        return {k: v for k, v in slim.items() if v is not None and v != ""}

    # -- Export ------------------------------------------------------------

    def export_all(self) -> List[Dict[str, Any]]:
        """Raw payload dicts of every record, oldest first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT payload FROM records ORDER BY saved_at ASC, rowid ASC"
            ).fetchall()
        return [json.loads(r["payload"]) for r in rows]

    # -- Stats / measurement -----------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Counts, time buckets, unique authors, oldest/newest, storage size."""
        now = self._clock()
        day = canonical_ts(now - timedelta(days=1))
        week = canonical_ts(now - timedelta(days=7))
        month = canonical_ts(now - timedelta(days=30))
        with self._read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, "
                "SUM(saved_at > ?) AS today, SUM(saved_at > ?) AS week, "
                "SUM(saved_at > ?) AS month, SUM(has_media) AS with_media, "
                "COUNT(DISTINCT NULLIF(author_name, '')) AS authors, "
                "MIN(saved_at) AS oldest, MAX(saved_at) AS newest "
                "FROM records",
                (day, week, month),
            ).fetchone()
        record_bytes = self._measure()[1]
        return {
            "total_records": row["total"],
            "records_today": row["today"] or 0,
            "records_this_week": row["week"] or 0,
            "records_this_month": row["month"] or 0,
            "records_with_media": row["with_media"] or 0,
            "unique_authors": row["authors"],
            "oldest_record": row["oldest"],
            "newest_record": row["newest"],
            "storage_size": {
                "bytes": record_bytes,
                "kb": round(record_bytes / 1024),
                "mb": round(record_bytes / (1024 * 1024), 2),
                "formatted": format_bytes(record_bytes),
            },
        }

    def measure(self) -> Tuple[int, int, int]:
        """(total_bytes, record_bytes, record_count) of all persisted values."""
        return self._measure()

    def _measure(self) -> Tuple[int, int, int]:
        with self._read() as conn:
            rec = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(LENGTH(CAST(payload AS BLOB)) "
                "+ LENGTH(CAST(id AS BLOB)) + 4), 0) FROM records"
            ).fetchone()
            kv = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(value AS BLOB)) "
                "+ LENGTH(CAST(key AS BLOB)) + 4), 0) FROM kv"
            ).fetchone()[0]
            events = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(CAST(data_json AS BLOB)) "
                "+ LENGTH(CAST(event AS BLOB)) + LENGTH(timestamp) + 40), 0) FROM event_log"
            ).fetchone()[0]
        count, record_bytes = rec[0], rec[1]
        return record_bytes + kv + events, record_bytes, count

    # -- Settings ----------------------------------------------------------

    def get_settings(self) -> Settings:
        """Current settings; defaults are written on first access."""
        with self._write() as conn:
            return self._settings(conn)

    def update_settings(self, delta: Dict[str, Any]) -> Settings:
        """Merge delta into the settings and persist.

        Raises:
            ValidationError: unknown keys or out-of-range values.
        """
        with self._write() as conn:
            updated = self._settings(conn).merged(delta)
            errors = updated.validate()
            if errors:
                raise ValidationError("; ".join(errors))
            self._kv_put(conn, _SETTINGS_KEY, updated.to_dict())
        logger.info("Settings updated: %s", ", ".join(sorted(delta)))
        return updated

    def _settings(self, conn: sqlite3.Connection) -> Settings:
        raw = self._kv_get(conn, _SETTINGS_KEY)
        if raw is None:
            settings = Settings.from_dict(self._default_settings.to_dict())
            self._kv_put(conn, _SETTINGS_KEY, settings.to_dict())
            return settings
        return Settings.from_dict(raw)

    # -- Quota snapshot cache ----------------------------------------------

    def save_quota_snapshot(self, snapshot: QuotaSnapshot) -> None:
        with self._write() as conn:
            d = snapshot.to_dict()
            d.pop("formatted", None)
            self._kv_put(conn, _QUOTA_KEY, d)

    def read_quota_snapshot(self) -> Optional[QuotaSnapshot]:
        with self._read() as conn:
            raw = self._kv_get(conn, _QUOTA_KEY)
        return QuotaSnapshot.from_dict(raw) if raw else None

    @staticmethod
    def _kv_get(conn: sqlite3.Connection, key: str) -> Optional[Any]:
        row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return json.loads(row["value"]) if row else None

    @staticmethod
    def _kv_put(conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (key, json.dumps(value, ensure_ascii=False)),
        )

    # -- Event log ---------------------------------------------------------

    def log_event(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Append to the event log, keeping the newest event_log_capacity entries."""
        entry = VaultEvent(event=event, data=data or {})
        with self._write() as conn:
            conn.execute(
                "INSERT INTO event_log (event, timestamp, data_json) VALUES (?, ?, ?)",
                (entry.event, entry.timestamp, json.dumps(entry.data, ensure_ascii=False)),
            )
            conn.execute(
                "DELETE FROM event_log WHERE seq NOT IN "
                "(SELECT seq FROM event_log ORDER BY seq DESC LIMIT ?)",
                (self._event_log_capacity,),
            )
        logger.debug("Event tracked: %s", event)

    def read_events(self, limit: int = 100) -> List[VaultEvent]:
        """Newest first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT event, timestamp, data_json FROM event_log ORDER BY seq DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            VaultEvent(event=r["event"], timestamp=r["timestamp"], data=json.loads(r["data_json"]))
            for r in rows
        ]

    # -- Helpers -----------------------------------------------------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record.from_dict(json.loads(row["payload"]))
