"""On-device cache for QuizSync - SQLite key/value storage.

Every key is prefixed with the application instance id, so several app
deployments sharing one database file never see each other's data.
"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from core.models import SessionSummary, SyncQueueEntry, UserRecord, to_id_set

log = logging.getLogger("quizsync.local_cache")

# Field names as stored on device (kept from deployed clients)
FIELD_MISTAKES = "mistakes"
FIELD_ARCHIVE = "archive"
FIELD_FAVORITES = "fav"
FIELD_SETTINGS = "settings"
FIELD_SESSIONS = "sessions"
FIELD_LAST_SYNC = "last_sync"
FIELD_SYNC_QUEUE = "sync_queue"

LOCAL_FIELDS = (
    FIELD_MISTAKES,
    FIELD_ARCHIVE,
    FIELD_FAVORITES,
    FIELD_SETTINGS,
    FIELD_SESSIONS,
    FIELD_LAST_SYNC,
    FIELD_SYNC_QUEUE,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


class LocalCacheStore:
    """Typed accessor over the persisted per-field entries of one app instance."""

    def __init__(
        self,
        db_path: Path,
        app_id: str,
        max_sessions: int = 200,
        clock: Callable[[], int] | None = None,
    ):
        """Initialize the cache.

        Args:
            db_path: Path to SQLite database file
            app_id: Application instance identifier used as key namespace
            max_sessions: Session summaries retained locally
            clock: Millisecond clock, injectable for tests

        Raises:
            ValueError: If app_id is empty
        """
        if not app_id:
            raise ValueError("app_id is required to namespace local storage")
        self.db_path = db_path
        self.app_id = app_id
        self.max_sessions = max_sessions
        self._clock = clock or _now_ms
        self._init_database()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS local_storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.commit()

    def storage_key(self, field: str) -> str:
        """Namespaced key for a field, e.g. ``medquiz_v2_mistakes``."""
        return f"{self.app_id}_{field}"

    # ========== Raw entries ==========

    def _read(self, field: str, default: Any) -> Any:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT value FROM local_storage WHERE key = ?", (self.storage_key(field),)
            )
            row = cursor.fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            log.warning(f"Unreadable local entry {self.storage_key(field)}, using default")
            return default

    def _read_ids(self, field: str) -> set:
        try:
            return to_id_set(self._read(field, []))
        except ValueError as e:
            log.warning(f"Malformed local entry {self.storage_key(field)}, using empty set: {e}")
            return set()

    def _write_many(self, entries: dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO local_storage (key, value) VALUES (?, ?)",
                [(self.storage_key(f), json.dumps(v)) for f, v in entries.items()],
            )
            conn.commit()

    # ========== User record ==========

    def load(self) -> UserRecord:
        """Rebuild the user record from persisted fields.

        Missing or corrupt fields become empty containers; an empty cache is
        a valid initial state, so this never fails.
        """
        settings = self._read(FIELD_SETTINGS, {})
        last_sync = self._read(FIELD_LAST_SYNC, 0)
        try:
            return UserRecord(
                mistakes=self._read_ids(FIELD_MISTAKES),
                archive=self._read_ids(FIELD_ARCHIVE),
                favorites=self._read_ids(FIELD_FAVORITES),
                settings=settings if isinstance(settings, dict) else {},
                last_updated=last_sync if isinstance(last_sync, int) and last_sync >= 0 else 0,
                app_id=self.app_id,
            )
        except ValidationError as e:
            log.warning(f"Local record for {self.app_id} is malformed, starting empty: {e}")
            return UserRecord(app_id=self.app_id)

    def persist(self, record: UserRecord, stamp: int | None = None) -> UserRecord:
        """Write every record field and stamp last_updated.

        Args:
            record: Record to store
            stamp: Timestamp to record; defaults to now. The sync manager passes
                the remote timestamp when adopting a newer remote copy.

        Returns:
            The record as persisted (with the new last_updated)
        """
        stamp = self._clock() if stamp is None else stamp
        doc = record.model_dump()
        self._write_many({
            FIELD_MISTAKES: doc["mistakes"],
            FIELD_ARCHIVE: doc["archive"],
            FIELD_FAVORITES: doc["favorites"],
            FIELD_SETTINGS: record.settings,
            FIELD_LAST_SYNC: stamp,
        })
        log.debug(
            f"Persisted local record: mistakes={len(record.mistakes)}, "
            f"archive={len(record.archive)}, fav={len(record.favorites)}"
        )
        return record.model_copy(update={"last_updated": stamp})

    def last_sync(self) -> int:
        value = self._read(FIELD_LAST_SYNC, 0)
        return value if isinstance(value, int) else 0

    # ========== Session history ==========

    def load_sessions(self) -> list[SessionSummary]:
        sessions = []
        for raw in self._read(FIELD_SESSIONS, []):
            try:
                sessions.append(SessionSummary.model_validate(raw))
            except ValidationError:
                log.debug("Skipping malformed local session entry")
        return sessions

    def append_session(self, summary: SessionSummary) -> None:
        """Add a session summary, keeping only the most recent ones."""
        raw = self._read(FIELD_SESSIONS, [])
        if not isinstance(raw, list):
            raw = []
        raw.append(summary.model_dump())
        self._write_many({FIELD_SESSIONS: raw[-self.max_sessions:]})

    # ========== Sync queue ==========

    def load_queue(self) -> list[SyncQueueEntry]:
        entries = []
        raw = self._read(FIELD_SYNC_QUEUE, [])
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(SyncQueueEntry.model_validate(item))
            except ValidationError:
                log.warning("Dropping malformed sync queue entry")
        return entries

    def save_queue(self, entries: list[SyncQueueEntry]) -> None:
        self._write_many({FIELD_SYNC_QUEUE: [e.model_dump() for e in entries]})

    # ========== Maintenance ==========

    def clear(self) -> None:
        """Delete this instance's entries, leaving other instances untouched."""
        with self._get_connection() as conn:
            conn.executemany(
                "DELETE FROM local_storage WHERE key = ?",
                [(self.storage_key(f),) for f in LOCAL_FIELDS],
            )
            conn.commit()
        log.info(f"Cleared local cache for {self.app_id}")
