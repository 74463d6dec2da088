"""
Preset persistence on SQLite with sync log bookkeeping and backup/restore functionality
"""

import os
import glob
import json
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from models import Preset, SyncLogEntry, format_timestamp, utc_now
from logger import logger
from exceptions import NotFoundError, StorageError, ValidationError

MAX_LOG_LIMIT = 1000

SCHEMA = """
CREATE TABLE IF NOT EXISTS presets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    scope_type TEXT NOT NULL,
    scope_value TEXT NOT NULL,
    fields TEXT,
    encrypted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_used TEXT,
    use_count INTEGER NOT NULL DEFAULT 0,
    device_id TEXT NOT NULL,
    metadata TEXT,
    UNIQUE(scope_type, scope_value, name, device_id)
);

CREATE INDEX IF NOT EXISTS idx_presets_scope ON presets(scope_type, scope_value);
CREATE INDEX IF NOT EXISTS idx_presets_device ON presets(device_id);
CREATE INDEX IF NOT EXISTS idx_presets_last_used ON presets(last_used);

CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    preset_id TEXT NOT NULL,
    action TEXT NOT NULL,
    device_id TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_preset ON sync_log(preset_id);
CREATE INDEX IF NOT EXISTS idx_sync_log_timestamp ON sync_log(timestamp);
"""

PRESET_COLUMNS = ("id, name, scope_type, scope_value, fields, encrypted, created_at, "
                  "updated_at, last_used, use_count, device_id, metadata")

# Insert-or-update in one statement. An id conflict only updates a record
# owned by the same device; a scope tuple conflict overwrites that record in
# place and keeps its id.
UPSERT_SQL = f"""
INSERT INTO presets ({PRESET_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    name = excluded.name,
    scope_type = excluded.scope_type,
    scope_value = excluded.scope_value,
    fields = excluded.fields,
    encrypted = excluded.encrypted,
    updated_at = excluded.updated_at,
    metadata = excluded.metadata
    WHERE presets.device_id = excluded.device_id
ON CONFLICT(scope_type, scope_value, name, device_id) DO UPDATE SET
    fields = excluded.fields,
    encrypted = excluded.encrypted,
    updated_at = excluded.updated_at,
    metadata = excluded.metadata
RETURNING {PRESET_COLUMNS}
"""


def _parse_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def generate_preset_id() -> str:
    return f"preset_{uuid.uuid4().hex}"


class PresetStore:
    """Owns preset records and the sync log.

    A single SQLite connection is shared by all request threads and
    serialised by one lock. Every mutating operation runs in its own
    transaction together with its sync log append.
    """

    def __init__(self, db_path: str, lock_timeout: float = None, backup_dir: str = None,
                 max_backups: int = None, clock: Callable[[], datetime] = None):
        self.db_path = db_path
        self.backup_dir = backup_dir or os.path.join(os.path.dirname(db_path) or ".", "backups")
        self.max_backups = max_backups or int(os.getenv('DB_MAX_BACKUPS', '5'))
        self._clock = clock or utc_now

        # Single lock for all database operations; acquired with a timeout so
        # a stuck writer surfaces as an error instead of starving requests
        self._lock = threading.RLock()
        self._lock_timeout = lock_timeout or float(os.getenv('DB_LOCK_TIMEOUT', '30.0'))

        # Validate configuration
        self._validate_configuration()

        self._conn = self._connect()
        logger.info(f"Storage initialized successfully: {self.db_path}")

    def _validate_configuration(self):
        """Validate database configuration"""
        if self.max_backups < 1 or self.max_backups > 50:
            raise ValueError(f"DB_MAX_BACKUPS must be between 1 and 50, got {self.max_backups}")

        if self._lock_timeout < 1.0 or self._lock_timeout > 300.0:
            raise ValueError(f"DB_LOCK_TIMEOUT must be between 1.0 and 300.0 seconds, got {self._lock_timeout}")

        logger.debug("Database configuration validated",
                     db_path=self.db_path,
                     max_backups=self.max_backups,
                     lock_timeout=self._lock_timeout)

    def _connect(self) -> sqlite3.Connection:
        try:
            if self.db_path != ":memory:":
                directory = os.path.dirname(self.db_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                timeout=self._lock_timeout,
                check_same_thread=False,
                isolation_level=None
            )
            conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
            return conn
        except (sqlite3.Error, OSError) as e:
            raise StorageError("Failed to initialize storage", context={"db_path": self.db_path}, original_error=e)

    def _acquire_lock_with_timeout(self):
        """Acquire lock with timeout to prevent indefinite blocking"""
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StorageError(f"Failed to acquire database lock within {self._lock_timeout} seconds")
        return True

    def _release_lock(self):
        """Release the database lock"""
        self._lock.release()

    @contextmanager
    def _locked(self, operation: str):
        """Hold the store lock and wrap engine errors as StorageError"""
        self._acquire_lock_with_timeout()
        try:
            yield self._conn
        except sqlite3.Error as e:
            logger.error(f"Storage operation {operation} failed: {e}", operation=operation)
            raise StorageError(f"Storage operation {operation} failed", original_error=e)
        finally:
            self._release_lock()

    @contextmanager
    def _transaction(self, operation: str):
        """Run the body as one IMMEDIATE transaction under the store lock"""
        with self._locked(operation) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _now(self) -> datetime:
        return self._clock()

    def _append_log(self, conn: sqlite3.Connection, preset_id: str, action: str, device_id: str):
        conn.execute(
            "INSERT INTO sync_log (preset_id, action, device_id, timestamp) VALUES (?, ?, ?, ?)",
            (preset_id, action, device_id, format_timestamp(self._now()))
        )

    def _row_to_preset(self, row: sqlite3.Row) -> Preset:
        fields: Any = None
        if row["fields"] is not None:
            try:
                fields = json.loads(row["fields"])
            except ValueError as e:
                logger.warning(f"Failed to decode fields for preset {row['id']}: {e}")
        metadata = None
        if row["metadata"]:
            try:
                metadata = json.loads(row["metadata"])
            except ValueError as e:
                logger.warning(f"Failed to decode metadata for preset {row['id']}: {e}")

        return Preset(
            id=row["id"],
            name=row["name"],
            scope_type=row["scope_type"],
            scope_value=row["scope_value"],
            fields=fields,
            encrypted=bool(row["encrypted"]),
            created_at=_parse_db_timestamp(row["created_at"]),
            updated_at=_parse_db_timestamp(row["updated_at"]),
            last_used=_parse_db_timestamp(row["last_used"]),
            use_count=row["use_count"],
            device_id=row["device_id"],
            metadata=metadata,
        )

    def save_preset(self, preset: Preset) -> Preset:
        """Create or update a preset and return the stored record"""
        preset.validate()

        now = self._now()
        preset_id = preset.id or generate_preset_id()
        created_at = preset.created_at or now
        try:
            fields_json = json.dumps(preset.fields) if preset.fields is not None else None
            metadata_json = json.dumps(preset.metadata) if preset.metadata is not None else None
        except (TypeError, ValueError) as e:
            raise ValidationError("fields and metadata must be JSON serializable", original_error=e)

        params = (
            preset_id,
            preset.name,
            preset.scope_type,
            preset.scope_value or "",
            fields_json,
            1 if preset.encrypted else 0,
            format_timestamp(created_at),
            format_timestamp(now),
            format_timestamp(preset.last_used),
            preset.use_count or 0,
            preset.device_id,
            metadata_json,
        )

        try:
            with self._transaction("save_preset") as conn:
                rows = conn.execute(UPSERT_SQL, params).fetchall()
                if not rows:
                    # The id exists but belongs to another device
                    raise NotFoundError("Preset not found", context={"id": preset_id})
                stored = self._row_to_preset(rows[0])
                self._append_log(conn, stored.id, "save", stored.device_id)
        except StorageError as e:
            if isinstance(e.original_error, sqlite3.IntegrityError):
                raise ValidationError("A preset with this name and scope already exists for the device",
                                      original_error=e.original_error)
            raise

        logger.debug(f"Saved preset: {stored.id} (device: {stored.device_id})")
        return stored

    def get_all_presets(self, device_id: str) -> List[Preset]:
        """Presets owned by the device or shared (no owning device), newest first"""
        with self._locked("get_all_presets") as conn:
            rows = conn.execute(
                f"SELECT {PRESET_COLUMNS} FROM presets "
                "WHERE device_id = ? OR device_id = '' "
                "ORDER BY updated_at DESC, id",
                (device_id,)
            ).fetchall()
        return [self._row_to_preset(row) for row in rows]

    def get_preset(self, preset_id: str, device_id: str) -> Preset:
        with self._locked("get_preset") as conn:
            row = conn.execute(
                f"SELECT {PRESET_COLUMNS} FROM presets "
                "WHERE id = ? AND (device_id = ? OR device_id = '')",
                (preset_id, device_id)
            ).fetchone()
        if row is None:
            raise NotFoundError("Preset not found", context={"id": preset_id})
        return self._row_to_preset(row)

    def get_presets_by_scope(self, scope_type: str, scope_value: str,
                             device_id: Optional[str] = None) -> List[Preset]:
        """Exact scope match, newest first, optionally limited to what a device can see"""
        query = f"SELECT {PRESET_COLUMNS} FROM presets WHERE scope_type = ? AND scope_value = ?"
        params: Tuple = (scope_type, scope_value)
        if device_id:
            query += " AND (device_id = ? OR device_id = '')"
            params += (device_id,)
        query += " ORDER BY updated_at DESC, id"

        with self._locked("get_presets_by_scope") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_preset(row) for row in rows]

    def delete_preset(self, preset_id: str, device_id: str):
        """Delete a preset owned by the device.

        Earlier sync log entries go with it and a delete entry is appended.
        """
        with self._transaction("delete_preset") as conn:
            cursor = conn.execute("DELETE FROM presets WHERE id = ? AND device_id = ?", (preset_id, device_id))
            if cursor.rowcount == 0:
                raise NotFoundError("Preset not found", context={"id": preset_id})
            conn.execute("DELETE FROM sync_log WHERE preset_id = ?", (preset_id,))
            self._append_log(conn, preset_id, "delete", device_id)

        logger.debug(f"Deleted preset: {preset_id} (device: {device_id})")

    def record_usage(self, preset_id: str) -> Preset:
        """Increment the use counter and stamp last_used"""
        now = format_timestamp(self._now())
        with self._transaction("record_usage") as conn:
            rows = conn.execute(
                "UPDATE presets SET last_used = ?, use_count = use_count + 1 "
                f"WHERE id = ? RETURNING {PRESET_COLUMNS}",
                (now, preset_id)
            ).fetchall()
            if not rows:
                raise NotFoundError("Preset not found", context={"id": preset_id})
            preset = self._row_to_preset(rows[0])
            self._append_log(conn, preset_id, "usage", preset.device_id)
        return preset

    def cleanup_older_than(self, days: int) -> int:
        """Remove presets not used (or, if never used, created) within the last N days"""
        if days <= 0:
            return 0

        cutoff = format_timestamp(self._now() - timedelta(days=days))
        with self._transaction("cleanup_older_than") as conn:
            stale = conn.execute(
                "SELECT id, device_id FROM presets WHERE COALESCE(last_used, created_at) < ?",
                (cutoff,)
            ).fetchall()
            for row in stale:
                conn.execute("DELETE FROM presets WHERE id = ?", (row["id"],))
                conn.execute("DELETE FROM sync_log WHERE preset_id = ?", (row["id"],))
                self._append_log(conn, row["id"], "cleanup", row["device_id"])

        logger.cleanup_completed(len(stale), days)
        return len(stale)

    def list_devices(self) -> List[str]:
        with self._locked("list_devices") as conn:
            rows = conn.execute(
                "SELECT DISTINCT device_id FROM presets WHERE device_id != '' ORDER BY device_id"
            ).fetchall()
        return [row["device_id"] for row in rows]

    def get_sync_log(self, preset_id: Optional[str] = None, limit: int = 100) -> List[SyncLogEntry]:
        """Sync log entries newest first, for one preset or the whole store"""
        if limit < 1 or limit > MAX_LOG_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LOG_LIMIT}", context={"limit": limit})

        query = "SELECT id, preset_id, action, device_id, timestamp FROM sync_log"
        params: Tuple = ()
        if preset_id is not None:
            query += " WHERE preset_id = ?"
            params = (preset_id,)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params += (limit,)

        with self._locked("get_sync_log") as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            SyncLogEntry(
                id=row["id"],
                preset_id=row["preset_id"],
                action=row["action"],
                device_id=row["device_id"],
                timestamp=_parse_db_timestamp(row["timestamp"]),
            )
            for row in rows
        ]

    def get_device_summary(self, device_id: str) -> Dict[str, Any]:
        """Preset count and latest update visible to a device"""
        with self._locked("get_device_summary") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS preset_count, MAX(updated_at) AS last_updated FROM presets "
                "WHERE device_id = ? OR device_id = ''",
                (device_id,)
            ).fetchone()
        return {
            "preset_count": row["preset_count"],
            "last_updated": row["last_updated"],
        }

    def ping(self) -> bool:
        with self._locked("ping") as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def backup(self) -> str:
        """Create a timestamped online backup of the database"""
        os.makedirs(self.backup_dir, exist_ok=True)
        base_name = os.path.basename(self.db_path) if self.db_path != ":memory:" else "memory.db"
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_name = os.path.join(self.backup_dir, f"{base_name}.backup.{timestamp}")

        start_time = time.time()
        with self._locked("backup") as conn:
            target = sqlite3.connect(backup_name)
            try:
                conn.backup(target)
            finally:
                target.close()
        logger.backup_created(backup_name, (time.time() - start_time) * 1000)

        self._cleanup_old_backups(base_name)
        return backup_name

    def _cleanup_old_backups(self, base_name: str):
        """Remove old backup files, keeping only the most recent ones"""
        backup_pattern = os.path.join(self.backup_dir, f"{base_name}.backup.*")
        backup_files = sorted(glob.glob(backup_pattern), reverse=True)

        for backup_file in backup_files[self.max_backups:]:
            try:
                os.remove(backup_file)
                logger.debug(f"Removed old backup: {backup_file}")
            except OSError as e:
                logger.warning(f"Failed to remove old backup {backup_file}: {e}")

    def close(self):
        logger.info("Closing storage")
        with self._locked("close") as conn:
            conn.close()
