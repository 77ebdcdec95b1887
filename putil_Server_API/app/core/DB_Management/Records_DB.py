# Records_DB.py
# Description: DB Library for the syncable record store (tasks, transactions, calendar events) and the
#   server-side bookkeeping that the sync coordinator and trigger scanner share.
#
# Imports
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# Fixed-width UTC format: lexical order of stored strings equals chronological order.
DB_TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

SYNCABLE_TABLES = ("tasks", "transactions", "events")

# Columns managed by the server; never writable through a client payload.
META_COLUMNS = frozenset({
    "id", "owner_id", "client_key", "revision", "changed_at", "created_at",
    "deleted", "deleted_at", "client_device_id",
    "reminder_notified_at", "deadline_notified_at", "notified_at",
})


def format_db_timestamp(dt: datetime) -> str:
    """Renders an aware datetime in the store's fixed-width UTC format. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(DB_TIMESTAMP_FORMAT)


def parse_db_timestamp(value: str) -> datetime:
    return datetime.strptime(value, DB_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


# --- Custom Exceptions ---
class RecordsDBError(Exception):
    """Base exception for RecordsDB related errors."""
    pass


class SchemaError(RecordsDBError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(RecordsDBError):
    """Indicates a conflict due to concurrent modification (revision mismatch or unique constraint)."""

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


# --- Database Class ---
class RecordsDB:
    """
    Manages the SQLite connection and operations for the shared record store.

    Every syncable table carries the change-tracking columns (revision, changed_at, deleted, ...) and is
    scoped by owner_id. Write helpers take an open connection so callers can group them in one
    transaction; each guarded write checks its rowcount and raises ConflictError when a concurrent
    writer got there first. SQL triggers keep tombstones permanent and revisions non-decreasing.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "putil_records_schema"

    _FULL_SCHEMA_SQL_V1 = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version INTEGER NOT NULL
);

/*───────────────────────────────────────────────────────────────
  Tasks
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS tasks(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner_id INTEGER NOT NULL,
  client_key TEXT NOT NULL,
  title TEXT NOT NULL DEFAULT '',
  description TEXT,
  is_completed BOOLEAN NOT NULL DEFAULT 0,
  completed_at TEXT,
  category_id INTEGER,
  priority TEXT NOT NULL DEFAULT 'medium' CHECK(priority IN ('low','medium','high')),
  tags TEXT,
  position INTEGER NOT NULL DEFAULT 0,
  due_date TEXT,
  reminder_time TEXT,
  reminder_notified_at TEXT,
  deadline_notified_at TEXT,
  revision INTEGER NOT NULL DEFAULT 1,
  changed_at TEXT NOT NULL,
  created_at TEXT NOT NULL,
  deleted BOOLEAN NOT NULL DEFAULT 0,
  deleted_at TEXT,
  client_device_id TEXT,
  UNIQUE(owner_id, client_key)
);
CREATE INDEX IF NOT EXISTS idx_tasks_owner_changed ON tasks(owner_id, changed_at);
CREATE INDEX IF NOT EXISTS idx_tasks_reminder ON tasks(reminder_time) WHERE deleted = 0;
CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(due_date) WHERE deleted = 0;

/*───────────────────────────────────────────────────────────────
  Transactions (income / expense entries)
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS transactions(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner_id INTEGER NOT NULL,
  client_key TEXT NOT NULL,
  amount REAL NOT NULL DEFAULT 0,
  type TEXT NOT NULL DEFAULT 'expense' CHECK(type IN ('income','expense')),
  category_id INTEGER,
  description TEXT,
  date TEXT,
  payment_method TEXT,
  receipt_image TEXT,
  revision INTEGER NOT NULL DEFAULT 1,
  changed_at TEXT NOT NULL,
  created_at TEXT NOT NULL,
  deleted BOOLEAN NOT NULL DEFAULT 0,
  deleted_at TEXT,
  client_device_id TEXT,
  UNIQUE(owner_id, client_key)
);
CREATE INDEX IF NOT EXISTS idx_transactions_owner_changed ON transactions(owner_id, changed_at);

/*───────────────────────────────────────────────────────────────
  Calendar events
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS events(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner_id INTEGER NOT NULL,
  client_key TEXT NOT NULL,
  title TEXT NOT NULL DEFAULT '',
  description TEXT,
  event_date TEXT,
  event_type TEXT,
  color TEXT,
  icon TEXT,
  image_path TEXT,
  is_recurring BOOLEAN NOT NULL DEFAULT 0,
  recurrence_pattern TEXT CHECK(recurrence_pattern IS NULL OR recurrence_pattern IN ('daily','weekly','monthly','yearly')),
  notification_enabled BOOLEAN NOT NULL DEFAULT 1,
  notification_times TEXT,
  notified_at TEXT,
  revision INTEGER NOT NULL DEFAULT 1,
  changed_at TEXT NOT NULL,
  created_at TEXT NOT NULL,
  deleted BOOLEAN NOT NULL DEFAULT 0,
  deleted_at TEXT,
  client_device_id TEXT,
  UNIQUE(owner_id, client_key)
);
CREATE INDEX IF NOT EXISTS idx_events_owner_changed ON events(owner_id, changed_at);
CREATE INDEX IF NOT EXISTS idx_events_date ON events(event_date) WHERE deleted = 0;

/*───────────────────────────────────────────────────────────────
  Change-tracking guards
───────────────────────────────────────────────────────────────*/
CREATE TRIGGER IF NOT EXISTS tasks_tombstone_guard BEFORE UPDATE OF deleted ON tasks
WHEN OLD.deleted = 1 AND NEW.deleted = 0
BEGIN SELECT RAISE(ABORT, 'tombstone is permanent'); END;

CREATE TRIGGER IF NOT EXISTS transactions_tombstone_guard BEFORE UPDATE OF deleted ON transactions
WHEN OLD.deleted = 1 AND NEW.deleted = 0
BEGIN SELECT RAISE(ABORT, 'tombstone is permanent'); END;

CREATE TRIGGER IF NOT EXISTS events_tombstone_guard BEFORE UPDATE OF deleted ON events
WHEN OLD.deleted = 1 AND NEW.deleted = 0
BEGIN SELECT RAISE(ABORT, 'tombstone is permanent'); END;

CREATE TRIGGER IF NOT EXISTS tasks_revision_guard BEFORE UPDATE OF revision ON tasks
WHEN NEW.revision < OLD.revision
BEGIN SELECT RAISE(ABORT, 'revision must not decrease'); END;

CREATE TRIGGER IF NOT EXISTS transactions_revision_guard BEFORE UPDATE OF revision ON transactions
WHEN NEW.revision < OLD.revision
BEGIN SELECT RAISE(ABORT, 'revision must not decrease'); END;

CREATE TRIGGER IF NOT EXISTS events_revision_guard BEFORE UPDATE OF revision ON events
WHEN NEW.revision < OLD.revision
BEGIN SELECT RAISE(ABORT, 'revision must not decrease'); END;

/*───────────────────────────────────────────────────────────────
  Server bookkeeping
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS sync_clock(
  id INTEGER PRIMARY KEY CHECK(id = 1),
  last_ts TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS trigger_scan_state(
  trigger_kind TEXT PRIMARY KEY NOT NULL,
  scanned_until TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_log(
  log_id INTEGER PRIMARY KEY AUTOINCREMENT,
  owner_id INTEGER NOT NULL,
  table_name TEXT NOT NULL,
  record_id INTEGER,
  client_key TEXT,
  action TEXT NOT NULL CHECK(action IN ('create','update','delete')),
  client_device_id TEXT,
  sync_status TEXT NOT NULL CHECK(sync_status IN ('pending','success','conflict','failed')),
  conflict_data TEXT,
  synced_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_log_owner ON sync_log(owner_id, log_id);

CREATE TABLE IF NOT EXISTS account_settings(
  owner_id INTEGER PRIMARY KEY,
  timezone TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

INSERT OR REPLACE INTO db_schema_version(schema_name, version) VALUES('putil_records_schema', 1);
"""

    def __init__(self, db_path: Union[str, Path], client_id: str):
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise RecordsDBError(f"Failed to create database directory {self.db_path.parent}: {e}")

        logger.info(f"Initializing RecordsDB for path: {self.db_path_str} [Client ID: {self.client_id}]")
        self._local = threading.local()
        self._all_connections: Set[sqlite3.Connection] = set()
        self._connections_lock = threading.Lock()
        self._payload_columns: Dict[str, List[str]] = {}
        try:
            self._initialize_schema()
            self._load_payload_columns()
            logger.debug(f"RecordsDB initialization completed successfully for {self.db_path_str}")
        except (RecordsDBError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}")
            self.close_all_connections()
            raise RecordsDBError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(
                    f"Thread-local connection for {self.db_path_str} was closed or became unusable. Reopening.")
                self._forget_connection(conn)
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(
                    self.db_path_str,
                    check_same_thread=False,
                    timeout=15
                )
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                with self._connections_lock:
                    self._all_connections.add(conn)
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to database {self.db_path_str}: {e}")
                self._local.conn = None
                raise RecordsDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def _forget_connection(self, conn: sqlite3.Connection):
        with self._connections_lock:
            self._all_connections.discard(conn)
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing SQLite connection for {self.db_path_str}: {e}")

    def close_connection(self):
        """Closes the calling thread's connection, rolling back any transaction left open."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            return
        try:
            if conn.in_transaction:
                logger.warning(
                    f"Connection to {self.db_path_str} is in an uncommitted transaction during close. Rolling back.")
                conn.rollback()
        except sqlite3.Error as rb_err:
            logger.error(f"Rollback attempt during close for {self.db_path_str} failed: {rb_err}")
        finally:
            self._forget_connection(conn)
            self._local.conn = None

    def close_all_connections(self):
        """Closes every connection opened by any thread. Used at application shutdown."""
        self.close_connection()
        with self._connections_lock:
            remaining = list(self._all_connections)
            self._all_connections.clear()
        for conn in remaining:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing pooled connection for {self.db_path_str}: {e}")
        logger.debug(f"Closed {len(remaining)} remaining connection(s) to {self.db_path_str}.")

    # --- Query Execution ---
    def _execute(self, conn: sqlite3.Connection, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None,
                 entity: Optional[str] = None) -> sqlite3.Cursor:
        try:
            logger.trace(f"Executing SQL: {query[:300]}... Params: {str(params)[:200]}...")
            return conn.execute(query, params or ())
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:300]}... Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation: {e}", entity=entity) from e
            raise RecordsDBError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}")
            raise RecordsDBError(f"Query execution failed: {e}") from e

    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False) -> sqlite3.Cursor:
        conn = self.get_connection()
        cursor = self._execute(conn, query, params)
        if commit and not getattr(self._local, 'managed_txn', False):
            # Python's sqlite3 opens an implicit transaction for DML outside an explicit BEGIN.
            try:
                conn.commit()
            except sqlite3.Error as e:
                raise RecordsDBError(f"Commit failed: {e}") from e
        return cursor

    # --- Transaction Context ---
    def transaction(self, immediate: bool = False) -> 'TransactionContextManager':
        """
        Opens a transaction on the calling thread's connection. `immediate=True` takes the writer lock
        up front (BEGIN IMMEDIATE) so a read-decide-write sequence cannot interleave with another writer.
        """
        return TransactionContextManager(self, immediate=immediate)

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower() and "db_schema_version" in str(e).lower():
                return 0
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _apply_schema_v1(self, conn: sqlite3.Connection):
        logger.info(f"Applying schema Version {self._CURRENT_SCHEMA_VERSION} for '{self._SCHEMA_NAME}' to DB: {self.db_path_str}...")
        try:
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
        except sqlite3.Error as e:
            logger.error(f"[{self._SCHEMA_NAME} V1] Schema application failed: {e}")
            raise SchemaError(f"DB schema V1 setup failed for '{self._SCHEMA_NAME}': {e}") from e

        final_version = self._get_db_version(conn)
        if final_version != self._CURRENT_SCHEMA_VERSION:
            raise SchemaError(
                f"[{self._SCHEMA_NAME}] Schema version update check failed. Expected {self._CURRENT_SCHEMA_VERSION}, got: {final_version}")
        logger.info(f"[{self._SCHEMA_NAME}] Schema V1 applied and version confirmed for DB: {self.db_path_str}.")

    def _initialize_schema(self):
        conn = self.get_connection()
        current_db_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(
            f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_db_version}. Code supports: {target_version}")

        if current_db_version == target_version:
            logger.debug(f"Database schema '{self._SCHEMA_NAME}' is up to date.")
            return
        if current_db_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_db_version}) is newer than supported by code ({target_version}). Aborting.")
        if current_db_version == 0:
            self._apply_schema_v1(conn)
            return
        raise SchemaError(
            f"Migration path undefined for '{self._SCHEMA_NAME}' from version {current_db_version} to {target_version}.")

    def _load_payload_columns(self):
        conn = self.get_connection()
        for table in SYNCABLE_TABLES:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._payload_columns[table] = [r['name'] for r in rows if r['name'] not in META_COLUMNS]

    def payload_columns(self, table: str) -> List[str]:
        self._check_table(table)
        return list(self._payload_columns[table])

    @staticmethod
    def _check_table(table: str):
        if table not in SYNCABLE_TABLES:
            raise InputError(f"Unknown record table: {table}")

    def _check_fields(self, table: str, fields: Dict[str, Any]):
        unknown = set(fields) - set(self._payload_columns[table])
        if unknown:
            raise InputError(f"Unknown or server-managed column(s) for {table}: {sorted(unknown)}")

    # --- Server Clock ---
    def next_transaction_timestamp(self, conn: sqlite3.Connection, now: Optional[datetime] = None) -> str:
        """
        Issues the timestamp for the current write transaction. Stamps are strictly increasing across
        calls even if the host clock steps backwards, so `changed_at > watermark` never misses a write
        that committed after the watermark was handed out. Must be called inside a write transaction.
        """
        now = now or datetime.now(timezone.utc)
        row = self._execute(conn, "SELECT last_ts FROM sync_clock WHERE id = 1").fetchone()
        candidate = now
        if row:
            last = parse_db_timestamp(row['last_ts'])
            if candidate <= last:
                candidate = last + timedelta(microseconds=1)
        stamp = format_db_timestamp(candidate)
        self._execute(conn, "INSERT INTO sync_clock(id, last_ts) VALUES(1, ?) "
                            "ON CONFLICT(id) DO UPDATE SET last_ts = excluded.last_ts", (stamp,))
        return stamp

    # --- Record Reads ---
    def get_record(self, conn: sqlite3.Connection, table: str, owner_id: int, record_id: int) -> Optional[Dict[str, Any]]:
        """Returns the raw row (tombstones included) or None if the owner holds no such id."""
        self._check_table(table)
        row = self._execute(conn, f"SELECT * FROM {table} WHERE id = ? AND owner_id = ?",
                            (record_id, owner_id)).fetchone()
        return dict(row) if row else None

    def get_record_by_client_key(self, conn: sqlite3.Connection, table: str, owner_id: int,
                                 client_key: str) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        row = self._execute(conn, f"SELECT * FROM {table} WHERE owner_id = ? AND client_key = ?",
                            (owner_id, client_key)).fetchone()
        return dict(row) if row else None

    def list_changes_since(self, conn: sqlite3.Connection, table: str, owner_id: int, since: Optional[str],
                           exclude_ids: Iterable[int] = ()) -> List[Dict[str, Any]]:
        """Every owner row with changed_at strictly after `since` (None means all), oldest first."""
        self._check_table(table)
        excluded = set(exclude_ids)
        cursor = self._execute(
            conn,
            f"SELECT * FROM {table} WHERE owner_id = ? AND changed_at > ? ORDER BY changed_at, id",
            (owner_id, since or ""))
        return [dict(row) for row in cursor.fetchall() if row['id'] not in excluded]

    # --- Record Writes (caller owns the transaction) ---
    def insert_record(self, conn: sqlite3.Connection, table: str, owner_id: int, client_key: str,
                      fields: Dict[str, Any], txn_ts: str, device_id: Optional[str]) -> int:
        self._check_table(table)
        self._check_fields(table, fields)
        columns = ["owner_id", "client_key", "revision", "changed_at", "created_at", "deleted", "client_device_id"]
        values: List[Any] = [owner_id, client_key, 1, txn_ts, txn_ts, 0, device_id]
        for name, value in fields.items():
            columns.append(name)
            values.append(value)
        placeholders = ", ".join("?" for _ in columns)
        cursor = self._execute(
            conn, f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})", tuple(values), entity=table)
        logger.debug(f"Inserted {table} id={cursor.lastrowid} for owner {owner_id} (client_key={client_key}).")
        return cursor.lastrowid

    def update_record(self, conn: sqlite3.Connection, table: str, owner_id: int, record_id: int,
                      expected_revision: int, fields: Dict[str, Any], txn_ts: str, device_id: Optional[str],
                      clear_columns: Sequence[str] = ()) -> int:
        """
        Applies a partial update guarded by `revision = expected_revision AND deleted = 0`.
        Always bumps revision and changed_at, even when `fields` is empty.

        Returns:
            int: The new revision.

        Raises:
            ConflictError: The row moved on (or was tombstoned) since it was read.
        """
        self._check_table(table)
        self._check_fields(table, fields)
        assignments = ["revision = revision + 1", "changed_at = ?", "client_device_id = ?"]
        params: List[Any] = [txn_ts, device_id]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            params.append(value)
        for name in clear_columns:
            if name not in META_COLUMNS:
                raise InputError(f"Only server-managed stamp columns can be cleared, got {name}")
            assignments.append(f"{name} = NULL")
        params.extend([record_id, owner_id, expected_revision])
        cursor = self._execute(
            conn,
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND owner_id = ? AND revision = ? AND deleted = 0",
            tuple(params), entity=table)
        if cursor.rowcount == 0:
            raise ConflictError(f"Update of {table} failed: revision {expected_revision} is no longer current.",
                                entity=table, entity_id=record_id)
        return expected_revision + 1

    def tombstone_record(self, conn: sqlite3.Connection, table: str, owner_id: int, record_id: int,
                         expected_revision: int, txn_ts: str, device_id: Optional[str]) -> int:
        self._check_table(table)
        cursor = self._execute(
            conn,
            f"UPDATE {table} SET deleted = 1, deleted_at = ?, revision = revision + 1, changed_at = ?, "
            f"client_device_id = ? WHERE id = ? AND owner_id = ? AND revision = ? AND deleted = 0",
            (txn_ts, txn_ts, device_id, record_id, owner_id, expected_revision), entity=table)
        if cursor.rowcount == 0:
            raise ConflictError(f"Delete of {table} failed: revision {expected_revision} is no longer current.",
                                entity=table, entity_id=record_id)
        logger.debug(f"Tombstoned {table} id={record_id} for owner {owner_id}.")
        return expected_revision + 1

    # --- Trigger Support ---
    def select_due_one_shot(self, conn: sqlite3.Connection, table: str, due_column: str, stamp_column: str,
                            window_start: str, window_end: str, extra_where: str = "") -> List[Dict[str, Any]]:
        """Rows whose `due_column` lies in [window_start, window_end) and that have not been stamped yet."""
        self._check_table(table)
        query = (f"SELECT * FROM {table} WHERE deleted = 0 AND {due_column} IS NOT NULL "
                 f"AND {due_column} >= ? AND {due_column} < ? AND {stamp_column} IS NULL")
        if extra_where:
            query += f" AND {extra_where}"
        query += f" ORDER BY {due_column}, id"
        return [dict(r) for r in self._execute(conn, query, (window_start, window_end)).fetchall()]

    def mark_notified(self, conn: sqlite3.Connection, table: str, stamp_column: str, record_id: int,
                      stamp: str) -> bool:
        """Sets a one-shot stamp if it is still empty. False means another scanner already claimed it."""
        self._check_table(table)
        if stamp_column not in META_COLUMNS:
            raise InputError(f"{stamp_column} is not a notification stamp column")
        cursor = self._execute(
            conn, f"UPDATE {table} SET {stamp_column} = ? WHERE id = ? AND {stamp_column} IS NULL AND deleted = 0",
            (stamp, record_id))
        return cursor.rowcount == 1

    def select_due_recurring_events(self, conn: sqlite3.Connection, window_end: str) -> List[Dict[str, Any]]:
        """
        Live recurring events whose current occurrence is before `window_end`. There is no lower bound:
        a series dated in the past (e.g. created late) is still picked up and rolled forward.
        """
        cursor = self._execute(
            conn,
            "SELECT * FROM events WHERE deleted = 0 AND is_recurring = 1 AND recurrence_pattern IS NOT NULL "
            "AND event_date IS NOT NULL AND event_date < ? ORDER BY event_date, id",
            (window_end,))
        return [dict(r) for r in cursor.fetchall()]

    def advance_event_date(self, conn: sqlite3.Connection, record_id: int, old_event_date: str,
                           new_event_date: str, txn_ts: str) -> bool:
        """
        Compare-and-set of a recurring event's date. The revision bump lets devices pick the new
        occurrence up through sync. False means the row changed under us and must not be notified.
        """
        cursor = self._execute(
            conn,
            "UPDATE events SET event_date = ?, revision = revision + 1, changed_at = ?, client_device_id = ? "
            "WHERE id = ? AND event_date = ? AND deleted = 0",
            (new_event_date, txn_ts, self.client_id, record_id, old_event_date))
        return cursor.rowcount == 1

    def get_scan_state(self, conn: sqlite3.Connection, trigger_kind: str) -> Optional[str]:
        row = self._execute(conn, "SELECT scanned_until FROM trigger_scan_state WHERE trigger_kind = ?",
                            (trigger_kind,)).fetchone()
        return row['scanned_until'] if row else None

    def set_scan_state(self, conn: sqlite3.Connection, trigger_kind: str, scanned_until: str):
        self._execute(
            conn,
            "INSERT INTO trigger_scan_state(trigger_kind, scanned_until) VALUES(?, ?) "
            "ON CONFLICT(trigger_kind) DO UPDATE SET scanned_until = excluded.scanned_until",
            (trigger_kind, scanned_until))

    def list_scan_state(self) -> Dict[str, str]:
        cursor = self.execute_query("SELECT trigger_kind, scanned_until FROM trigger_scan_state ORDER BY trigger_kind")
        return {row['trigger_kind']: row['scanned_until'] for row in cursor.fetchall()}

    # --- Sync Log ---
    def append_sync_log(self, conn: sqlite3.Connection, owner_id: int, table: str, record_id: Optional[int],
                        client_key: Optional[str], action: str, device_id: Optional[str], sync_status: str,
                        synced_at: str, conflict_data: Optional[Dict[str, Any]] = None):
        self._execute(
            conn,
            "INSERT INTO sync_log(owner_id, table_name, record_id, client_key, action, client_device_id, "
            "sync_status, conflict_data, synced_at) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (owner_id, table, record_id, client_key, action, device_id, sync_status,
             json.dumps(conflict_data) if conflict_data is not None else None, synced_at))

    def get_sync_log_entries(self, owner_id: int, limit: int = 100,
                             table: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM sync_log WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if table:
            self._check_table(table)
            query += " AND table_name = ?"
            params.append(table)
        query += " ORDER BY log_id DESC LIMIT ?"
        params.append(limit)
        entries = []
        for row in self.execute_query(query, tuple(params)).fetchall():
            entry = dict(row)
            entry['conflict_data'] = json.loads(entry['conflict_data']) if entry['conflict_data'] else None
            entries.append(entry)
        return entries

    # --- Account Settings ---
    def get_owner_timezone(self, owner_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
        conn = conn or self.get_connection()
        row = self._execute(conn, "SELECT timezone FROM account_settings WHERE owner_id = ?", (owner_id,)).fetchone()
        return row['timezone'] if row else None

    def set_owner_timezone(self, owner_id: int, tz_name: str):
        now = format_db_timestamp(datetime.now(timezone.utc))
        with self.transaction() as conn:
            self._execute(
                conn,
                "INSERT INTO account_settings(owner_id, timezone, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(owner_id) DO UPDATE SET timezone = excluded.timezone, updated_at = excluded.updated_at",
                (owner_id, tz_name, now))
        logger.info(f"Timezone for owner {owner_id} set to {tz_name}.")


class TransactionContextManager:
    def __init__(self, db_instance: RecordsDB, immediate: bool = False):
        self.db = db_instance
        self.immediate = immediate
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            try:
                self.conn.execute("BEGIN IMMEDIATE" if self.immediate else "BEGIN")
            except sqlite3.Error as e:
                logger.error(f"Could not begin transaction on thread {threading.get_ident()}: {e}")
                raise RecordsDBError(f"Could not begin transaction: {e}") from e
            self.is_outermost_transaction = True
            self.db._local.managed_txn = True
            logger.trace(f"Transaction started (outermost, immediate={self.immediate}) on thread {threading.get_ident()}.")
        else:
            logger.trace(f"Entering nested transaction block on thread {threading.get_ident()}.")
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.conn:
            logger.error("Transaction context: Connection is None in __exit__.")
            return False

        if not self.is_outermost_transaction:
            # The outermost block owns commit/rollback.
            return False

        self.db._local.managed_txn = False
        if exc_type:
            logger.warning(
                f"Transaction (outermost) failed, rolling back on thread {threading.get_ident()}: {exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}")
            return False

        try:
            self.conn.commit()
            logger.trace(f"Transaction (outermost) committed successfully on thread {threading.get_ident()}.")
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err_after_commit_fail:
                logger.critical(
                    f"Rollback after failed commit also FAILED on thread {threading.get_ident()}: {rb_err_after_commit_fail}")
            raise RecordsDBError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Records_DB.py
########################################################################################################################
