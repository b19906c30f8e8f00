"""
Database interface for event log maintenance.

Provides Pydantic models for the event store tables, the maintenance error
taxonomy, and the :class:`MaintenanceDatabase` handle: an explicit session
object opened at the start of a run and released on every exit path.
"""
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Sequence

from pydantic import BaseModel, ConfigDict, field_validator

from event_log_maintenance.logger import get_logger

SCHEMA_PATH = Path(__file__).resolve().parent / "database_schema.sql"

logger = get_logger(__name__)


def to_epoch_ms(moment: datetime) -> int:
    """Convert a datetime to epoch milliseconds, the unit of every stored timestamp."""
    return int(moment.timestamp() * 1000)


def _parse_json_column(v: Any) -> Any:
    if isinstance(v, (str, bytes)):
        return json.loads(v)
    return v


def _serialize_json(value: dict | list | None) -> str | None:
    """Serialize a value to compact JSON text."""
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))

# ==== DATA MODELS ====

class _BaseRowModel(BaseModel):
    """Base model for database rows with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        extra="forbid",
    )


class EventRow(_BaseRowModel):
    """Row from events table."""

    id: int | None = None
    source_app: str
    session_id: str
    hook_event_type: str
    payload: str
    chat: list | None = None
    summary: str | None = None
    timestamp: int

    @field_validator("payload", mode="before")
    @classmethod
    def serialize_payload(cls, v: Any) -> Any:
        """Store structured payloads as JSON text."""
        if isinstance(v, (dict, list)):
            return json.dumps(v, separators=(",", ":"))
        return v

    @field_validator("chat", mode="before")
    @classmethod
    def parse_chat(cls, v: Any) -> list | None:
        """Parse the chat transcript JSON array."""
        if v is None:
            return None
        return _parse_json_column(v)

    @property
    def payload_size(self) -> int:
        """Payload length in bytes, as measured by the truncation policy."""
        return len(self.payload.encode("utf-8"))

    def payload_json(self) -> Any:
        """Return the decoded payload."""
        return json.loads(self.payload)


class ThemeRow(_BaseRowModel):
    """Row from themes table."""

    id: str
    name: str
    displayName: str
    description: str | None = None
    colors: dict
    isPublic: bool = False
    authorId: str | None = None
    authorName: str | None = None
    createdAt: int
    updatedAt: int
    tags: list[str] | None = None
    downloadCount: int = 0
    rating: float = 0.0
    ratingCount: int = 0

    @field_validator("colors", "tags", mode="before")
    @classmethod
    def parse_json_columns(cls, v: Any) -> Any:
        """Parse JSON text columns."""
        if v is None:
            return None
        return _parse_json_column(v)


class ThemeShareRow(_BaseRowModel):
    """Row from theme_shares table."""

    id: str
    themeId: str
    shareToken: str
    expiresAt: int | None = None
    isPublic: bool = False
    allowedUsers: list[str] | None = None
    createdAt: int
    accessCount: int = 0

    @field_validator("allowedUsers", mode="before")
    @classmethod
    def parse_allowed_users(cls, v: Any) -> list | None:
        """Parse the allowed users JSON array."""
        if v is None:
            return None
        return _parse_json_column(v)


class ThemeRatingRow(_BaseRowModel):
    """Row from theme_ratings table."""

    id: str
    themeId: str
    userId: str
    rating: int
    comment: str | None = None
    createdAt: int

# --- MAINTENANCE ERRORS

class MaintenanceError(Exception):
    """Base exception for maintenance operations."""


class StorageAccessError(MaintenanceError):
    """Raised when the data file cannot be opened, is locked, or is corrupt."""


class DBConstraintError(MaintenanceError):
    """Raised when a database constraint is violated."""


class RotationError(MaintenanceError):
    """Raised when the backup directory or the atomic rename of the data file fails."""


class StatsError(MaintenanceError):
    """Raised when reading statistics from the data file fails."""


class RunLockError(MaintenanceError):
    """Raised when another maintenance run already holds the run lock."""

    def __init__(self, lock_path: Path) -> None:
        """Initialize the exception."""
        self.lock_path = lock_path
        super().__init__(
            f"Cannot acquire maintenance lock '{lock_path}'. "
            "Another maintenance run is already active."
        )

# DATABASE INTERFACE

class MaintenanceDatabase:
    """
    Scoped handle on the event store.

    Opened once per run (``with MaintenanceDatabase(path) as db:``) and passed
    explicitly to every maintenance step. The connection runs in autocommit
    mode, so each statement is durable on its own unless grouped with
    :meth:`transaction`.
    """

    def __init__(self, db_path: Path, read_only: bool = False) -> None:
        """Initialize the handle; no connection is made until :meth:`open`."""
        self._db_path = Path(db_path)
        self._read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self._in_transaction = False

    @property
    def db_path(self) -> Path:  # noqa: D102
        return self._db_path

    @property
    def conn(self) -> sqlite3.Connection:
        """The live connection; raises if the handle is closed."""
        if self._conn is None:
            raise StorageAccessError(f"Database handle for {self._db_path} is not open")
        return self._conn

    def open(self) -> None:
        """
        Open the connection and verify the file is a readable SQLite database.

        :raises StorageAccessError: If the file cannot be opened, is locked, or
            is not a database.
        """
        try:
            if self._read_only:
                uri = f"{self._db_path.resolve().as_uri()}?mode=ro"
                conn = sqlite3.connect(uri, uri=True, timeout=30.0, isolation_level=None)
            else:
                conn = sqlite3.connect(str(self._db_path), timeout=30.0, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageAccessError(f"Cannot open {self._db_path}: {e}") from e

        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA busy_timeout = 30000")
            conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
            if not self._read_only:
                conn.execute("PRAGMA journal_mode = WAL")
        except sqlite3.Error as e:
            conn.close()
            raise StorageAccessError(f"Cannot use {self._db_path}: {e}") from e

        self._conn = conn
        logger.debug("Opened %s (read_only=%s)", self._db_path, self._read_only)

    def close(self) -> None:
        """Close the connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "MaintenanceDatabase":
        """Enter context manager."""
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context manager."""
        self.close()

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[None]:
        """Context manager for a database transaction."""
        if self._in_transaction:
            yield
            return
        begin_stmt = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self.conn.execute(begin_stmt)
        self._in_transaction = True
        try:
            yield
            self.conn.execute("COMMIT")
        except Exception:
            self.conn.execute("ROLLBACK")
            raise
        finally:
            self._in_transaction = False

    @property
    def in_transaction(self) -> bool:  # noqa: D102
        return self._in_transaction

    def _execute(self, sql: str, params: Sequence | dict | None = None) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params or ())
        except sqlite3.IntegrityError as e:
            raise DBConstraintError(str(e)) from e

    def _fetchone(self, sql: str, params: Sequence | dict | None = None) -> sqlite3.Row | None:
        return self._execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence | dict | None = None) -> list[sqlite3.Row]:
        return self._execute(sql, params).fetchall()

    def execute(self, sql: str, params: Sequence | dict | None = None) -> sqlite3.Cursor:
        """Execute one statement on the working connection."""
        return self._execute(sql, params)

    def executescript(self, script: str) -> None:
        """Execute a multi-statement script (DDL)."""
        self.conn.executescript(script)

    def scalar(self, sql: str, params: Sequence | dict | None = None) -> Any:
        """Return the first column of the first row, or None."""
        row = self._fetchone(sql, params)
        return row[0] if row is not None else None

    # Introspection

    def file_size(self) -> int:
        """Size of the main data file in bytes (0 if it does not exist)."""
        try:
            return self._db_path.stat().st_size
        except FileNotFoundError:
            return 0

    def table_names(self) -> set[str]:
        """Names of user tables in the file."""
        return {
            row[0] for row in self._fetchall(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            )
        }

    def index_names(self) -> set[str]:
        """Names of explicitly created indexes in the file."""
        return {
            row[0] for row in self._fetchall(
                "SELECT name FROM sqlite_master WHERE type='index' AND sql IS NOT NULL"
            )
        }

    def is_fresh_db(self) -> bool:
        """True when the file holds no user tables."""
        return not self.table_names()

    def count_rows(self, table: str) -> int:
        """Row count of *table* (must be one of the file's tables)."""
        if table not in self.table_names():
            raise ValueError(f"Unknown table: {table}")
        return int(self.scalar(f"SELECT COUNT(*) FROM [{table}]"))

    # events

    def insert_event(self, row: EventRow) -> int:
        """Insert an event and return its id."""
        cursor = self._execute(
            """INSERT INTO events
               (id, source_app, session_id, hook_event_type, payload, chat, summary, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                row.id, row.source_app, row.session_id, row.hook_event_type,
                row.payload, _serialize_json(row.chat), row.summary, row.timestamp,
            ),
        )
        return int(cursor.lastrowid)

    def insert_events(self, rows: Sequence[EventRow]) -> list[int]:
        """Insert several events in one transaction."""
        with self.transaction():
            return [self.insert_event(row) for row in rows]

    def get_event(self, event_id: int) -> EventRow | None:  # noqa: D102
        row = self._fetchone("SELECT * FROM events WHERE id = ?", (event_id,))
        return EventRow.model_validate(dict(row)) if row else None

    def list_events(self) -> list[EventRow]:
        """All events ordered by id."""
        rows = self._fetchall("SELECT * FROM events ORDER BY id")
        return [EventRow.model_validate(dict(r)) for r in rows]

    # themes

    def insert_theme(self, row: ThemeRow) -> None:  # noqa: D102
        self._execute(
            """INSERT INTO themes
               (id, name, displayName, description, colors, isPublic, authorId, authorName,
                createdAt, updatedAt, tags, downloadCount, rating, ratingCount)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                row.id, row.name, row.displayName, row.description, _serialize_json(row.colors),
                int(row.isPublic), row.authorId, row.authorName, row.createdAt, row.updatedAt,
                _serialize_json(row.tags), row.downloadCount, row.rating, row.ratingCount,
            ),
        )

    def insert_theme_share(self, row: ThemeShareRow) -> None:  # noqa: D102
        self._execute(
            """INSERT INTO theme_shares
               (id, themeId, shareToken, expiresAt, isPublic, allowedUsers, createdAt, accessCount)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                row.id, row.themeId, row.shareToken, row.expiresAt, int(row.isPublic),
                _serialize_json(row.allowedUsers), row.createdAt, row.accessCount,
            ),
        )

    def list_theme_shares(self) -> list[ThemeShareRow]:  # noqa: D102
        rows = self._fetchall("SELECT * FROM theme_shares ORDER BY createdAt, id")
        return [ThemeShareRow.model_validate(dict(r)) for r in rows]

    def insert_theme_rating(self, row: ThemeRatingRow) -> None:  # noqa: D102
        self._execute(
            """INSERT INTO theme_ratings (id, themeId, userId, rating, comment, createdAt)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (row.id, row.themeId, row.userId, row.rating, row.comment, row.createdAt),
        )
