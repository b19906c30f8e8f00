"""
Schema initialization for the event store.

Creates the canonical tables (events, themes, theme_shares, theme_ratings),
their foreign keys and lookup indexes, and sets the journaling mode. All DDL is
``IF NOT EXISTS``, so :func:`ensure_schema` is safe on a freshly rotated empty
file and on a populated one alike.
"""
from pathlib import Path

from event_log_maintenance.logger import get_logger
from event_log_maintenance.maintenance.database_interface import SCHEMA_PATH, MaintenanceDatabase

logger = get_logger(__name__)

CANONICAL_TABLES = frozenset(["events", "themes", "theme_shares", "theme_ratings"])

CANONICAL_INDEXES = frozenset([
    "idx_source_app", "idx_session_id", "idx_hook_event_type", "idx_timestamp",
    "idx_themes_name", "idx_themes_isPublic", "idx_themes_createdAt",
    "idx_theme_shares_token", "idx_theme_ratings_theme",
])


def load_schema_sql(schema_path: Path = SCHEMA_PATH) -> str:
    """Read the canonical DDL script."""
    return Path(schema_path).read_text(encoding="utf-8")


def configure_durability(db: MaintenanceDatabase) -> None:
    """Write-ahead journaling with NORMAL synchronous durability."""
    mode = db.scalar("PRAGMA journal_mode = WAL")
    db.execute("PRAGMA synchronous = NORMAL")
    if str(mode).lower() != "wal":
        logger.warning("journal_mode for %s is %s, expected wal", db.db_path, mode)


def ensure_schema(db: MaintenanceDatabase) -> set[str]:
    """
    Create any missing canonical tables and indexes.

    :param db: Open, writable handle.
    :return: Names of the schema objects that were created by this call.
    """
    configure_durability(db)
    before = db.table_names() | db.index_names()
    db.executescript(load_schema_sql())
    created = (db.table_names() | db.index_names()) - before
    if created:
        logger.info("Created schema objects in %s: %s", db.db_path, sorted(created))
    else:
        logger.debug("Schema already complete in %s", db.db_path)
    return created


def missing_schema_objects(db: MaintenanceDatabase) -> set[str]:
    """Canonical tables and indexes absent from the file."""
    return (CANONICAL_TABLES - db.table_names()) | (CANONICAL_INDEXES - db.index_names())
