"""
Read-only statistics on the event store for monitoring.

The file is opened with ``mode=ro``, so collecting statistics can never create
or modify it. Any failure yields :meth:`DatabaseStats.sentinel` instead of an
exception, so a dashboard always receives a well-formed answer.
"""
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from event_log_maintenance.data_models import STATS_NEVER, DatabaseStats, MaintenanceRunState
from event_log_maintenance.logger import get_logger
from event_log_maintenance.maintenance.compaction import format_megabytes
from event_log_maintenance.maintenance.config_interface import (
    DEFAULT_STATS_WINDOW_DAYS,
    DEFAULT_TRUNCATION_SIZE_THRESHOLD,
)
from event_log_maintenance.maintenance.database_interface import (
    MaintenanceDatabase,
    MaintenanceError,
    StatsError,
    to_epoch_ms,
)

logger = get_logger(__name__)

STATE_FILE_SUFFIX = ".maintenance.json"


def state_file_path(db_path: Path) -> Path:
    """Location of the last-run state file for *db_path*."""
    return Path(str(db_path) + STATE_FILE_SUFFIX)


def read_last_cleanup(db_path: Path) -> str:
    """ISO timestamp of the last maintenance run, or ``"Never"``."""
    path = state_file_path(db_path)
    if not path.is_file():
        return STATS_NEVER
    try:
        state = MaintenanceRunState.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning("Ignoring unreadable maintenance state file %s: %s", path, e)
        return STATS_NEVER
    return state.last_cleanup.isoformat()


def _collect(
    db_path: Path,
    now: datetime,
    window: timedelta,
    size_threshold: int,
) -> DatabaseStats:
    if not db_path.is_file():
        raise StatsError(f"Database file does not exist: {db_path}")

    cutoff = to_epoch_ms(now - window)
    try:
        with MaintenanceDatabase(db_path, read_only=True) as db:
            size = db.file_size()
            total = db.scalar("SELECT COUNT(*) FROM events")
            recent = db.scalar("SELECT COUNT(*) FROM events WHERE timestamp >= ?", (cutoff,))
            old = db.scalar("SELECT COUNT(*) FROM events WHERE timestamp < ?", (cutoff,))
            large = db.scalar(
                "SELECT COUNT(*) FROM events WHERE LENGTH(CAST(payload AS BLOB)) > ?",
                (size_threshold,),
            )
    except MaintenanceError as e:
        raise StatsError(str(e)) from e
    except sqlite3.Error as e:
        raise StatsError(f"Cannot read statistics from {db_path}: {e}") from e

    return DatabaseStats(
        size=size,
        size_formatted=format_megabytes(size),
        total_events=total,
        events_last_7_days=recent,
        old_events=old,
        large_payloads=large,
        last_cleanup=read_last_cleanup(db_path),
    )


def compute_stats(
    db_path: Path,
    now: datetime | None = None,
    window: timedelta = timedelta(days=DEFAULT_STATS_WINDOW_DAYS),
    size_threshold: int = DEFAULT_TRUNCATION_SIZE_THRESHOLD,
) -> DatabaseStats:
    """
    Snapshot of file size and event counts.

    :param db_path: Live data file.
    :param now: Reference time for the age buckets.
    :param window: Age separating recent from old events.
    :param size_threshold: Payload size, in bytes, counted as large.
    :return: The snapshot, or the zeroed sentinel if the file cannot be read.
    """
    try:
        return _collect(Path(db_path), now or datetime.now(timezone.utc), window, size_threshold)
    except StatsError as e:
        logger.error("[Stats] Error getting database stats: %s", e)
        return DatabaseStats.sentinel()
