"""
Compaction of the live data file.

``VACUUM`` rewrites the whole file and needs exclusive access to it: no other
connection may read or write the file while it runs.
"""
import time
from dataclasses import dataclass

from event_log_maintenance.logger import get_logger
from event_log_maintenance.maintenance.database_interface import MaintenanceDatabase, StorageAccessError

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompactionResult:
    """File size around one compaction."""

    bytes_before: int
    bytes_after: int
    elapsed_seconds: float

    @property
    def bytes_reclaimed(self) -> int:  # noqa: D102
        return self.bytes_before - self.bytes_after


def format_megabytes(n: int) -> str:
    """Format a byte count as megabytes with two decimals."""
    return f"{n / 1024 / 1024:.2f} MB"


def checkpoint_wal(db: MaintenanceDatabase) -> None:
    """Fold the write-ahead log back into the main file and truncate it."""
    row = db.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchone()
    if row is not None and row[0] != 0:
        logger.warning("WAL checkpoint of %s was blocked by another connection", db.db_path)


def reclaim(db: MaintenanceDatabase) -> CompactionResult:
    """
    Rewrite the file to reclaim free pages, rebuild indexes and refresh planner statistics.

    :raises StorageAccessError: If called inside an open transaction, where
        ``VACUUM`` cannot run.
    """
    if db.in_transaction:
        raise StorageAccessError("VACUUM cannot run inside a transaction")

    start = time.monotonic()
    bytes_before = db.file_size()

    logger.info("Running VACUUM to reclaim space...")
    db.execute("VACUUM")

    logger.info("Reindexing...")
    db.execute("REINDEX")

    db.execute("ANALYZE")
    checkpoint_wal(db)

    result = CompactionResult(
        bytes_before=bytes_before,
        bytes_after=db.file_size(),
        elapsed_seconds=time.monotonic() - start,
    )
    logger.info(
        "Size: %s -> %s (saved %s) in %.1fs",
        format_megabytes(result.bytes_before),
        format_megabytes(result.bytes_after),
        format_megabytes(result.bytes_reclaimed),
        result.elapsed_seconds,
    )
    return result
