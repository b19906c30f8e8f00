"""
run_maintenance.py - Bounded-growth maintenance of the event store.

A run walks the states::

    Idle -> Retaining -> Compacting -> SizeCheck -> Idle
                                                 -> Rotating -> Reinitializing -> Idle

1. **Retaining:** delete old events, truncate large old payloads, expire shares.
2. **Compacting:** VACUUM, REINDEX, ANALYZE and a WAL checkpoint.
3. **SizeCheck:** the handle is released and the file size compared with the
   rotation threshold.
4. **Rotating / Reinitializing:** an oversized file is renamed into the backup
   directory and a fresh file with the canonical schema takes its place.

A failure in any state is logged with the step name and ends the run in
``Idle``. Work committed by earlier states is kept; there is no rollback across
states and no retry, since every step is safe to repeat on the next run.
:func:`perform_maintenance` never raises; the returned
:class:`MaintenanceReport` tells success, partial success and failure apart.

The data file is assumed to be used by this run alone. The command line entry
point holds an advisory lock on ``<db>.lock`` so two scheduled runs never
overlap; callers of :func:`perform_maintenance` provide their own exclusion.
"""
import argparse
import fcntl
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Sequence

from event_log_maintenance.data_models import (
    DatabaseStats,
    MaintenanceReport,
    MaintenanceRunState,
    MaintenanceState,
    RunOutcome,
)
from event_log_maintenance.logger import configure_logging, get_logger
from event_log_maintenance.maintenance.backup_rotation import rotate_if_oversized
from event_log_maintenance.maintenance.compaction import format_megabytes, reclaim
from event_log_maintenance.maintenance.config_interface import MaintenanceConfig, load_config
from event_log_maintenance.maintenance.database_interface import (
    MaintenanceDatabase,
    MaintenanceError,
    RotationError,
    RunLockError,
    StorageAccessError,
)
from event_log_maintenance.maintenance.retention_policy import apply_retention
from event_log_maintenance.maintenance.schema_initializer import ensure_schema, missing_schema_objects
from event_log_maintenance.maintenance.stats_reporter import compute_stats, state_file_path

logger = get_logger(__name__)

LOCK_FILE_SUFFIX = ".lock"


def _write_run_state(config: MaintenanceConfig, report: MaintenanceReport) -> None:
    """Record the finished run next to the data file for the stats snapshot."""
    if report.finished_at is None:
        return
    state = MaintenanceRunState(
        last_cleanup=report.finished_at,
        outcome=report.outcome,
        backup_path=report.backup_path,
    )
    path = state_file_path(config.db_path)
    try:
        path.write_text(state.model_dump_json(), encoding="utf-8")
    except OSError as e:
        logger.warning("Could not write maintenance state file %s: %s", path, e)


def _retain_and_compact(
    db: MaintenanceDatabase,
    config: MaintenanceConfig,
    now: datetime,
    report: MaintenanceReport,
) -> bool:
    """
    Run the Retaining and Compacting states on an open handle.

    :return: True if both succeeded and the run may proceed to SizeCheck.
    """
    report.enter(MaintenanceState.RETAINING)
    try:
        retention = apply_retention(db, now, config)
    except Exception as e:
        logger.exception("[retention] failed on %s", config.db_path)
        report.fail("retention", e)
        return False
    report.deleted_events = retention.deleted_events
    report.truncated_payloads = retention.truncated_payloads
    report.expired_shares = retention.expired_shares
    report.succeed(
        "retention",
        deleted_events=retention.deleted_events,
        truncated_payloads=retention.truncated_payloads,
        expired_shares=retention.expired_shares,
    )

    report.enter(MaintenanceState.COMPACTING)
    try:
        compaction = reclaim(db)
    except Exception as e:
        logger.exception("[compaction] failed on %s", config.db_path)
        report.fail("compaction", e)
        return False
    report.size_before = compaction.bytes_before
    report.succeed(
        "compaction",
        bytes_before=compaction.bytes_before,
        bytes_after=compaction.bytes_after,
    )
    return True


def _rotate_and_reinitialize(
    config: MaintenanceConfig,
    now: datetime,
    report: MaintenanceReport,
) -> None:
    """Run SizeCheck and, when the file is oversized, Rotating and Reinitializing."""
    report.enter(MaintenanceState.SIZE_CHECK)
    report.size_after = config.db_path.stat().st_size
    logger.info("Final DB size: %s", format_megabytes(report.size_after))
    if report.size_after <= config.rotation_threshold_bytes:
        report.skip("rotation", size_bytes=report.size_after)
        return

    report.enter(MaintenanceState.ROTATING)
    try:
        rotation = rotate_if_oversized(
            config.db_path, config.resolved_backup_dir, config.rotation_threshold_bytes, now
        )
    except (RotationError, OSError) as e:
        logger.error("[rotation] failed, live database left in place: %s", e)
        report.fail("rotation", e)
        return
    if not rotation.rotated:
        report.skip("rotation", size_bytes=rotation.size_bytes)
        return
    report.backup_path = str(rotation.backup_path)
    report.succeed(
        "rotation",
        rotated=rotation.rotated,
        size_bytes=rotation.size_bytes,
        backup_path=report.backup_path,
    )

    report.enter(MaintenanceState.REINITIALIZING)
    try:
        with MaintenanceDatabase(config.db_path) as fresh:
            created = ensure_schema(fresh)
            missing = missing_schema_objects(fresh)
            if missing:
                raise StorageAccessError(f"Schema incomplete after reinitialization: {sorted(missing)}")
        report.size_after = config.db_path.stat().st_size
    except Exception as e:
        logger.exception("[reinitialize] failed on %s", config.db_path)
        report.fail("reinitialize", e)
        return
    report.succeed("reinitialize", created=sorted(created))
    logger.info("Created fresh database with complete schema")


def perform_maintenance(
    config: MaintenanceConfig | None = None,
    now: datetime | None = None,
) -> MaintenanceReport:
    """
    Run retention, compaction and, if needed, rotation on the configured data file.

    Never raises: every failure is logged and recorded in the report.

    :param config: Paths and thresholds; defaults to :class:`MaintenanceConfig()`.
    :param now: Reference time for every age cutoff; defaults to the current UTC time.
    :return: Per-step outcomes of the run.
    """
    config = config or MaintenanceConfig()
    now = now or datetime.now(timezone.utc)
    report = MaintenanceReport(started_at=datetime.now(timezone.utc), db_path=str(config.db_path))
    logger.info("Starting database cleanup of %s...", config.db_path)

    try:
        proceed = False
        try:
            with MaintenanceDatabase(config.db_path) as db:
                if db.is_fresh_db():
                    logger.info("No tables in %s; initializing schema", config.db_path)
                    ensure_schema(db)
                logger.info("Initial DB size: %s", format_megabytes(db.file_size()))
                report.succeed("open")
                proceed = _retain_and_compact(db, config, now, report)
        except StorageAccessError as e:
            logger.error("[open] cannot access %s: %s", config.db_path, e)
            report.fail("open", e)
        except Exception as e:
            # Failures while closing the handle or outside a step.
            logger.exception("[open] unexpected error on %s", config.db_path)
            report.fail("open", e)

        if proceed:
            _rotate_and_reinitialize(config, now, report)
    except Exception as e:
        logger.exception("Unexpected error during maintenance of %s", config.db_path)
        step = "rotation" if report.state == MaintenanceState.SIZE_CHECK else "reinitialize"
        report.fail(step, e)
    finally:
        report.enter(MaintenanceState.IDLE)
        report.finished_at = datetime.now(timezone.utc)

    _write_run_state(config, report)
    if report.outcome == RunOutcome.SUCCESS:
        logger.info("Database cleanup completed successfully")
    else:
        logger.warning(
            "Database cleanup finished with outcome %s: %s",
            report.outcome.value,
            {name: step.error for name, step in report.steps.items() if step.error},
        )
    return report


def get_stats(
    config: MaintenanceConfig | None = None,
    now: datetime | None = None,
) -> DatabaseStats:
    """Read-only statistics snapshot of the configured data file."""
    config = config or MaintenanceConfig()
    return compute_stats(
        config.db_path,
        now=now,
        window=config.stats_window,
        size_threshold=config.truncation_size_threshold,
    )


@contextmanager
def run_lock(db_path: Path) -> Iterator[Path]:
    """
    Hold an exclusive advisory lock on ``<db_path>.lock`` for the duration of a run.

    :raises RunLockError: If another process holds the lock.
    """
    lock_path = Path(str(db_path) + LOCK_FILE_SUFFIX)
    with open(lock_path, "a+", encoding="utf-8") as fh:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise RunLockError(lock_path) from e
        try:
            yield lock_path
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments and return an argparse.Namespace."""
    parser = argparse.ArgumentParser(
        description="Apply retention, compaction and backup rotation to the event store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file with paths and thresholds (see config/maintenance.yaml)",
    )
    parser.add_argument("--db", type=Path, default=None, help="Path to the event store (overrides config)")
    parser.add_argument(
        "--backup-dir",
        type=Path,
        default=None,
        help="Directory for rotated backups (default: backups/ beside the database)",
    )
    parser.add_argument(
        "--atomic-retention",
        action="store_true",
        help="Run the three retention statements in one transaction",
    )
    parser.add_argument("--stats", action="store_true", help="Print statistics as JSON and exit")
    parser.add_argument(
        "--fail-on-error",
        action="store_true",
        help="Exit with status 1 unless every step succeeded",
    )
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> MaintenanceConfig:
    """Merge the optional YAML file with command-line overrides."""
    config = load_config(args.config) if args.config is not None else MaintenanceConfig()
    overrides: dict = {}
    if args.db is not None:
        overrides["db_path"] = args.db
    if args.backup_dir is not None:
        overrides["backup_dir"] = args.backup_dir
    if args.atomic_retention:
        overrides["atomic_retention"] = True
    if not overrides:
        return config
    return MaintenanceConfig.model_validate({**config.model_dump(), **overrides})


def main(argv: Sequence[str] | None = None) -> int:
    """
    Set entry point.

    :return: 0, unless ``--fail-on-error`` is given and the run was not a full
        success (or the configuration is invalid, or another run holds the lock).
    """
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else None)

    try:
        config = build_config(args)
    except (FileNotFoundError, ValueError):
        logger.exception("Invalid configuration")
        return 1 if args.fail_on_error else 0

    if args.stats:
        sys.stdout.write(get_stats(config).model_dump_json(indent=2) + "\n")
        return 0

    try:
        with run_lock(config.db_path):
            report = perform_maintenance(config)
    except MaintenanceError as e:
        logger.error("Maintenance skipped: %s", e)
        return 1 if args.fail_on_error else 0
    except OSError as e:
        logger.error("Cannot acquire maintenance lock for %s: %s", config.db_path, e)
        return 1 if args.fail_on_error else 0

    if args.fail_on_error and report.outcome != RunOutcome.SUCCESS:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
