"""
Backup rotation of an oversized data file.

When compaction leaves the file above the size threshold, the live file is
moved into the backup directory with a single ``os.rename`` and the caller
initializes a fresh, empty file in its place.

**Atomicity:** the backup is never a partial copy. There is no copy+delete
fallback; a rename that the filesystem cannot perform atomically (for example
across volumes, ``EXDEV``) fails the rotation and leaves the live file where it
was.

**WAL handling:** the file must be closed by every connection before
rotation. Its write-ahead log is checkpointed and the file is switched to
``DELETE`` journaling first, so the renamed file is self-contained. A leftover
non-empty ``-wal`` aborts the rotation instead of being discarded. When the
rotation fails after the switch, the live file goes back to its previous
journal mode.

Backup names embed the epoch in milliseconds plus a random suffix,
``events_1760702400000_3f9a1c2e.db``: they sort chronologically, are
independent of locale and time zone, and cannot collide within a directory.
"""
import errno
import os
import re
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from event_log_maintenance.logger import get_logger
from event_log_maintenance.maintenance.compaction import format_megabytes
from event_log_maintenance.maintenance.config_interface import DEFAULT_ROTATION_THRESHOLD_BYTES
from event_log_maintenance.maintenance.database_interface import RotationError, to_epoch_ms

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]+")
_AUX_SUFFIXES = ("-wal", "-shm")


@dataclass(frozen=True)
class RotationResult:
    """Outcome of a size check, and of the rotation when one happened."""

    rotated: bool
    size_bytes: int
    threshold_bytes: int
    backup_path: Path | None = None


def normalize_filename_component(value: str) -> str:
    """Replace filesystem-unsafe characters with ``-``."""
    normalized = _UNSAFE_FILENAME_CHARS.sub("-", value).strip("-")
    return normalized or "events"


def backup_filename(db_path: Path, now: datetime) -> str:
    """
    Derive the backup file name for *db_path* rotated at *now*.

    :return: ``<stem>_<13-digit epoch ms>_<8 hex chars><suffix>``
    """
    stem = normalize_filename_component(db_path.stem)
    suffix = db_path.suffix if re.fullmatch(r"\.[A-Za-z0-9]+", db_path.suffix) else ".db"
    return f"{stem}_{to_epoch_ms(now):013d}_{secrets.token_hex(4)}{suffix}"


def _checkpoint_and_consolidate(db_path: Path) -> str:
    """
    Checkpoint WAL and switch to DELETE journal mode for portability.

    :return: Journal mode the file was in before the switch.
    """
    conn = sqlite3.connect(str(db_path))
    try:
        previous_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.execute("PRAGMA journal_mode = DELETE")
        conn.commit()
        return previous_mode
    finally:
        conn.close()


def _restore_journal_mode(db_path: Path, mode: str) -> None:
    """Put a file that stayed live after a failed rotation back in *mode*."""
    if mode.lower() == "delete":
        return
    try:
        conn = sqlite3.connect(str(db_path))
        try:
            conn.execute(f"PRAGMA journal_mode = {mode}")
        finally:
            conn.close()
    except sqlite3.Error:
        logger.exception("Cannot restore journal_mode=%s on %s", mode, db_path)


def _remove_empty_aux_files(db_path: Path) -> None:
    for suffix in _AUX_SUFFIXES:
        aux = Path(str(db_path) + suffix)
        if not aux.exists():
            continue
        if suffix == "-wal" and aux.stat().st_size > 0:
            raise RotationError(f"Refusing to rotate {db_path}: non-empty WAL file {aux}")
        aux.unlink()


def _ensure_backup_dir(backup_dir: Path) -> None:
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise RotationError(f"Cannot create backup directory {backup_dir}: {e}") from e
    if not backup_dir.is_dir():
        raise RotationError(f"Backup path {backup_dir} is not a directory")


def _atomic_rename(source: Path, target: Path) -> None:
    if target.exists():
        raise RotationError(f"Backup target already exists: {target}")
    try:
        os.rename(source, target)
    except OSError as e:
        if e.errno == errno.EXDEV:
            raise RotationError(
                f"Cannot rotate {source} to {target}: backup directory is on another "
                "volume and the rename would not be atomic"
            ) from e
        raise RotationError(f"Cannot rename {source} to {target}: {e}") from e


def rotate_if_oversized(
    db_path: Path,
    backup_dir: Path,
    threshold_bytes: int = DEFAULT_ROTATION_THRESHOLD_BYTES,
    now: datetime | None = None,
) -> RotationResult:
    """
    Move *db_path* into *backup_dir* when it is larger than *threshold_bytes*.

    The file must not be open anywhere. At or below the threshold nothing is
    touched.

    :param db_path: Live data file.
    :param backup_dir: Directory for backups; created if absent.
    :param threshold_bytes: Rotate only when the file is strictly larger.
    :param now: Rotation time used in the backup name.
    :return: What happened.
    :raises RotationError: If the directory cannot be created or the rename
        fails; the live file is then unchanged.
    """
    db_path = Path(db_path)
    backup_dir = Path(backup_dir)
    size = db_path.stat().st_size

    if size <= threshold_bytes:
        logger.info(
            "Database size %s within threshold %s; no rotation",
            format_megabytes(size),
            format_megabytes(threshold_bytes),
        )
        return RotationResult(rotated=False, size_bytes=size, threshold_bytes=threshold_bytes)

    logger.info(
        "Database still large (%s > %s), creating backup...",
        format_megabytes(size),
        format_megabytes(threshold_bytes),
    )

    try:
        previous_mode = _checkpoint_and_consolidate(db_path)
    except sqlite3.Error as e:
        raise RotationError(f"Cannot checkpoint {db_path} before rotation: {e}") from e

    target = backup_dir / backup_filename(db_path, now or datetime.now(timezone.utc))
    try:
        _remove_empty_aux_files(db_path)
        _ensure_backup_dir(backup_dir)
        _atomic_rename(db_path, target)
    except RotationError:
        _restore_journal_mode(db_path, previous_mode)
        raise

    logger.info("Created backup: %s", target)
    return RotationResult(
        rotated=True,
        size_bytes=size,
        threshold_bytes=threshold_bytes,
        backup_path=target,
    )
