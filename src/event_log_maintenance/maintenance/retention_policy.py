"""
Retention policy for the event store.

Three irreversible sub-steps, each a single statement:

1. **Age retention** deletes events older than the retention window.
2. **Payload truncation** replaces oversized payloads of events past a minimum
   age with a small marker object. Recent payloads are never rewritten, and a
   row already carrying a marker is never matched again, so re-running is a
   no-op.
3. **Share expiry** deletes theme shares whose expiry has passed. Shares with
   a NULL expiry never expire.

Zero matches is a normal outcome for every step.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from event_log_maintenance.logger import get_logger
from event_log_maintenance.maintenance.config_interface import (
    DEFAULT_RETENTION_DAYS,
    DEFAULT_TRUNCATION_MIN_AGE_HOURS,
    DEFAULT_TRUNCATION_SIZE_THRESHOLD,
    MaintenanceConfig,
)
from event_log_maintenance.maintenance.database_interface import MaintenanceDatabase, to_epoch_ms

logger = get_logger(__name__)

DEFAULT_MAX_AGE = timedelta(days=DEFAULT_RETENTION_DAYS)
DEFAULT_MIN_TRUNCATION_AGE = timedelta(hours=DEFAULT_TRUNCATION_MIN_AGE_HOURS)

# Byte length, not character count, of the stored payload text.
_PAYLOAD_BYTES = "LENGTH(CAST(payload AS BLOB))"


def _preserved_field(json_key: str, fallback_column: str) -> str:
    """Payload field if the payload is JSON and has it, else the row column."""
    return (
        f"CASE WHEN json_valid(payload) "
        f"THEN COALESCE(json_extract(payload, '$.{json_key}'), {fallback_column}) "
        f"ELSE {fallback_column} END"
    )


MARKER_KEYS = ("truncated", "original_size", "source_app", "session_id", "hook_event_name")
_MARKER_KEY_LIST = ", ".join(f"'{key}'" for key in MARKER_KEYS)

# A payload is a marker only if its key set is exactly MARKER_KEYS, truncated is
# true and original_size is an integer. Ingested payloads that merely carry a
# "truncated" key are still truncated.
_IS_MARKER = f"""(
    json_type(payload) = 'object'
    AND json_extract(payload, '$.truncated') IS 1
    AND json_type(payload, '$.original_size') = 'integer'
    AND (SELECT COUNT(*) FROM json_each(payload)) = {len(MARKER_KEYS)}
    AND (SELECT COUNT(*) FROM json_each(payload)
         WHERE key IN ({_MARKER_KEY_LIST})) = {len(MARKER_KEYS)}
)"""

TRUNCATE_SQL = f"""
    UPDATE events
    SET payload = json_object(
        'truncated', json('true'),
        'original_size', {_PAYLOAD_BYTES},
        'source_app', {_preserved_field("source_app", "source_app")},
        'session_id', {_preserved_field("session_id", "session_id")},
        'hook_event_name', {_preserved_field("hook_event_name", "hook_event_type")}
    )
    WHERE {_PAYLOAD_BYTES} > ?
      AND timestamp < ?
      AND CASE WHEN json_valid(payload)
               THEN NOT {_IS_MARKER}
               ELSE 1 END
"""


@dataclass(frozen=True)
class RetentionResult:
    """Counts of rows affected by one retention pass."""

    deleted_events: int
    truncated_payloads: int
    expired_shares: int


def apply_age_retention(
    db: MaintenanceDatabase,
    now: datetime,
    max_age: timedelta = DEFAULT_MAX_AGE,
) -> int:
    """
    Delete every event with ``timestamp < now - max_age``.

    :return: Number of events removed.
    """
    cutoff = to_epoch_ms(now - max_age)
    cursor = db.execute("DELETE FROM events WHERE timestamp < ?", (cutoff,))
    logger.info("Deleted %d events older than %s", cursor.rowcount, max_age)
    return cursor.rowcount


def truncate_large_payloads(
    db: MaintenanceDatabase,
    now: datetime,
    min_age: timedelta = DEFAULT_MIN_TRUNCATION_AGE,
    size_threshold: int = DEFAULT_TRUNCATION_SIZE_THRESHOLD,
) -> int:
    """
    Replace payloads larger than *size_threshold* bytes on events older than *min_age*.

    The marker keeps ``source_app``, ``session_id`` and ``hook_event_name``
    from the payload (falling back to the row's own columns when the payload
    is not JSON or lacks them) plus the ``original_size`` in bytes.

    :return: Number of payloads truncated.
    """
    cutoff = to_epoch_ms(now - min_age)
    cursor = db.execute(TRUNCATE_SQL, (size_threshold, cutoff))
    logger.info(
        "Truncated %d payloads larger than %d bytes and older than %s",
        cursor.rowcount,
        size_threshold,
        min_age,
    )
    return cursor.rowcount


def expire_theme_shares(db: MaintenanceDatabase, now: datetime) -> int:
    """
    Delete theme shares whose non-NULL ``expiresAt`` lies before *now*.

    :return: Number of shares removed.
    """
    cursor = db.execute(
        "DELETE FROM theme_shares WHERE expiresAt IS NOT NULL AND expiresAt < ?",
        (to_epoch_ms(now),),
    )
    logger.info("Deleted %d expired theme shares", cursor.rowcount)
    return cursor.rowcount


def apply_retention(
    db: MaintenanceDatabase,
    now: datetime,
    config: MaintenanceConfig,
) -> RetentionResult:
    """
    Run age retention, payload truncation and share expiry in that order.

    With ``config.atomic_retention`` the three statements share one
    transaction and a failure in any of them rolls back all three; otherwise
    each commits on its own.
    """
    def _run() -> RetentionResult:
        return RetentionResult(
            deleted_events=apply_age_retention(db, now, config.retention_max_age),
            truncated_payloads=truncate_large_payloads(
                db, now, config.truncation_min_age, config.truncation_size_threshold
            ),
            expired_shares=expire_theme_shares(db, now),
        )

    if config.atomic_retention:
        with db.transaction():
            return _run()
    return _run()
