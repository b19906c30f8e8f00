"""Tests for the read-only statistics snapshot."""

import sqlite3
from datetime import datetime, timedelta, timezone

from conftest import make_event, seed

from event_log_maintenance.data_models import DatabaseStats, MaintenanceRunState, RunOutcome
from event_log_maintenance.maintenance.database_interface import MaintenanceDatabase
from event_log_maintenance.maintenance.schema_initializer import ensure_schema
from event_log_maintenance.maintenance.stats_reporter import compute_stats, read_last_cleanup, state_file_path


def test_counts_by_age_and_payload_size(db_path, now):
    seed(db_path, events=[
        make_event(timedelta(days=8)),
        make_event(timedelta(days=30), payload_size=20_000),
        make_event(timedelta(days=7)),
        make_event(timedelta(days=1), payload_size=12_000),
        make_event(timedelta(minutes=1)),
    ])

    stats = compute_stats(db_path, now=now)

    assert stats.total_events == 5
    assert stats.old_events == 2
    assert stats.events_last_7_days == 3
    assert stats.large_payloads == 2
    assert stats.size == db_path.stat().st_size
    assert stats.size_formatted.endswith(" MB")
    assert stats.last_cleanup == "Never"


def test_stats_do_not_modify_the_file(db_path, now):
    seed(db_path, events=[make_event(timedelta(days=9))])
    before = db_path.read_bytes()

    compute_stats(db_path, now=now)

    assert db_path.read_bytes() == before


def test_missing_file_returns_sentinel_without_creating_it(tmp_path, now):
    path = tmp_path / "absent.db"

    stats = compute_stats(path, now=now)

    assert stats == DatabaseStats.sentinel()
    assert stats.size_formatted == "0 MB"
    assert stats.last_cleanup == "Never"
    assert not path.exists()


def test_corrupt_file_returns_sentinel(tmp_path, now):
    path = tmp_path / "garbage.db"
    path.write_bytes(b"this is not an sqlite database " * 64)

    assert compute_stats(path, now=now) == DatabaseStats.sentinel()


def test_file_without_events_table_returns_sentinel(tmp_path, now):
    path = tmp_path / "other.db"
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE unrelated (x INTEGER)")
    conn.close()

    assert compute_stats(path, now=now) == DatabaseStats.sentinel()


def test_last_cleanup_comes_from_state_file(db_path, now):
    finished = datetime(2026, 10, 16, 3, 0, tzinfo=timezone.utc)
    state_file_path(db_path).write_text(
        MaintenanceRunState(last_cleanup=finished, outcome=RunOutcome.SUCCESS).model_dump_json()
    )

    assert compute_stats(db_path, now=now).last_cleanup == finished.isoformat()


def test_unreadable_state_file_reads_as_never(db_path):
    state_file_path(db_path).write_text("{not json")

    assert read_last_cleanup(db_path) == "Never"


def test_path_with_uri_special_characters(tmp_path, now):
    """Characters that mean something in a file: URI still name the same file."""
    directory = tmp_path / "odd?dir#50%"
    directory.mkdir()
    path = directory / "events.db"
    with MaintenanceDatabase(path) as db:
        ensure_schema(db)
    seed(path, events=[make_event(timedelta(hours=1)), make_event(timedelta(days=9))])

    stats = compute_stats(path, now=now)

    assert stats.total_events == 2
    assert stats.old_events == 1
