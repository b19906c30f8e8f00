"""Tests for compaction."""

from datetime import timedelta

import pytest
from conftest import make_event, seed

from event_log_maintenance.maintenance.compaction import format_megabytes, reclaim
from event_log_maintenance.maintenance.database_interface import MaintenanceDatabase, StorageAccessError


def test_reclaim_shrinks_file_after_deletions(db_path):
    """Space freed by deleted rows is returned to the filesystem."""
    seed(db_path, events=[make_event(timedelta(days=9), payload_size=20_000) for _ in range(150)])
    seed(db_path, events=[make_event(timedelta(hours=1)) for _ in range(3)])
    size_full = db_path.stat().st_size

    with MaintenanceDatabase(db_path) as db:
        db.execute("DELETE FROM events WHERE LENGTH(payload) > 10000")
        result = reclaim(db)
        assert db.count_rows("events") == 3

    assert result.bytes_after < size_full
    assert db_path.stat().st_size < size_full
    assert result.bytes_reclaimed == result.bytes_before - result.bytes_after


def test_reclaim_on_empty_store(store):
    result = reclaim(store)

    assert result.bytes_after > 0
    assert result.elapsed_seconds >= 0


def test_reclaim_refreshes_planner_statistics(store):
    store.insert_events([make_event(timedelta(hours=i)) for i in range(5)])

    reclaim(store)

    assert store.scalar("SELECT COUNT(*) FROM sqlite_stat1 WHERE tbl = 'events'") > 0


def test_reclaim_refuses_to_run_inside_transaction(store):
    with store.transaction():
        with pytest.raises(StorageAccessError):
            reclaim(store)


@pytest.mark.parametrize(
    ("n", "expected"),
    [(0, "0.00 MB"), (1024 * 1024, "1.00 MB"), (52_428_800, "50.00 MB"), (1_572_864, "1.50 MB")],
)
def test_format_megabytes(n, expected):
    assert format_megabytes(n) == expected
