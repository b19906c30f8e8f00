"""Shared fixtures for the event log maintenance tests."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

import pytest

from event_log_maintenance.maintenance.config_interface import MaintenanceConfig
from event_log_maintenance.maintenance.database_interface import (
    EventRow,
    MaintenanceDatabase,
    ThemeRow,
    ThemeShareRow,
    to_epoch_ms,
)
from event_log_maintenance.maintenance.schema_initializer import ensure_schema

NOW = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


def make_payload(size: int = 0, **fields) -> str:
    """JSON payload padded with a ``data`` field to at least *size* bytes."""
    body = {
        "source_app": fields.pop("source_app", "demo-app"),
        "session_id": fields.pop("session_id", "session-1"),
        "hook_event_name": fields.pop("hook_event_name", "PreToolUse"),
        **fields,
    }
    text = json.dumps(body)
    if len(text) < size:
        body["data"] = "x" * (size - len(text))
        text = json.dumps(body)
    return text


def make_event(age: timedelta, payload_size: int = 0, now: datetime = NOW, **fields) -> EventRow:
    """Event row stamped *age* before *now*."""
    return EventRow(
        source_app=fields.pop("source_app", "demo-app"),
        session_id=fields.pop("session_id", "session-1"),
        hook_event_type=fields.pop("hook_event_type", "PreToolUse"),
        payload=fields.pop("payload", None) or make_payload(payload_size),
        timestamp=to_epoch_ms(now - age),
        **fields,
    )


def make_theme(theme_id: str = "theme-1") -> ThemeRow:
    return ThemeRow(
        id=theme_id,
        name=f"{theme_id}-name",
        displayName=theme_id.title(),
        colors={"primary": "#112233"},
        createdAt=to_epoch_ms(NOW - timedelta(days=30)),
        updatedAt=to_epoch_ms(NOW - timedelta(days=30)),
    )


def make_share(token: str, expires_in: timedelta | None, theme_id: str = "theme-1", access_count: int = 0) -> ThemeShareRow:
    return ThemeShareRow(
        id=f"share-{token}",
        themeId=theme_id,
        shareToken=token,
        expiresAt=None if expires_in is None else to_epoch_ms(NOW + expires_in),
        allowedUsers=["alice", "bob"],
        createdAt=to_epoch_ms(NOW - timedelta(days=60)),
        accessCount=access_count,
    )


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Path of an initialized, empty event store."""
    path = tmp_path / "events.db"
    with MaintenanceDatabase(path) as db:
        ensure_schema(db)
    return path


@pytest.fixture
def store(db_path: Path) -> Iterator[MaintenanceDatabase]:
    """Open handle on the initialized event store."""
    with MaintenanceDatabase(db_path) as db:
        yield db


@pytest.fixture
def config(db_path: Path) -> MaintenanceConfig:
    return MaintenanceConfig(db_path=db_path)


def seed(db_path: Path, events=(), themes=(), shares=()) -> list[int]:
    """Insert rows and close the handle so the file is left unopened."""
    with MaintenanceDatabase(db_path) as db:
        for theme in themes:
            db.insert_theme(theme)
        for share in shares:
            db.insert_theme_share(share)
        return db.insert_events(list(events))


def read_events(db_path: Path) -> list[EventRow]:
    with MaintenanceDatabase(db_path) as db:
        return db.list_events()
