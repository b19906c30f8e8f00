from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATS_NEVER = "Never"


class TruncationMarker(BaseModel):
    """
    Payload left behind after an oversized event payload is truncated.

    The marker itself is written in SQL by ``retention_policy.TRUNCATE_SQL``;
    this model reads it back and its field names must match ``MARKER_KEYS``.
    """

    truncated: bool = True
    original_size: int
    source_app: str | None = None
    session_id: str | None = None
    hook_event_name: str | None = None


class DatabaseStats(BaseModel):
    """Read-only snapshot of the event store's volume."""

    size: int = 0 # File size in bytes
    size_formatted: str = "0 MB"
    total_events: int = 0
    events_last_7_days: int = 0
    old_events: int = 0 # Events past the retention window
    large_payloads: int = 0 # Events whose payload exceeds the truncation threshold
    last_cleanup: str = STATS_NEVER # ISO timestamp of the last maintenance run

    @classmethod
    def sentinel(cls) -> "DatabaseStats":
        """Zeroed snapshot returned when the store cannot be read."""
        return cls()


class MaintenanceState(str, Enum):
    """States of a maintenance run."""

    IDLE = "idle"
    RETAINING = "retaining"
    COMPACTING = "compacting"
    SIZE_CHECK = "size_check"
    ROTATING = "rotating"
    REINITIALIZING = "reinitializing"


class StepStatus(str, Enum):  # noqa: D101
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunOutcome(str, Enum):  # noqa: D101
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class StepOutcome(BaseModel):
    """Result of one step of a maintenance run."""

    status: StepStatus = StepStatus.SKIPPED
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


MAINTENANCE_STEPS: tuple[str, ...] = ("open", "retention", "compaction", "rotation", "reinitialize")


class MaintenanceReport(BaseModel):
    """Outcome of :func:`perform_maintenance`, one entry per pipeline step."""

    model_config = ConfigDict(validate_assignment=True)

    started_at: datetime
    finished_at: datetime | None = None
    db_path: str
    steps: dict[str, StepOutcome] = Field(
        default_factory=lambda: {name: StepOutcome() for name in MAINTENANCE_STEPS}
    )
    states: list[MaintenanceState] = Field(default_factory=lambda: [MaintenanceState.IDLE])
    deleted_events: int = 0
    truncated_payloads: int = 0
    expired_shares: int = 0
    size_before: int | None = None
    size_after: int | None = None
    backup_path: str | None = None

    @field_validator("steps")
    @classmethod
    def validate_step_names(cls, v: dict[str, StepOutcome]) -> dict[str, StepOutcome]:
        """Reject step names outside the pipeline."""
        unknown = set(v) - set(MAINTENANCE_STEPS)
        if unknown:
            raise ValueError(f"Unknown maintenance steps: {sorted(unknown)}")
        return v

    @property
    def state(self) -> MaintenanceState:
        """Current (last visited) state."""
        return self.states[-1]

    def enter(self, state: MaintenanceState) -> None:
        """Record a state transition."""
        self.states = [*self.states, state]

    def succeed(self, step: str, **details: Any) -> None:
        """Mark *step* as succeeded."""
        self.steps[step] = StepOutcome(status=StepStatus.SUCCEEDED, details=details)

    def skip(self, step: str, **details: Any) -> None:
        """Mark *step* as not needed."""
        self.steps[step] = StepOutcome(status=StepStatus.SKIPPED, details=details)

    def fail(self, step: str, error: BaseException) -> None:
        """Mark *step* as failed with the underlying cause."""
        self.steps[step] = StepOutcome(
            status=StepStatus.FAILED, error=f"{type(error).__name__}: {error}"
        )

    @property
    def outcome(self) -> RunOutcome:
        """
        Overall result of the run.

        ``failed`` when the store could not be opened, ``partial`` when a later
        step failed, ``success`` otherwise.
        """
        statuses = [outcome.status for outcome in self.steps.values()]
        if StepStatus.FAILED not in statuses:
            return RunOutcome.SUCCESS
        if self.steps["open"].status == StepStatus.FAILED:
            return RunOutcome.FAILED
        return RunOutcome.PARTIAL


class MaintenanceRunState(BaseModel):
    """Contents of the last-run state file written next to the data file."""

    last_cleanup: datetime
    outcome: RunOutcome
    backup_path: str | None = None
