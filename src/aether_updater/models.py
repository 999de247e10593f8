"""Data models for update attempts, log entries and audit records."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def short_sha(commit: str | None) -> str:
    """Abbreviate a commit hash for operator-facing messages."""
    return (commit or "")[:7]


class LogKind(StrEnum):
    """Kind of an operator-facing log entry."""

    INFO = "info"
    WARNING = "warning"
    SUCCESS = "success"
    ERROR = "error"


class AuditStatus(StrEnum):
    """Persisted status of an update attempt."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class PipelineState(StrEnum):
    """State of the orchestrator's state machine."""

    IDLE = "idle"
    VALIDATING = "validating"
    PULLING = "pulling"
    REBUILDING = "rebuilding"
    MIGRATING = "migrating"
    VERIFYING_HEALTH = "verifying_health"
    COMPLETED = "completed"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


class UpdateOutcome(StrEnum):
    """How a ``perform_update`` call ended."""

    COMPLETED = "completed"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ALREADY_IN_PROGRESS = "already_in_progress"
    DISABLED = "disabled"


# Allowed status edges; re-applying the current status is always allowed.
STATUS_TRANSITIONS: dict[AuditStatus, frozenset[AuditStatus]] = {
    AuditStatus.PENDING: frozenset({AuditStatus.IN_PROGRESS, AuditStatus.FAILED}),
    AuditStatus.IN_PROGRESS: frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED}),
    AuditStatus.FAILED: frozenset({AuditStatus.ROLLED_BACK}),
    AuditStatus.COMPLETED: frozenset(),
    AuditStatus.ROLLED_BACK: frozenset(),
}


def is_allowed_transition(current: AuditStatus, new: AuditStatus) -> bool:
    """Return True if an audit record may move from *current* to *new*."""
    return new == current or new in STATUS_TRANSITIONS[current]


@dataclass(frozen=True)
class LogEntry:
    """A single timestamped, typed log line of an update attempt."""

    kind: LogKind
    message: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        timestamp = data.get("timestamp")
        return cls(
            kind=LogKind(data.get("kind", "info")),
            message=str(data.get("message", "")),
            timestamp=datetime.fromisoformat(timestamp)
            if isinstance(timestamp, str)
            else (timestamp or utcnow()),
        )


@dataclass
class AuditRecord:
    """Durable record of one update attempt."""

    id: int
    initiated_by: str
    status: AuditStatus = AuditStatus.PENDING
    previous_commit: str | None = None
    new_commit: str | None = None
    logs: list[LogEntry] = field(default_factory=list)
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    manual_intervention_required: bool = False

    @property
    def is_finalized(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "initiated_by": self.initiated_by,
            "status": self.status.value,
            "previous_commit": self.previous_commit,
            "new_commit": self.new_commit,
            "logs": [entry.to_dict() for entry in self.logs],
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "manual_intervention_required": self.manual_intervention_required,
        }


@dataclass
class UpdateAttempt:
    """In-memory state of the attempt currently owned by the orchestrator."""

    previous_commit: str | None = None
    new_commit: str | None = None
    audit_id: int | None = None
    stashed: bool = False
    failure_recorded: bool = False
    started_at: datetime = field(default_factory=utcnow)
    started_monotonic: float = field(default_factory=time.monotonic)


@dataclass
class UpdateResult:
    """Result of a ``perform_update`` call."""

    success: bool
    outcome: UpdateOutcome
    logs: list[LogEntry] = field(default_factory=list)
    previous_commit: str | None = None
    new_commit: str | None = None
    error: str | None = None
    message: str | None = None
    audit_id: int | None = None
    manual_intervention_required: bool = False
    inconsistent_state: bool = False
    steps_completed: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: utcnow().isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0

    @classmethod
    def rejected(cls, outcome: UpdateOutcome, error: str) -> UpdateResult:
        """Build the result for a call refused before any work started."""
        now = utcnow().isoformat()
        return cls(success=False, outcome=outcome, error=error, started_at=now, completed_at=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "logs": [entry.to_dict() for entry in self.logs],
            "previous_commit": self.previous_commit,
            "new_commit": self.new_commit,
            "error": self.error,
            "message": self.message,
            "audit_id": self.audit_id,
            "manual_intervention_required": self.manual_intervention_required,
            "inconsistent_state": self.inconsistent_state,
            "steps_completed": self.steps_completed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }
