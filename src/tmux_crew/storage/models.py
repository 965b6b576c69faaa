"""Records shared between the leader and worker processes.

Records are stored as JSON with camelCase keys and exposed to Python with
snake_case attributes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

HeartbeatStatus = Literal["idle", "working", "quarantined"]
TaskStatus = Literal["pending", "in_progress", "completed"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CrewRecord(BaseModel):
    """Base for on-disk records."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HeartbeatRecord(CrewRecord):
    """Liveness record a worker overwrites on every poll."""

    worker_name: str
    team_name: str
    agent_type: str | None = None
    pid: int | None = None
    last_poll_at: datetime
    status: HeartbeatStatus = "idle"
    consecutive_errors: int = Field(default=0, ge=0)
    current_task_id: str | None = None


class TaskRecord(CrewRecord):
    """A unit of work that a single worker may claim."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    subject: str = ""
    description: str = ""
    owner: str | None = None
    status: TaskStatus = "pending"
    blocked_by: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    claim_pid: int | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def permanently_failed(self) -> bool:
        return bool(self.metadata.get("permanentlyFailed"))


class TaskFailure(CrewRecord):
    """Sidecar tracking how often a task has failed."""

    task_id: str
    last_error: str
    retry_count: int = Field(default=0, ge=0)
    last_failed_at: datetime


class MailboxMessage(CrewRecord):
    """A message a worker sends to the leader (or the reverse)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
    session_key: str | None = None

    @field_validator("type")
    @classmethod
    def _require_type(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Message type must not be empty")
        return normalized


class ProtocolMessage(CrewRecord):
    """A message stored as its own file in the recipient's mailbox."""

    message_id: str
    from_worker: str = Field(alias="from")
    to_worker: str = Field(alias="to")
    type: str = "message"
    body: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = None


class AuditEvent(CrewRecord):
    """An immutable line in the team audit log."""

    timestamp: datetime = Field(default_factory=utc_now)
    event_type: str
    team_name: str
    worker_name: str
    task_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class WorkerMember(CrewRecord):
    """Registry entry for a spawned worker."""

    name: str
    team_name: str
    agent_type: str
    model: str | None = None
    session_name: str
    pane_id: str | None = None
    cwd: str | None = None
    joined_at: datetime = Field(default_factory=utc_now)


class Cursor(CrewRecord):
    """Byte offset of the last complete line a reader consumed."""

    bytes_read: int = Field(default=0, ge=0)


class ShutdownSignal(CrewRecord):
    """Request for a worker to stop (or drain) gracefully."""

    request_id: str
    reason: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


__all__ = [
    "AuditEvent",
    "CrewRecord",
    "Cursor",
    "HeartbeatRecord",
    "HeartbeatStatus",
    "MailboxMessage",
    "ProtocolMessage",
    "ShutdownSignal",
    "TaskFailure",
    "TaskRecord",
    "TaskStatus",
    "WorkerMember",
    "utc_now",
]
