"""File-backed state shared between the leader and its workers."""

from .audit import AuditLog
from .files import TeamPaths, atomic_write_json, read_json
from .heartbeat import HeartbeatStore
from .mailbox import LEAD_MAILBOX, Mailbox, ProtocolMailbox
from .models import (
    AuditEvent,
    Cursor,
    HeartbeatRecord,
    MailboxMessage,
    ProtocolMessage,
    ShutdownSignal,
    TaskFailure,
    TaskRecord,
    WorkerMember,
)
from .registry import WorkerRegistry
from .tasks import (
    TaskClaimError,
    TaskError,
    TaskNotFoundError,
    TaskQueue,
    TaskStateError,
)

__all__ = [
    "AuditEvent",
    "AuditLog",
    "Cursor",
    "HeartbeatRecord",
    "HeartbeatStore",
    "LEAD_MAILBOX",
    "Mailbox",
    "MailboxMessage",
    "ProtocolMailbox",
    "ProtocolMessage",
    "ShutdownSignal",
    "TaskClaimError",
    "TaskError",
    "TaskFailure",
    "TaskNotFoundError",
    "TaskQueue",
    "TaskRecord",
    "TaskStateError",
    "TeamPaths",
    "WorkerMember",
    "WorkerRegistry",
    "atomic_write_json",
    "read_json",
]
