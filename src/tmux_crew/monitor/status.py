"""Point-in-time team status snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from ..storage.heartbeat import DEFAULT_MAX_AGE_MS, HeartbeatStore
from ..storage.mailbox import DEFAULT_PEEK_LIMIT, Mailbox
from ..storage.models import HeartbeatRecord, MailboxMessage, TaskRecord, utc_now
from ..storage.registry import WorkerRegistry
from ..storage.tasks import TaskQueue


@dataclass(slots=True)
class TaskStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    in_progress: int = 0

    @classmethod
    def from_tasks(cls, tasks: list[TaskRecord]) -> "TaskStats":
        failed = sum(1 for task in tasks if task.status == "completed" and task.permanently_failed)
        done = sum(1 for task in tasks if task.status == "completed")
        return cls(
            total=len(tasks),
            completed=done - failed,
            failed=failed,
            pending=sum(1 for task in tasks if task.status == "pending"),
            in_progress=sum(1 for task in tasks if task.status == "in_progress"),
        )


@dataclass(slots=True)
class WorkerStatus:
    worker_name: str
    agent_type: str
    heartbeat: HeartbeatRecord | None
    is_alive: bool
    current_task: TaskRecord | None
    recent_messages: list[MailboxMessage] = field(default_factory=list)
    task_stats: TaskStats = field(default_factory=TaskStats)


@dataclass(slots=True)
class TeamStatus:
    team_name: str
    workers: list[WorkerStatus]
    task_summary: TaskStats
    last_updated: datetime


class TeamStatusAggregator:
    """Combine registry, heartbeats, tasks and mailboxes into one snapshot.

    Reads only: outbox messages are peeked so the leader's cursors never move.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        heartbeats: HeartbeatStore,
        tasks: TaskQueue,
        mailbox: Mailbox,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._heartbeats = heartbeats
        self._tasks = tasks
        self._mailbox = mailbox
        self._clock = clock or utc_now

    def get_team_status(
        self,
        team: str,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        *,
        peek_limit: int = DEFAULT_PEEK_LIMIT,
    ) -> TeamStatus:
        tasks = self._tasks.list_tasks(team)
        workers: list[WorkerStatus] = []
        for member in self._registry.list_workers(team):
            owned = [task for task in tasks if task.owner == member.name]
            current = next((task for task in owned if task.status == "in_progress"), None)
            workers.append(
                WorkerStatus(
                    worker_name=member.name,
                    agent_type=member.agent_type,
                    heartbeat=self._heartbeats.read(team, member.name),
                    is_alive=self._heartbeats.is_alive(team, member.name, max_age_ms),
                    current_task=current,
                    recent_messages=self._mailbox.peek_recent_outbox(team, member.name, peek_limit),
                    task_stats=TaskStats.from_tasks(owned),
                )
            )
        return TeamStatus(
            team_name=team,
            workers=workers,
            task_summary=TaskStats.from_tasks(tasks),
            last_updated=self._clock(),
        )


__all__ = ["TaskStats", "TeamStatus", "TeamStatusAggregator", "WorkerStatus"]
