"""File-backed task queue with exclusive claims."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from pydantic import ValidationError

from ..errors import ConfigurationError, CrewError
from .files import TeamPaths, atomic_write_json, read_json
from .models import TaskFailure, TaskRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_TASK_RETRIES = 5

_TASK_ID = re.compile(r"^[A-Za-z0-9._-]+$")


class TaskError(CrewError):
    """Base class for task queue errors."""


class InvalidTaskIdError(TaskError, ConfigurationError):
    """Raised for task ids that are unsafe as file names."""


class TaskNotFoundError(TaskError):
    """Raised when a task file is missing or unreadable."""


class TaskClaimError(TaskError):
    """Raised when a task cannot be claimed by the requesting worker."""


class TaskStateError(TaskError):
    """Raised for transitions the task lifecycle does not allow."""


def validate_task_id(task_id: str) -> str:
    if not _TASK_ID.match(task_id) or task_id in {".", ".."}:
        raise InvalidTaskIdError(f"Invalid task id {task_id!r}")
    return task_id


def task_sort_key(task_id: str) -> tuple[int, int, str]:
    """Numeric ids first in numeric order, then the rest lexicographically."""

    if task_id.isdigit():
        return (0, int(task_id), task_id)
    return (1, 0, task_id)


class TaskQueue:
    """Tasks stored as one JSON file each under ``teams/<team>/tasks``."""

    def __init__(
        self,
        state_dir: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._clock = clock or utc_now

    def _dir(self, team: str) -> Path:
        return TeamPaths(self._state_dir, team).tasks

    def _task_path(self, team: str, task_id: str) -> Path:
        return self._dir(team) / f"{validate_task_id(task_id)}.json"

    def _failure_path(self, team: str, task_id: str) -> Path:
        return self._dir(team) / f"{validate_task_id(task_id)}.failure.json"

    def _lock_path(self, team: str, task_id: str) -> Path:
        return self._dir(team) / f"{validate_task_id(task_id)}.lock"

    # -- reads --------------------------------------------------------------------

    def read_task(self, team: str, task_id: str) -> TaskRecord | None:
        raw = read_json(self._task_path(team, task_id), default=None)
        if not isinstance(raw, dict):
            return None
        try:
            return TaskRecord.model_validate(raw)
        except ValidationError:
            logger.debug("Ignoring malformed task file", extra={"team": team, "task_id": task_id})
            return None

    def list_task_ids(self, team: str) -> list[str]:
        directory = self._dir(team)
        if not directory.is_dir():
            return []
        ids = []
        for path in directory.glob("*.json"):
            name = path.name
            if name.startswith(".") or name.endswith(".failure.json"):
                continue
            task_id = name[: -len(".json")]
            if _TASK_ID.match(task_id):
                ids.append(task_id)
        return sorted(ids, key=task_sort_key)

    def list_tasks(self, team: str) -> list[TaskRecord]:
        tasks = []
        for task_id in self.list_task_ids(team):
            task = self.read_task(team, task_id)
            if task is not None:
                tasks.append(task)
        return tasks

    # -- writes -------------------------------------------------------------------

    def _write(self, team: str, task: TaskRecord) -> None:
        atomic_write_json(self._task_path(team, task.id), task.to_json())

    def create_task(
        self,
        team: str,
        task_id: str,
        subject: str,
        *,
        description: str = "",
        owner: str | None = None,
        blocked_by: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TaskRecord:
        for blocker in blocked_by or []:
            validate_task_id(blocker)
        path = self._task_path(team, task_id)
        if path.exists():
            raise TaskStateError(f"Task {task_id} already exists")
        task = TaskRecord(
            id=task_id,
            subject=subject,
            description=description,
            owner=owner,
            blocked_by=list(blocked_by or []),
            metadata=dict(metadata or {}),
            created_at=self._clock(),
        )
        self._write(team, task)
        logger.info("Created task", extra={"team": team, "task_id": task_id, "owner": owner})
        return task

    # -- locking ------------------------------------------------------------------

    @contextmanager
    def _locked(self, team: str, task_id: str, worker: str) -> Iterator[None]:
        """Hold an exclusive ``flock`` on the task's lock file.

        The kernel drops the lock when its holder exits. The file is never
        unlinked, so every claimant locks the same inode.
        """

        path = self._lock_path(team, task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        with os.fdopen(fd, "r+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise TaskClaimError(f"Task {task_id} is locked by another worker") from exc
            try:
                handle.seek(0)
                handle.truncate()
                json.dump(
                    {"pid": os.getpid(), "workerName": worker, "timestamp": int(time.time() * 1000)},
                    handle,
                )
                handle.flush()
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _require(self, team: str, task_id: str) -> TaskRecord:
        task = self.read_task(team, task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found or malformed")
        return task

    # -- lifecycle ----------------------------------------------------------------

    def blockers_resolved(self, team: str, task: TaskRecord) -> bool:
        for blocker_id in task.blocked_by:
            blocker = self.read_task(team, blocker_id)
            if blocker is None or blocker.status != "completed":
                return False
        return True

    def claim_task(self, team: str, task_id: str, worker: str) -> TaskRecord:
        """Move a pending task to ``in_progress`` owned by ``worker``."""

        with self._locked(team, task_id, worker):
            task = self._require(team, task_id)
            if task.status != "pending":
                raise TaskClaimError(f"Task {task_id} is {task.status}, not pending")
            if task.owner not in (None, worker):
                raise TaskClaimError(f"Task {task_id} is owned by {task.owner}")
            if not self.blockers_resolved(team, task):
                raise TaskClaimError(f"Task {task_id} has unresolved blockers")
            task.owner = worker
            task.status = "in_progress"
            task.claimed_by = worker
            task.claimed_at = self._clock()
            task.claim_pid = os.getpid()
            self._write(team, task)
        logger.info("Claimed task", extra={"team": team, "task_id": task_id, "worker": worker})
        return task

    def find_next_task(self, team: str, worker: str) -> TaskRecord | None:
        """Claim the first ready task assigned to ``worker``, if any."""

        for task in self.list_tasks(team):
            if task.status != "pending" or task.owner != worker:
                continue
            if not self.blockers_resolved(team, task):
                continue
            try:
                return self.claim_task(team, task.id, worker)
            except TaskClaimError:
                continue
        return None

    def complete_task(
        self,
        team: str,
        task_id: str,
        worker: str,
        *,
        permanently_failed: bool = False,
        summary: str | None = None,
    ) -> TaskRecord:
        with self._locked(team, task_id, worker):
            task = self._require(team, task_id)
            if task.status != "in_progress" or task.owner != worker:
                raise TaskStateError(
                    f"Task {task_id} is {task.status} for {task.owner}, cannot be completed by {worker}"
                )
            task.status = "completed"
            task.completed_at = self._clock()
            if permanently_failed:
                task.metadata["permanentlyFailed"] = True
            if summary is not None:
                task.metadata["summary"] = summary
            self._write(team, task)
        logger.info(
            "Completed task",
            extra={"team": team, "task_id": task_id, "worker": worker, "failed": permanently_failed},
        )
        return task

    def release_task(self, team: str, task_id: str, worker: str) -> TaskRecord:
        """Return an in-progress task to ``pending`` so it can be retried."""

        with self._locked(team, task_id, worker):
            task = self._require(team, task_id)
            if task.status != "in_progress" or task.owner != worker:
                raise TaskStateError(f"Task {task_id} is not held by {worker}")
            task.status = "pending"
            task.claimed_by = None
            task.claimed_at = None
            task.claim_pid = None
            self._write(team, task)
        return task

    # -- failure sidecars ---------------------------------------------------------

    def read_task_failure(self, team: str, task_id: str) -> TaskFailure | None:
        raw = read_json(self._failure_path(team, task_id), default=None)
        if not isinstance(raw, dict):
            return None
        try:
            return TaskFailure.model_validate(raw)
        except ValidationError:
            return None

    def write_task_failure(self, team: str, task_id: str, error: str) -> TaskFailure:
        """Record another failure and return the updated sidecar."""

        previous = self.read_task_failure(team, task_id)
        failure = TaskFailure(
            task_id=task_id,
            last_error=error,
            retry_count=(previous.retry_count if previous else 0) + 1,
            last_failed_at=self._clock(),
        )
        atomic_write_json(self._failure_path(team, task_id), failure.to_json())
        return failure

    def is_retry_exhausted(
        self, team: str, task_id: str, max_retries: int = DEFAULT_MAX_TASK_RETRIES
    ) -> bool:
        failure = self.read_task_failure(team, task_id)
        return failure is not None and failure.retry_count >= max_retries


__all__ = [
    "DEFAULT_MAX_TASK_RETRIES",
    "InvalidTaskIdError",
    "TaskClaimError",
    "TaskError",
    "TaskNotFoundError",
    "TaskQueue",
    "TaskStateError",
    "task_sort_key",
    "validate_task_id",
]
