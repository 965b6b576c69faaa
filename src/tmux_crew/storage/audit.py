"""Append-only team audit log."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .files import TeamPaths, append_jsonl, iter_jsonl
from .models import AuditEvent, utc_now

logger = logging.getLogger(__name__)

BRIDGE_START = "bridge_start"
TASK_COMPLETED = "task_completed"
TASK_PERMANENTLY_FAILED = "task_permanently_failed"
WORKER_SPAWNED = "worker_spawned"
WORKER_SHUTDOWN = "worker_shutdown"


class AuditLog:
    """One JSON line per event in ``teams/<team>/audit.jsonl``."""

    def __init__(self, state_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._state_dir = Path(state_dir)
        self._clock = clock or utc_now

    def _path(self, team: str) -> Path:
        return TeamPaths(self._state_dir, team).audit

    def log_event(self, event: AuditEvent) -> None:
        append_jsonl(self._path(event.team_name), event.to_json())

    def record(
        self,
        team: str,
        worker: str,
        event_type: str,
        *,
        task_id: str | None = None,
        details: dict | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=self._clock(),
            event_type=event_type,
            team_name=team,
            worker_name=worker,
            task_id=task_id,
            details=dict(details or {}),
        )
        self.log_event(event)
        return event

    def read(
        self,
        team: str,
        *,
        worker: str | None = None,
        event_type: str | None = None,
        since: datetime | None = None,
    ) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for raw in iter_jsonl(self._path(team)):
            try:
                event = AuditEvent.model_validate(raw)
            except ValidationError:
                logger.debug("Skipping malformed audit event", extra={"team": team})
                continue
            if worker is not None and event.worker_name != worker:
                continue
            if event_type is not None and event.event_type != event_type:
                continue
            if since is not None and event.timestamp < since:
                continue
            events.append(event)
        return events

    def uptime_ms(self, team: str, worker: str, now: datetime | None = None) -> int | None:
        """Milliseconds since the worker's most recent ``bridge_start``."""

        starts = self.read(team, worker=worker, event_type=BRIDGE_START)
        if not starts:
            return None
        latest = max(event.timestamp for event in starts)
        current = now or self._clock()
        return max(0, int((current - latest).total_seconds() * 1000))


__all__ = [
    "AuditLog",
    "BRIDGE_START",
    "TASK_COMPLETED",
    "TASK_PERMANENTLY_FAILED",
    "WORKER_SHUTDOWN",
    "WORKER_SPAWNED",
]
