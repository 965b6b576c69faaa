"""Worker health reports built from heartbeats, panes and the audit log."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Protocol

from ..errors import CrewError
from ..storage.audit import TASK_COMPLETED, TASK_PERMANENTLY_FAILED, AuditLog
from ..storage.heartbeat import DEFAULT_MAX_AGE_MS, HeartbeatStore
from ..storage.models import HeartbeatRecord
from ..storage.registry import WorkerRegistry

logger = logging.getLogger(__name__)

DEFAULT_AT_RISK_ERRORS = 2

InterventionReason = Literal["dead", "possibly_hung", "quarantined", "at_risk"]


class SessionChecker(Protocol):
    def is_session_alive(self, team: str, worker: str) -> bool:
        ...


@dataclass(slots=True)
class WorkerHealthReport:
    worker_name: str
    is_alive: bool
    session_alive: bool
    heartbeat_age_ms: int | None
    status: str
    consecutive_errors: int
    current_task_id: str | None
    tasks_completed: int
    tasks_failed: int
    uptime_ms: int | None


@dataclass(slots=True)
class HealthIntervention:
    """Why a worker needs attention."""

    reason: InterventionReason
    message: str


class HealthMonitor:
    """Read-only health checks. Never raises for missing or bad state."""

    def __init__(
        self,
        heartbeats: HeartbeatStore,
        audit: AuditLog,
        registry: WorkerRegistry,
        sessions: SessionChecker,
        *,
        at_risk_errors: int = DEFAULT_AT_RISK_ERRORS,
    ) -> None:
        self._heartbeats = heartbeats
        self._audit = audit
        self._registry = registry
        self._sessions = sessions
        self._at_risk_errors = at_risk_errors

    def _session_alive(self, team: str, worker: str) -> bool:
        try:
            return self._sessions.is_session_alive(team, worker)
        except CrewError as exc:
            logger.debug("Session lookup failed", extra={"worker": worker, "error": str(exc)})
            return False

    def _observe(
        self, team: str, worker: str, max_age_ms: int
    ) -> tuple[HeartbeatRecord | None, int | None, bool, bool]:
        heartbeat = self._heartbeats.read(team, worker)
        age = self._heartbeats.age_ms(heartbeat) if heartbeat else None
        alive = age is not None and age <= max_age_ms
        return heartbeat, age, alive, self._session_alive(team, worker)

    def get_worker_health_reports(
        self, team: str, max_age_ms: int = DEFAULT_MAX_AGE_MS
    ) -> list[WorkerHealthReport]:
        reports: list[WorkerHealthReport] = []
        for member in self._registry.list_workers(team):
            heartbeat, age, alive, session_alive = self._observe(team, member.name, max_age_ms)
            status = heartbeat.status if heartbeat else "unknown"
            if not alive and not session_alive:
                status = "dead"

            completed = failed = 0
            for event in self._audit.read(team, worker=member.name):
                if event.event_type == TASK_COMPLETED:
                    completed += 1
                elif event.event_type == TASK_PERMANENTLY_FAILED:
                    failed += 1

            reports.append(
                WorkerHealthReport(
                    worker_name=member.name,
                    is_alive=alive,
                    session_alive=session_alive,
                    heartbeat_age_ms=age,
                    status=status,
                    consecutive_errors=heartbeat.consecutive_errors if heartbeat else 0,
                    current_task_id=heartbeat.current_task_id if heartbeat else None,
                    tasks_completed=completed,
                    tasks_failed=failed,
                    uptime_ms=self._audit.uptime_ms(team, member.name),
                )
            )
        return reports

    def check_worker_health(
        self, team: str, worker: str, max_age_ms: int = DEFAULT_MAX_AGE_MS
    ) -> HealthIntervention | None:
        """Return the most urgent problem with ``worker``, or ``None``."""

        heartbeat, age, alive, session_alive = self._observe(team, worker, max_age_ms)
        if not alive and not session_alive:
            seconds = f"{round(age / 1000)}s" if age is not None else "unknown"
            return HealthIntervention(
                "dead", f"Worker is dead: heartbeat stale for {seconds}, tmux session not found"
            )
        if not alive:
            return HealthIntervention(
                "possibly_hung", "Heartbeat stale but tmux session exists, worker may be hung"
            )
        if heartbeat is not None and heartbeat.status == "quarantined":
            return HealthIntervention(
                "quarantined",
                f"Worker self-quarantined after {heartbeat.consecutive_errors} consecutive errors",
            )
        if heartbeat is not None and heartbeat.consecutive_errors >= self._at_risk_errors:
            return HealthIntervention(
                "at_risk",
                f"Worker has {heartbeat.consecutive_errors} consecutive errors, at risk of quarantine",
            )
        return None


__all__ = [
    "HealthIntervention",
    "HealthMonitor",
    "SessionChecker",
    "WorkerHealthReport",
]
