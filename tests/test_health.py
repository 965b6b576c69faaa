from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tmux_crew.monitor.health import HealthMonitor
from tmux_crew.storage.audit import BRIDGE_START, TASK_COMPLETED, TASK_PERMANENTLY_FAILED, AuditLog
from tmux_crew.storage.heartbeat import HeartbeatStore
from tmux_crew.storage.models import HeartbeatRecord, WorkerMember
from tmux_crew.storage.registry import WorkerRegistry
from tmux_crew.tmux.client import TmuxUnavailableError

TEAM = "alpha"
NOW = datetime(2026, 5, 5, 9, 0, 0, tzinfo=timezone.utc)


class StubSessions:
    def __init__(self, alive: set[str] | None = None, *, error: Exception | None = None) -> None:
        self.alive = alive or set()
        self.error = error

    def is_session_alive(self, team: str, worker: str) -> bool:
        if self.error is not None:
            raise self.error
        return worker in self.alive


def build_monitor(tmp_path: Path, sessions: StubSessions, **kwargs) -> tuple[HealthMonitor, HeartbeatStore]:
    clock = lambda: NOW  # noqa: E731
    heartbeats = HeartbeatStore(tmp_path, clock=clock)
    monitor = HealthMonitor(
        heartbeats,
        AuditLog(tmp_path, clock=clock),
        WorkerRegistry(tmp_path),
        sessions,
        **kwargs,
    )
    return monitor, heartbeats


def write_beat(store: HeartbeatStore, worker: str, *, seconds_ago: float = 1, **fields) -> None:
    store.write(
        HeartbeatRecord(
            worker_name=worker,
            team_name=TEAM,
            last_poll_at=NOW - timedelta(seconds=seconds_ago),
            **fields,
        )
    )


def test_dead_worker_with_stale_heartbeat(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions())
    write_beat(heartbeats, "w1", seconds_ago=120)

    intervention = monitor.check_worker_health(TEAM, "w1", max_age_ms=30_000)

    assert intervention.reason == "dead"
    assert intervention.message == "Worker is dead: heartbeat stale for 120s, tmux session not found"


def test_dead_worker_without_heartbeat(tmp_path: Path) -> None:
    monitor, _ = build_monitor(tmp_path, StubSessions())

    intervention = monitor.check_worker_health(TEAM, "ghost")

    assert intervention.reason == "dead"
    assert "unknown" in intervention.message


def test_possibly_hung_when_session_outlives_heartbeat(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions({"w1"}))
    write_beat(heartbeats, "w1", seconds_ago=60)

    assert monitor.check_worker_health(TEAM, "w1").reason == "possibly_hung"


def test_quarantine_outranks_error_count(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions({"w1"}))
    write_beat(heartbeats, "w1", status="quarantined", consecutive_errors=5)

    intervention = monitor.check_worker_health(TEAM, "w1")

    assert intervention.reason == "quarantined"
    assert "5 consecutive errors" in intervention.message


@pytest.mark.parametrize(("errors", "expected"), [(1, None), (2, "at_risk"), (3, "at_risk")])
def test_at_risk_threshold(tmp_path: Path, errors: int, expected: str | None) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions({"w1"}))
    write_beat(heartbeats, "w1", status="working", consecutive_errors=errors)

    intervention = monitor.check_worker_health(TEAM, "w1")

    assert (intervention.reason if intervention else None) == expected


def test_custom_at_risk_threshold(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions({"w1"}), at_risk_errors=4)
    write_beat(heartbeats, "w1", consecutive_errors=3)

    assert monitor.check_worker_health(TEAM, "w1") is None


def test_fresh_heartbeat_without_session_is_healthy(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions())
    write_beat(heartbeats, "w1")

    assert monitor.check_worker_health(TEAM, "w1") is None


def test_session_lookup_failure_counts_as_missing_session(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(
        tmp_path, StubSessions(error=TmuxUnavailableError("tmux is not installed"))
    )
    write_beat(heartbeats, "w1", seconds_ago=90)

    assert monitor.check_worker_health(TEAM, "w1").reason == "dead"


def test_health_reports_cover_registered_workers(tmp_path: Path) -> None:
    monitor, heartbeats = build_monitor(tmp_path, StubSessions({"w1"}))
    registry = WorkerRegistry(tmp_path)
    for name in ("w1", "w2"):
        registry.register(
            WorkerMember(name=name, team_name=TEAM, agent_type="claude", session_name=f"crew-alpha-{name}")
        )
    write_beat(heartbeats, "w1", status="working", current_task_id="7", consecutive_errors=1)
    write_beat(heartbeats, "w2", seconds_ago=300)

    audit = AuditLog(tmp_path, clock=lambda: NOW - timedelta(minutes=2))
    audit.record(TEAM, "w1", BRIDGE_START)
    audit.record(TEAM, "w1", TASK_COMPLETED, task_id="1")
    audit.record(TEAM, "w1", TASK_COMPLETED, task_id="2")
    audit.record(TEAM, "w1", TASK_PERMANENTLY_FAILED, task_id="3")

    reports = {report.worker_name: report for report in monitor.get_worker_health_reports(TEAM)}

    first = reports["w1"]
    assert first.is_alive and first.session_alive
    assert first.heartbeat_age_ms == 1_000
    assert first.status == "working"
    assert first.current_task_id == "7"
    assert (first.tasks_completed, first.tasks_failed) == (2, 1)
    assert first.uptime_ms == 120_000

    second = reports["w2"]
    assert not second.is_alive
    assert second.status == "dead"
    assert second.uptime_ms is None
