"""Read-only health and status views over team state."""

from .health import HealthIntervention, HealthMonitor, WorkerHealthReport
from .status import TaskStats, TeamStatus, TeamStatusAggregator, WorkerStatus

__all__ = [
    "HealthIntervention",
    "HealthMonitor",
    "TaskStats",
    "TeamStatus",
    "TeamStatusAggregator",
    "WorkerHealthReport",
    "WorkerStatus",
]
