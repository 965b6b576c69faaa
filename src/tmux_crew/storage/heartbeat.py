"""Worker heartbeat files."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .files import TeamPaths, atomic_write_json, read_json
from .models import HeartbeatRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 30_000


class HeartbeatStore:
    """Read and write the heartbeat each worker overwrites on every poll."""

    def __init__(self, state_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._state_dir = Path(state_dir)
        self._clock = clock or utc_now

    def _path(self, team: str, worker: str) -> Path:
        return TeamPaths(self._state_dir, team).heartbeat(worker)

    def write(self, record: HeartbeatRecord) -> None:
        atomic_write_json(self._path(record.team_name, record.worker_name), record.to_json())

    def read(self, team: str, worker: str) -> HeartbeatRecord | None:
        raw = read_json(self._path(team, worker), default=None)
        if not isinstance(raw, dict):
            return None
        try:
            return HeartbeatRecord.model_validate(raw)
        except ValidationError:
            logger.debug("Ignoring malformed heartbeat", extra={"team": team, "worker": worker})
            return None

    def age_ms(self, record: HeartbeatRecord) -> int:
        return int((self._clock() - record.last_poll_at).total_seconds() * 1000)

    def is_alive(self, team: str, worker: str, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> bool:
        """A missing heartbeat and a stale one are treated the same."""

        record = self.read(team, worker)
        return record is not None and self.age_ms(record) <= max_age_ms

    def delete(self, team: str, worker: str) -> None:
        self._path(team, worker).unlink(missing_ok=True)


__all__ = ["DEFAULT_MAX_AGE_MS", "HeartbeatStore"]
