"""Worker registry and per-team transport marker."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..names import sanitize_name
from .files import TeamPaths, atomic_write_json, read_json
from .models import WorkerMember

logger = logging.getLogger(__name__)

PROTOCOL_NAME = "crew-mail"
PROTOCOL_VERSION = 1


class WorkerNameCollisionError(ConfigurationError):
    """Raised when two worker names map to the same session and files."""


class WorkerRegistry:
    """Tracks which workers the leader has spawned for each team."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    def _paths(self, team: str) -> TeamPaths:
        return TeamPaths(self._state_dir, team)

    def list_workers(self, team: str) -> list[WorkerMember]:
        document = read_json(self._paths(team).registry, default={})
        entries = document.get("workers", []) if isinstance(document, dict) else []
        members: list[WorkerMember] = []
        for entry in entries:
            try:
                members.append(WorkerMember.model_validate(entry))
            except ValidationError:
                logger.debug("Skipping malformed registry entry", extra={"team": team})
        return members

    def get(self, team: str, worker: str) -> WorkerMember | None:
        for member in self.list_workers(team):
            if member.name == worker:
                return member
        return None

    def ensure_available(self, team: str, worker: str) -> None:
        """Reject ``worker`` if another member shares its sanitized name.

        Session names and state files are keyed by the sanitized name, so
        ``Codex_1`` and ``codex-1`` cannot both be members of one team.
        """

        key = sanitize_name(worker)
        for member in self.list_workers(team):
            if member.name != worker and sanitize_name(member.name) == key:
                raise WorkerNameCollisionError(
                    f"Worker {worker!r} collides with existing worker {member.name!r} in team {team!r}"
                )

    def register(self, member: WorkerMember) -> None:
        self.ensure_available(member.team_name, member.name)
        members = [m for m in self.list_workers(member.team_name) if m.name != member.name]
        members.append(member)
        self._write(member.team_name, members)

    def unregister(self, team: str, worker: str) -> bool:
        members = self.list_workers(team)
        remaining = [m for m in members if m.name != worker]
        if len(remaining) == len(members):
            return False
        self._write(team, remaining)
        return True

    def _write(self, team: str, members: list[WorkerMember]) -> None:
        atomic_write_json(
            self._paths(team).registry,
            {"teamName": team, "workers": [member.to_json() for member in members]},
        )

    def is_protocol_team(self, team: str) -> bool:
        return has_protocol_marker(self._paths(team))

    def enable_protocol(self, team: str) -> None:
        """Switch ``team`` to per-message mailbox files."""

        atomic_write_json(
            self._paths(team).state_version,
            {"protocol": PROTOCOL_NAME, "version": PROTOCOL_VERSION},
        )
        logger.info("Enabled protocol mailbox", extra={"team": team})


def has_protocol_marker(paths: TeamPaths) -> bool:
    return paths.state_version.is_file()


__all__ = [
    "PROTOCOL_NAME",
    "PROTOCOL_VERSION",
    "WorkerNameCollisionError",
    "WorkerRegistry",
    "has_protocol_marker",
]
