"""Team and worker name sanitization."""

from __future__ import annotations

import re

from .errors import ConfigurationError

SESSION_PREFIX = "crew"
MAX_NAME_LENGTH = 50
MIN_NAME_LENGTH = 2

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


class InvalidNameError(ConfigurationError):
    """Raised when a name has too few usable characters."""


def sanitize_name(name: str) -> str:
    """Return a tmux-safe version of ``name``.

    The result only contains ``[a-z0-9-]``, has no leading or trailing hyphen
    and is between 2 and 50 characters long. Sanitizing twice is a no-op.
    """

    cleaned = _INVALID_CHARS.sub("-", name.lower()).strip("-")
    cleaned = cleaned[:MAX_NAME_LENGTH].rstrip("-")
    if len(cleaned) < MIN_NAME_LENGTH:
        raise InvalidNameError(
            f"Name {name!r} must contain at least {MIN_NAME_LENGTH} alphanumeric characters"
        )
    return cleaned


def session_name(team: str, worker: str) -> str:
    """Return the tmux session name for a worker."""

    return f"{SESSION_PREFIX}-{sanitize_name(team)}-{sanitize_name(worker)}"


__all__ = [
    "InvalidNameError",
    "MAX_NAME_LENGTH",
    "SESSION_PREFIX",
    "sanitize_name",
    "session_name",
]
