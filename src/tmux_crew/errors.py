"""Shared error categories for tmux-crew."""

from __future__ import annotations


class CrewError(RuntimeError):
    """Base class for tmux-crew errors."""


class ConfigurationError(CrewError, ValueError):
    """Raised for bad names, unsafe binaries or unknown agent types. Never retried."""


class AvailabilityError(CrewError):
    """Raised when a required binary or the terminal multiplexer is missing."""


class TransientIOError(CrewError):
    """Raised when a multiplexer command or filesystem operation fails."""


__all__ = ["AvailabilityError", "ConfigurationError", "CrewError", "TransientIOError"]
