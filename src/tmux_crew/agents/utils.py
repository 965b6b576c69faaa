"""Utility helpers for agent subprocesses."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    "TMUX",
    "TMUX_PANE",
}


def sanitize_environment(
    additional: Mapping[str, str] | None = None,
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Return a sanitized environment suitable for agent subprocesses."""

    env = dict(os.environ if base is None else base)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env
