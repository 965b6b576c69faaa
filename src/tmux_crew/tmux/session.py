"""tmux session management for worker panes.

Every destructive command first checks the leader's own session name so a
leader running inside tmux can never kill the session it is attached to.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass, field
from typing import Mapping

from ..errors import ConfigurationError, TransientIOError
from ..names import SESSION_PREFIX, session_name
from .client import TmuxClient, TmuxCommandError

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_PATTERN = re.compile(r"[$#%>❯›]\s*$")
DEFAULT_SHELL_READY_TIMEOUT_MS = 10_000
DEFAULT_POLL_INTERVAL_MS = 250

_ENV_KEY = re.compile(r"^[A-Z_][A-Z0-9_]*$")


class LeaderIdentityError(TransientIOError):
    """Raised when running inside tmux but the leader session cannot be identified."""


@dataclass(slots=True)
class WorkerSession:
    """A freshly created worker session and its first pane."""

    session_name: str
    pane_id: str


@dataclass(slots=True)
class PaneLaunchSpec:
    """What to run inside a worker pane."""

    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def to_command(self) -> str:
        for key in self.env:
            if not _ENV_KEY.match(key):
                raise ConfigurationError(f"Invalid environment variable name: {key!r}")
        parts: list[str] = []
        if self.cwd:
            parts.append(f"cd {shlex.quote(self.cwd)} &&")
        if self.env:
            parts.append("env")
            parts.extend(f"{key}={shlex.quote(value)}" for key, value in self.env.items())
        parts.extend(shlex.quote(part) for part in self.argv)
        return " ".join(parts)


class SessionManager:
    """Create, inspect and tear down worker sessions."""

    def __init__(
        self,
        client: TmuxClient | None = None,
        *,
        env: Mapping[str, str] | None = None,
        shell_ready_timeout_ms: int | None = None,
    ) -> None:
        self._client = client or TmuxClient()
        self._env = env if env is not None else os.environ
        self._shell_ready_timeout_ms = shell_ready_timeout_ms

    @property
    def client(self) -> TmuxClient:
        return self._client

    # -- identity -----------------------------------------------------------------

    def current_session_name(self) -> str | None:
        """Return the session the leader runs in, or ``None`` outside tmux."""

        if not self._env.get("TMUX"):
            return None
        args = ["display-message", "-p"]
        pane = self._env.get("TMUX_PANE")
        if pane:
            args.extend(["-t", pane])
        args.append("#S")
        try:
            result = self._client.run(*args).check()
        except TmuxCommandError as exc:
            raise LeaderIdentityError(f"Unable to determine leader session: {exc}") from exc
        name = result.stdout.strip()
        if not name:
            raise LeaderIdentityError("Unable to determine leader session: empty name")
        return name

    def _is_leader_session(self, name: str) -> bool:
        return self.current_session_name() == name

    # -- lifecycle ----------------------------------------------------------------

    def has_session(self, name: str) -> bool:
        try:
            return self._client.run("has-session", "-t", f"={name}").ok
        except TransientIOError:
            return False

    def is_session_alive(self, team: str, worker: str) -> bool:
        return self.has_session(session_name(team, worker))

    def create_session(self, team: str, worker: str, cwd: str | None = None) -> WorkerSession:
        """Create a detached session for ``worker``, replacing a stale one."""

        name = session_name(team, worker)
        if self.has_session(name):
            if self._is_leader_session(name):
                logger.warning(
                    "Stale session is the leader's own session, not killing it",
                    extra={"session": name},
                )
            else:
                logger.info("Killing stale worker session", extra={"session": name})
                self._client.run("kill-session", "-t", f"={name}").check()

        args = ["new-session", "-d", "-P", "-F", "#{pane_id}", "-s", name]
        if cwd:
            args.extend(["-c", cwd])
        result = self._client.run(*args).check()
        pane_id = result.stdout.strip() or f"{name}:0.0"
        logger.info("Created worker session", extra={"session": name, "pane_id": pane_id})
        return WorkerSession(session_name=name, pane_id=pane_id)

    def kill_session(self, team: str, worker: str) -> bool:
        """Kill a worker session. Returns ``False`` when nothing was killed."""

        name = session_name(team, worker)
        if self._is_leader_session(name):
            logger.warning(
                "Refusing to kill the leader's own session", extra={"session": name}
            )
            return False
        result = self._client.run("kill-session", "-t", f"={name}")
        if not result.ok:
            stderr = result.stderr.lower()
            if "can't find session" in stderr or "no server running" in stderr:
                return False
            result.check()
        logger.info("Killed worker session", extra={"session": name})
        return True

    def list_sessions(self, prefix: str = SESSION_PREFIX) -> list[str]:
        try:
            result = self._client.run("list-sessions", "-F", "#{session_name}")
        except TransientIOError:
            return []
        if not result.ok:
            return []
        return [
            line.strip()
            for line in result.stdout.splitlines()
            if line.strip().startswith(f"{prefix}-")
        ]

    # -- input / output -----------------------------------------------------------

    def send_keys(self, target: str, text: str, *, enter: bool = True) -> None:
        """Type ``text`` literally into ``target`` and optionally press Enter.

        The payload and the Enter key are two separate commands so the text
        is never interpreted as key names.
        """

        self._client.run("send-keys", "-t", target, "-l", "--", text).check()
        if enter:
            self._client.run("send-keys", "-t", target, "Enter").check()

    def send_interrupt(self, target: str) -> bool:
        try:
            return self._client.run("send-keys", "-t", target, "C-c").ok
        except TransientIOError:
            return False

    def capture_pane(self, target: str, lines: int = 100) -> str:
        try:
            result = self._client.run("capture-pane", "-p", "-t", target, "-S", f"-{lines}")
        except TransientIOError:
            return ""
        return result.stdout if result.ok else ""

    async def capture_pane_async(self, target: str, lines: int = 100) -> str:
        try:
            result = await self._client.run_async(
                "capture-pane", "-p", "-t", target, "-S", f"-{lines}"
            )
        except TransientIOError:
            return ""
        return result.stdout if result.ok else ""

    def _default_shell_timeout_ms(self) -> int:
        if self._shell_ready_timeout_ms is not None:
            return self._shell_ready_timeout_ms
        raw = self._env.get("CREW_SHELL_READY_TIMEOUT_MS")
        if raw:
            try:
                value = int(raw)
            except ValueError:
                value = 0
            if value > 0:
                return value
        return DEFAULT_SHELL_READY_TIMEOUT_MS

    async def wait_for_shell_ready(
        self,
        pane: str,
        *,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        timeout_ms: int | None = None,
        prompt_pattern: re.Pattern[str] | None = None,
        max_interval_ms: int | None = None,
        backoff_factor: float = 1.0,
    ) -> bool:
        """Poll ``pane`` until its last line looks like a shell prompt."""

        timeout = timeout_ms if timeout_ms is not None else self._default_shell_timeout_ms()
        pattern = prompt_pattern or DEFAULT_PROMPT_PATTERN
        deadline = time.monotonic() + timeout / 1000
        delay = interval_ms
        polls = 0
        while True:
            polls += 1
            text = (await self.capture_pane_async(pane)).rstrip()
            if text and pattern.search(text):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay / 1000, remaining))
            if backoff_factor > 1.0:
                delay = delay * backoff_factor
                if max_interval_ms is not None:
                    delay = min(delay, max_interval_ms)

        logger.warning(
            "Shell prompt not detected before timeout",
            extra={"pane_id": pane, "polls": polls, "timeout_ms": timeout},
        )
        return False

    async def spawn_worker_in_pane(
        self,
        pane: str,
        spec: PaneLaunchSpec,
        *,
        wait_for_shell: bool = True,
        shell_ready_timeout_ms: int | None = None,
    ) -> bool:
        """Launch ``spec`` in ``pane``. Returns whether the shell was ready.

        A shell-ready timeout still sends the launch command.
        """

        command = spec.to_command()
        ready = True
        if wait_for_shell:
            ready = await self.wait_for_shell_ready(pane, timeout_ms=shell_ready_timeout_ms)
            if not ready:
                logger.warning(
                    "Shell not ready, sending launch command anyway", extra={"pane_id": pane}
                )
        self.send_keys(pane, command)
        return ready


__all__ = [
    "DEFAULT_PROMPT_PATTERN",
    "LeaderIdentityError",
    "PaneLaunchSpec",
    "SessionManager",
    "WorkerSession",
]
