"""Thin wrapper around the tmux command line."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable

from ..errors import AvailabilityError, TransientIOError

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_S = 10.0


class TmuxCommandError(TransientIOError):
    """Raised when a tmux command exits non-zero or times out."""

    def __init__(self, message: str, *, args: tuple[str, ...] = (), stderr: str = "") -> None:
        super().__init__(message)
        self.command = args
        self.stderr = stderr


class TmuxUnavailableError(AvailabilityError):
    """Raised when the tmux executable cannot be located."""


@dataclass(slots=True)
class TmuxResult:
    """Outcome of a single tmux invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "TmuxResult":
        if not self.ok:
            raise TmuxCommandError(
                f"tmux {' '.join(self.args)} failed ({self.returncode}): {self.stderr.strip()}",
                args=self.args,
                stderr=self.stderr,
            )
        return self


class TmuxClient:
    """Execute tmux commands, blocking or awaited."""

    def __init__(
        self,
        executable: str | None = None,
        *,
        timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
    ) -> None:
        self._executable = executable
        self._timeout_s = timeout_s

    @property
    def executable(self) -> str:
        if self._executable is None:
            found = shutil.which("tmux")
            if found is None:
                raise TmuxUnavailableError("tmux executable not found on PATH")
            self._executable = found
        return self._executable

    def run(self, *args: str) -> TmuxResult:
        cmd = [self.executable, *args]
        try:
            completed = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self._timeout_s, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise TmuxCommandError(f"tmux {' '.join(args)} timed out", args=args) from exc
        except FileNotFoundError as exc:
            raise TmuxUnavailableError(f"tmux executable not found at {cmd[0]}") from exc
        return TmuxResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

    async def run_async(self, *args: str) -> TmuxResult:
        cmd = [self.executable, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TmuxUnavailableError(f"tmux executable not found at {cmd[0]}") from exc
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout_s
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise TmuxCommandError(f"tmux {' '.join(args)} timed out", args=args) from exc
        return TmuxResult(
            args=tuple(args),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


Responder = Callable[[tuple[str, ...]], "TmuxResult | str | Exception | None"]


class FakeTmuxClient(TmuxClient):
    """Test double that records commands and answers from a responder.

    The responder receives the argument tuple and may return a ``TmuxResult``,
    a stdout string, an exception to raise, or ``None`` for an empty success.
    """

    def __init__(self, responder: Responder | None = None, *, delay_s: float = 0.0) -> None:  # type: ignore[override]
        self._executable = "tmux"
        self._timeout_s = DEFAULT_COMMAND_TIMEOUT_S
        self._responder = responder
        self._delay_s = delay_s
        self.calls: list[tuple[str, ...]] = []

    def _answer(self, args: tuple[str, ...]) -> TmuxResult:
        self.calls.append(args)
        reply = self._responder(args) if self._responder else None
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, TmuxResult):
            return reply
        return TmuxResult(args=args, returncode=0, stdout=reply or "", stderr="")

    def run(self, *args: str) -> TmuxResult:  # type: ignore[override]
        return self._answer(tuple(args))

    async def run_async(self, *args: str) -> TmuxResult:  # type: ignore[override]
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        return self._answer(tuple(args))

    def commands(self, name: str) -> list[tuple[str, ...]]:
        """Return recorded calls whose tmux subcommand is ``name``."""

        return [call for call in self.calls if call and call[0] == name]


def failed(args: tuple[str, ...], stderr: str = "error", returncode: int = 1) -> TmuxResult:
    """Build a non-zero result, mostly for test responders."""

    return TmuxResult(args=args, returncode=returncode, stdout="", stderr=stderr)


__all__ = [
    "FakeTmuxClient",
    "TmuxClient",
    "TmuxCommandError",
    "TmuxResult",
    "TmuxUnavailableError",
    "failed",
]
