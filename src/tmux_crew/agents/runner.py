"""Async one-shot runner for agent CLIs."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .binaries import BinaryResolver
from .contracts import get_contract
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 600.0


class AgentRunnerError(RuntimeError):
    """Raised when an agent process cannot be started."""


@dataclass(slots=True)
class AgentRunResult:
    """Holds the outcome of a one-shot agent invocation."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    output: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.returncode == 0


class AgentRunner:
    """Run an agent CLI with the prompt on stdin and wait for it to exit."""

    def __init__(self, resolver: BinaryResolver, *, default_timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self._resolver = resolver
        self._default_timeout_s = default_timeout_s

    async def run(
        self,
        agent_type: str,
        prompt: str,
        *,
        model: str | None = None,
        cwd: Path | None = None,
        timeout_s: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> AgentRunResult:
        contract = get_contract(agent_type)
        binary = self._resolver.resolve(contract.binary, strict=True)
        args = (binary, *contract.build_exec_args(model))
        started = time.monotonic()
        returncode, stdout, stderr, timed_out = await self._invoke(
            args,
            prompt,
            cwd=cwd,
            timeout_s=timeout_s if timeout_s is not None else self._default_timeout_s,
            env=sanitize_environment(env),
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        output = "" if timed_out else contract.parse_output(stdout)
        if timed_out:
            logger.warning(
                "Agent run timed out and was killed",
                extra={"agent_type": agent_type, "duration_ms": duration_ms},
            )
        return AgentRunResult(
            args=args,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            output=output,
            duration_ms=duration_ms,
            timed_out=timed_out,
        )

    async def _invoke(
        self,
        args: tuple[str, ...],
        prompt: str,
        *,
        cwd: Path | None,
        timeout_s: float,
        env: dict[str, str],
    ) -> tuple[int | None, str, str, bool]:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=env,
            )
        except OSError as exc:
            raise AgentRunnerError(f"Failed to start {args[0]}: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")), timeout=timeout_s
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return process.returncode, "", "", True
        return (
            process.returncode,
            stdout_bytes.decode("utf-8", errors="replace"),
            stderr_bytes.decode("utf-8", errors="replace"),
            False,
        )


class FakeAgentRunner(AgentRunner):
    """Test double that returns canned results without spawning processes."""

    def __init__(self, responses: Iterable[AgentRunResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, str]] = []

    async def run(self, agent_type: str, prompt: str, **kwargs) -> AgentRunResult:  # type: ignore[override]
        self._invocations.append((agent_type, prompt))
        if self._responses:
            return self._responses.pop(0)
        return AgentRunResult(
            args=(agent_type,), returncode=0, stdout="", stderr="", output="", duration_ms=0
        )

    @property
    def invocations(self) -> list[tuple[str, str]]:
        return self._invocations


__all__ = [
    "AgentRunResult",
    "AgentRunner",
    "AgentRunnerError",
    "FakeAgentRunner",
]
