"""Launch and output contracts for the supported agent CLIs."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

from ..errors import AvailabilityError, ConfigurationError
from ..names import sanitize_name
from .binaries import BinaryResolver

logger = logging.getLogger(__name__)

VERSION_CHECK_TIMEOUT_S = 5.0


class UnknownAgentTypeError(ConfigurationError):
    """Raised when an agent type has no registered contract."""


class AgentUnavailableError(AvailabilityError):
    """Raised when an agent CLI is not installed or does not respond."""


@dataclass(slots=True)
class WorkerLaunchConfig:
    """Parameters used to build a worker's launch command."""

    team_name: str
    worker_name: str
    cwd: str | None = None
    model: str | None = None
    extra_flags: list[str] = field(default_factory=list)


class CliAgentContract(ABC):
    """Describes how to launch one agent CLI and how to read its output."""

    agent_type: str
    binary: str
    install_instructions: str
    supports_prompt_mode: bool = False
    prompt_mode_flag: str | None = None

    @abstractmethod
    def base_args(self) -> list[str]:
        """Flags that put the agent into unattended mode."""

    def build_launch_args(
        self, model: str | None = None, extra_flags: Sequence[str] | None = None
    ) -> list[str]:
        args = self.base_args()
        if model:
            args.extend(["--model", model])
        return [*args, *(extra_flags or [])]

    def build_exec_args(self, model: str | None = None) -> list[str]:
        """Arguments for a one-shot run that reads its prompt from stdin."""

        return self.build_launch_args(model)

    def parse_output(self, raw_output: str) -> str:
        return raw_output.strip()


class ClaudeContract(CliAgentContract):
    agent_type = "claude"
    binary = "claude"
    install_instructions = "Install Claude CLI: https://claude.ai/download"

    def base_args(self) -> list[str]:
        return ["--dangerously-skip-permissions"]

    def build_exec_args(self, model: str | None = None) -> list[str]:
        return [*self.build_launch_args(model), "-p"]


class CodexContract(CliAgentContract):
    """Sandboxed full-auto agent that emits one JSON record per line."""

    agent_type = "codex"
    binary = "codex"
    install_instructions = "Install Codex CLI: npm install -g @openai/codex"
    # The prompt is a positional argument.
    supports_prompt_mode = True

    def base_args(self) -> list[str]:
        return ["--full-auto"]

    def build_exec_args(self, model: str | None = None) -> list[str]:
        args = ["exec", "--json", "--full-auto"]
        if model:
            args.extend(["--model", model])
        return args

    def parse_output(self, raw_output: str) -> str:
        lines = [line for line in raw_output.strip().splitlines() if line.strip()]
        for line in reversed(lines):
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict):
                continue
            text = _assistant_text(record)
            if text is not None:
                return text
        return raw_output.strip()


def _assistant_text(record: dict) -> str | None:
    kind = record.get("type")
    if kind == "message" and record.get("role") == "assistant":
        content = record.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [part.get("text", "") for part in content if isinstance(part, dict)]
            return "".join(parts)
        return None
    if kind == "item.completed":
        item = record.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            return text if isinstance(text, str) else None
        return None
    if kind == "result" or "output" in record:
        value = record.get("output", record.get("result"))
        return value if isinstance(value, str) else None
    return None


class GeminiContract(CliAgentContract):
    agent_type = "gemini"
    binary = "gemini"
    install_instructions = "Install Gemini CLI: npm install -g @google/gemini-cli"
    supports_prompt_mode = True
    prompt_mode_flag = "-p"

    def base_args(self) -> list[str]:
        return ["--yolo"]


_CONTRACTS: dict[str, CliAgentContract] = {
    contract.agent_type: contract
    for contract in (ClaudeContract(), CodexContract(), GeminiContract())
}

AGENT_TYPES: tuple[str, ...] = tuple(_CONTRACTS)


def get_contract(agent_type: str) -> CliAgentContract:
    try:
        return _CONTRACTS[agent_type]
    except KeyError as exc:
        raise UnknownAgentTypeError(
            f"Unknown agent type: {agent_type}. Supported: {', '.join(AGENT_TYPES)}"
        ) from exc


def build_launch_args(agent_type: str, config: WorkerLaunchConfig) -> list[str]:
    return get_contract(agent_type).build_launch_args(config.model, config.extra_flags)


def build_worker_argv(
    agent_type: str, config: WorkerLaunchConfig, resolver: BinaryResolver
) -> list[str]:
    """Return the full argv for a worker, resolving the binary strictly."""

    sanitize_name(config.team_name)
    contract = get_contract(agent_type)
    binary = resolver.resolve(contract.binary, strict=True)
    return [binary, *build_launch_args(agent_type, config)]


def build_worker_command(
    agent_type: str, config: WorkerLaunchConfig, resolver: BinaryResolver
) -> str:
    return " ".join(shlex.quote(part) for part in build_worker_argv(agent_type, config, resolver))


def get_worker_env(team_name: str, worker_name: str, agent_type: str) -> dict[str, str]:
    sanitize_name(team_name)
    get_contract(agent_type)
    return {
        "CREW_TEAM_WORKER": f"{team_name}/{worker_name}",
        "CREW_TEAM_NAME": team_name,
        "CREW_WORKER_AGENT_TYPE": agent_type,
    }


def parse_cli_output(agent_type: str, raw_output: str) -> str:
    return get_contract(agent_type).parse_output(raw_output)


def is_prompt_mode_agent(agent_type: str) -> bool:
    return get_contract(agent_type).supports_prompt_mode


def get_prompt_mode_args(agent_type: str, instruction: str) -> list[str]:
    """Return the extra args that pass ``instruction`` non-interactively.

    Empty when the agent has no prompt mode, ``[flag, instruction]`` when the
    mode uses a flag and ``[instruction]`` when the prompt is positional.
    """

    contract = get_contract(agent_type)
    if not contract.supports_prompt_mode:
        return []
    if contract.prompt_mode_flag:
        return [contract.prompt_mode_flag, instruction]
    return [instruction]


@dataclass(slots=True)
class CliInfo:
    """What ``<binary> --version`` reported for one agent CLI."""

    available: bool
    version: str | None = None
    path: str | None = None


def detect_cli(agent_type: str, resolver: BinaryResolver) -> CliInfo:
    """Run ``<binary> --version``. Never raises for a known agent type."""

    contract = get_contract(agent_type)
    try:
        binary = resolver.resolve(contract.binary, strict=False)
        result = subprocess.run(
            [binary, "--version"],
            capture_output=True,
            timeout=VERSION_CHECK_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.SubprocessError, ConfigurationError) as exc:
        logger.debug(
            "Agent version check failed",
            extra={"agent_type": agent_type, "error": str(exc)},
        )
        return CliInfo(available=False)
    if result.returncode != 0:
        return CliInfo(available=False)
    version = (result.stdout or b"").decode("utf-8", errors="replace").strip()
    return CliInfo(
        available=True,
        version=version or None,
        path=binary if os.path.isabs(binary) else None,
    )


def detect_all_clis(resolver: BinaryResolver) -> dict[str, CliInfo]:
    return {agent_type: detect_cli(agent_type, resolver) for agent_type in AGENT_TYPES}


def is_cli_available(agent_type: str, resolver: BinaryResolver) -> bool:
    return detect_cli(agent_type, resolver).available


def validate_cli_available(agent_type: str, resolver: BinaryResolver) -> None:
    if not is_cli_available(agent_type, resolver):
        contract = get_contract(agent_type)
        raise AgentUnavailableError(
            f"CLI agent '{agent_type}' not found. {contract.install_instructions}"
        )


__all__ = [
    "AGENT_TYPES",
    "AgentUnavailableError",
    "ClaudeContract",
    "CliAgentContract",
    "CliInfo",
    "CodexContract",
    "GeminiContract",
    "UnknownAgentTypeError",
    "WorkerLaunchConfig",
    "build_launch_args",
    "build_worker_argv",
    "build_worker_command",
    "detect_all_clis",
    "detect_cli",
    "get_contract",
    "get_prompt_mode_args",
    "get_worker_env",
    "is_cli_available",
    "is_prompt_mode_agent",
    "parse_cli_output",
    "validate_cli_available",
]
