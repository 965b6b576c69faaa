"""Agent CLI contracts, binary resolution and one-shot execution."""

from .binaries import (
    BinaryNotFoundError,
    BinaryResolver,
    UnsafeBinaryError,
    UntrustedBinaryError,
)
from .contracts import (
    AGENT_TYPES,
    AgentUnavailableError,
    CliAgentContract,
    CliInfo,
    UnknownAgentTypeError,
    WorkerLaunchConfig,
    build_launch_args,
    build_worker_argv,
    build_worker_command,
    detect_all_clis,
    detect_cli,
    get_contract,
    get_prompt_mode_args,
    get_worker_env,
    is_cli_available,
    is_prompt_mode_agent,
    parse_cli_output,
    validate_cli_available,
)
from .runner import AgentRunner, AgentRunnerError, AgentRunResult, FakeAgentRunner

__all__ = [
    "AGENT_TYPES",
    "AgentRunResult",
    "AgentRunner",
    "AgentRunnerError",
    "AgentUnavailableError",
    "BinaryNotFoundError",
    "BinaryResolver",
    "CliAgentContract",
    "CliInfo",
    "FakeAgentRunner",
    "UnknownAgentTypeError",
    "UnsafeBinaryError",
    "UntrustedBinaryError",
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
