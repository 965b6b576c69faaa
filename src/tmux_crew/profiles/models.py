"""Worker profile models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..agents.contracts import AGENT_TYPES


class WorkerProfile(BaseModel):
    """Reusable launch settings for a kind of worker."""

    id: str = Field(..., description="Unique identifier for the profile.")
    agent_type: str = Field(..., description="Agent CLI to launch: claude, codex or gemini.")
    model: str | None = Field(default=None, description="Model passed with --model, if any.")
    extra_flags: list[str] = Field(
        default_factory=list,
        description="Additional CLI flags appended after the agent's own flags.",
    )
    description: str = Field(default="", description="What workers of this kind are for.")
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata recorded with spawned workers.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Worker profile id must not be empty")
        return normalized

    @field_validator("agent_type")
    @classmethod
    def _check_agent_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in AGENT_TYPES:
            raise ValueError(f"agent_type must be one of {', '.join(AGENT_TYPES)}")
        return normalized

    @field_validator("extra_flags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("extra_flags must be a sequence of strings")


__all__ = ["WorkerProfile"]
