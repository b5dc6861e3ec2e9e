"""Pydantic schemas describing agent runtime configuration."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AgentConfig(BaseModel):
    """Read-only configuration the pipeline needs to answer for an agent.

    ``temperature`` and ``max_tokens`` left as ``None`` fall back to the
    provider defaults from :class:`~app.agents.responses.ResponseParameterStore`.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    agent_id: str | None = None
    provider: str = "openai"
    model: str = "gpt-4"
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    response_language: str | None = None
    system_prompt: str | None = None
    persona: dict[str, Any] = Field(default_factory=lambda: {"type": "general"})

    @property
    def persona_type(self) -> str:
        return str(self.persona.get("type") or "general").lower()

    def response_parameters(self) -> dict[str, Any]:
        """Return the explicitly configured sampling parameters."""

        params: dict[str, Any] = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        return params
