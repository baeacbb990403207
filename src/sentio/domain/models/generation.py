"""Transient request/response types for the generation provider."""

from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class GenerationParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    temperature: float = Field(ge=0.0, le=2.0)
    max_tokens: int = Field(gt=0)
    top_p: float = Field(gt=0.0, le=1.0)


class GenerationRequest(BaseModel):
    """A rendered prompt plus the parameters to run it with."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: str(uuid4()))
    instruction: str
    turn: str
    parameters: GenerationParameters

    def to_payload(self) -> dict[str, Any]:
        """Chat-completions request body."""
        return {
            "model": self.parameters.model,
            "messages": [
                {"role": "system", "content": self.instruction},
                {"role": "user", "content": self.turn},
            ],
            "temperature": self.parameters.temperature,
            "max_tokens": self.parameters.max_tokens,
            "top_p": self.parameters.top_p,
            "stream": False,
        }


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class GenerationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    response_id: str
    content: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=1, ge=1)
    latency_ms: float = Field(default=0.0, ge=0.0)
    finish_reason: str | None = None
