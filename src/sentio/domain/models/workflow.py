"""Workflow stages and results."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from sentio.domain.models.generation import TokenUsage


class WorkflowStage(str, Enum):
    RECEIVED = "received"
    MEMORY_LOADED = "memory_loaded"
    PROMPT_RENDERED = "prompt_rendered"
    GENERATING = "generating"
    REPLY_COMPOSED = "reply_composed"
    SENT = "sent"
    COMMITTED = "committed"
    FAILED = "failed"
    IGNORED = "ignored"  # sender not allowed; nothing generated, sent or stored


class FailureStage(str, Enum):
    """Where a failed workflow stopped."""

    LOAD = "load"
    RENDER = "render"
    GENERATE = "generate"
    TIMEOUT = "timeout"
    COMPOSE = "compose"
    SEND = "send"
    COMMIT = "commit"


class Disposition(str, Enum):
    RETRY_NOW = "retry_now"
    RETRY_LATER = "retry_later"
    TERMINAL = "terminal"


class WorkflowFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: FailureStage
    reason: str
    disposition: Disposition
    error_code: str | None = None


class WorkflowResult(BaseModel):
    workflow_id: str
    user_id: str
    stage: WorkflowStage
    failure: WorkflowFailure | None = None
    reply_message_id: str | None = None
    log_ids: list[str] = Field(default_factory=list)
    usage: TokenUsage | None = None
    cost_usd: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.failure is None and self.stage == WorkflowStage.COMMITTED

    @property
    def sent(self) -> bool:
        return self.reply_message_id is not None

    @property
    def ignored(self) -> bool:
        return self.stage == WorkflowStage.IGNORED
