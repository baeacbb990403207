"""Interaction log entries: one immutable record per inbound or outbound turn."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sentio.domain.models.utils import ensure_utc, utc_now


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CostRecord(BaseModel):
    """Token usage and price of the generation call behind a turn."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)


class FailureInfo(BaseModel):
    """Why a workflow stopped before completing."""

    model_config = ConfigDict(frozen=True)

    stage: str
    reason: str
    error_code: str | None = None


class InteractionLog(BaseModel):
    """A single turn of the conversation with a user.

    Entries are frozen: once written they are never edited, only appended
    to a record's episodic memory.
    """

    model_config = ConfigDict(frozen=True)

    log_id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    direction: MessageDirection
    summary: str
    message_id: str | None = Field(default=None, description="Message-ID of the mail this turn belongs to")
    tags: list[str] = Field(default_factory=list)
    emotional_tone: list[str] = Field(default_factory=list)
    key_topics: list[str] = Field(default_factory=list)
    model_version: str = "none"
    reasoning_snapshot: str | None = None
    cost: CostRecord | None = None
    send_failed: bool = False
    failure: FailureInfo | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def is_failure(self) -> bool:
        return self.failure is not None
