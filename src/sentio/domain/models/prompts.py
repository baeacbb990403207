"""Prompt template types."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class PromptCategory(str, Enum):
    PERSONAL_REPLY = "personal_reply"
    EMAIL_ANALYSIS = "email_analysis"
    SMART_REPLY = "smart_reply"
    GENERAL_CHAT = "general_chat"
    REASONING_CHAIN = "reasoning_chain"
    INTRODUCTION = "introduction"


class PromptTemplate(BaseModel):
    """Instruction and user-turn templates keyed by (category, variant)."""

    model_config = ConfigDict(frozen=True)

    category: str
    variant: str
    system: str
    user: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.category, self.variant)


class RenderedPrompt(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    variant: str
    instruction: str
    turn: str
