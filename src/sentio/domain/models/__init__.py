"""Domain models for Sentio."""

from .delta import InterpretedReply, MemoryDelta, TaskTransition
from .generation import GenerationParameters, GenerationRequest, GenerationResponse, TokenUsage
from .interaction import CostRecord, FailureInfo, InteractionLog, MessageDirection
from .memory import (
    CURRENT_SCHEMA_VERSION,
    ActionState,
    CommunicationStrategy,
    FollowUp,
    Habit,
    Hypothesis,
    HypothesisStatus,
    MemoryRecord,
    Plan,
    Preference,
    PreferencePolarity,
    Profile,
    RelationalGoals,
    Relationship,
    SelfReflection,
    SemanticMemory,
    SignificantEvent,
    Skill,
    StrategicLayer,
    Task,
    TaskStatus,
)
from .messages import InboundMessage, MessageId, OutgoingMessage
from .prompts import PromptCategory, PromptTemplate, RenderedPrompt
from .workflow import Disposition, FailureStage, WorkflowFailure, WorkflowResult, WorkflowStage

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "ActionState",
    "CommunicationStrategy",
    "CostRecord",
    "Disposition",
    "FailureInfo",
    "FailureStage",
    "FollowUp",
    "GenerationParameters",
    "GenerationRequest",
    "GenerationResponse",
    "Habit",
    "Hypothesis",
    "HypothesisStatus",
    "InboundMessage",
    "InteractionLog",
    "InterpretedReply",
    "MemoryDelta",
    "MemoryRecord",
    "MessageDirection",
    "MessageId",
    "OutgoingMessage",
    "Plan",
    "Preference",
    "PreferencePolarity",
    "Profile",
    "PromptCategory",
    "PromptTemplate",
    "RelationalGoals",
    "Relationship",
    "RenderedPrompt",
    "SelfReflection",
    "SemanticMemory",
    "SignificantEvent",
    "Skill",
    "StrategicLayer",
    "Task",
    "TaskStatus",
    "TaskTransition",
    "TokenUsage",
    "WorkflowFailure",
    "WorkflowResult",
    "WorkflowStage",
]
