"""Memory deltas derived from a generated reply."""

from typing import Any

from pydantic import BaseModel, Field

from sentio.domain.models.memory import (
    FollowUp,
    Habit,
    Hypothesis,
    Plan,
    Preference,
    SelfReflection,
    SignificantEvent,
    Skill,
    Task,
    TaskStatus,
)


class TaskTransition(BaseModel):
    task_id: str
    status: TaskStatus


class MemoryDelta(BaseModel):
    """Incremental changes to a memory record.

    Every field is optional; an empty delta changes nothing.
    """

    profile: dict[str, Any] = Field(default_factory=dict)
    preferences: list[Preference] = Field(default_factory=list)
    habits: list[Habit] = Field(default_factory=list)
    significant_events: list[SignificantEvent] = Field(default_factory=list)
    skills: list[Skill] = Field(default_factory=list)
    values_and_beliefs: list[str] = Field(default_factory=list)
    new_tasks: list[Task] = Field(default_factory=list)
    task_transitions: list[TaskTransition] = Field(default_factory=list)
    plans: list[Plan] = Field(default_factory=list)
    follow_ups: list[FollowUp] = Field(default_factory=list)
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    communication_strategy: dict[str, Any] = Field(default_factory=dict)
    reflections: list[SelfReflection] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in type(self).model_fields)


class InterpretedReply(BaseModel):
    """What the orchestrator makes of the generated text."""

    body: str
    memory_updates: dict[str, Any] = Field(default_factory=dict)
    reasoning: str | None = None
    tags: list[str] = Field(default_factory=list)
    structured: bool = False
