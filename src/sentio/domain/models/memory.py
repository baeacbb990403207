"""Per-user long-term memory record.

A ``MemoryRecord`` is the root aggregate for everything the engine knows
about one user. It is split into five layers:

- ``profile``: identity facts, changed only through ``update_profile``
- ``episodic``: append-only history of ``InteractionLog`` entries
- ``semantic``: derived facts (preferences, habits, events, skills)
- ``action_state``: open tasks, plans and follow-ups
- ``strategic``: hypotheses about the user and the communication strategy

Scores (confidence, importance) are validated to ``[0.0, 1.0]`` both at
construction and on assignment.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Self
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sentio.core.errors import MemoryValidationError
from sentio.domain.models.interaction import InteractionLog
from sentio.domain.models.utils import utc_now

CURRENT_SCHEMA_VERSION = "2.1"
LEGACY_SCHEMA_VERSIONS = ("1.0", "2.0")


class _Layer(BaseModel):
    model_config = ConfigDict(validate_assignment=True, extra="ignore")


# Profile


class Relationship(_Layer):
    type: str  # friend, family, colleague, ...
    name: str
    description: str = ""
    importance: float = Field(default=0.5, ge=0.0, le=1.0)


class Profile(_Layer):
    """Identity facts about the user."""

    name: str | None = None
    age: int | None = Field(default=None, ge=0)
    gender: str | None = None
    city: str | None = None
    occupation: str | None = None
    relationships: list[Relationship] = Field(default_factory=list)
    personality_traits: list[str] = Field(default_factory=list)
    current_life_summary: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


# Semantic


class PreferencePolarity(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class Preference(_Layer):
    category: str
    value: str
    polarity: PreferencePolarity = PreferencePolarity.LIKE
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class Habit(_Layer):
    description: str
    frequency: str | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    first_observed: datetime = Field(default_factory=utc_now)
    last_confirmed: datetime = Field(default_factory=utc_now)


class SignificantEvent(_Layer):
    description: str
    date: datetime | None = None
    emotional_impact: str | None = None
    importance: float = Field(default=0.5, ge=0.0, le=1.0)


class Skill(_Layer):
    name: str
    proficiency: str | None = None
    description: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class SemanticMemory(_Layer):
    """Facts derived from interactions. Unordered."""

    preferences: list[Preference] = Field(default_factory=list)
    habits: list[Habit] = Field(default_factory=list)
    significant_events: list[SignificantEvent] = Field(default_factory=list)
    skills: list[Skill] = Field(default_factory=list)
    values_and_beliefs: list[str] = Field(default_factory=list)


# Action state


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class Task(_Layer):
    task_id: str = Field(default_factory=lambda: str(uuid4()))
    description: str
    priority: int = Field(default=3, ge=1, le=5)
    status: TaskStatus = TaskStatus.PENDING
    due_at: datetime | None = None
    remind_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

    def transition(self, status: TaskStatus | str) -> None:
        """Move the task forward. Completed and cancelled tasks are final.

        Raises:
            MemoryValidationError: If the move is not allowed
        """
        target = TaskStatus(status)
        if target == self.status:
            return
        if target not in _TASK_TRANSITIONS[self.status]:
            raise MemoryValidationError(
                f"Task '{self.task_id}' cannot move from {self.status.value} to {target.value}",
                details={
                    "source": "memory_model",
                    "operation": "task_transition",
                    "field": "status",
                    "actual_value": target.value,
                    "constraint": "pending -> in_progress -> completed|cancelled",
                },
            )
        self.status = target
        self.updated_at = utc_now()


class Plan(_Layer):
    description: str
    timeframe: str | None = None
    related_goals: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class FollowUp(_Layer):
    content: str
    suggested_at: datetime = Field(default_factory=utc_now)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    resolved: bool = False


class ActionState(_Layer):
    tasks: list[Task] = Field(default_factory=list)
    plans: list[Plan] = Field(default_factory=list)
    follow_ups: list[FollowUp] = Field(default_factory=list)

    def get_task(self, task_id: str) -> Task | None:
        return next((task for task in self.tasks if task.task_id == task_id), None)

    @property
    def open_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.is_open]


# Strategic


class HypothesisStatus(str, Enum):
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    REFUTED = "refuted"


class Hypothesis(_Layer):
    """A belief about the user, linked to the interactions that support it."""

    hypothesis_id: str = Field(default_factory=lambda: str(uuid4()))
    statement: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    status: HypothesisStatus = HypothesisStatus.ACTIVE
    evidence: list[str] = Field(default_factory=list, description="log_ids of supporting interactions")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RelationalGoals(_Layer):
    short_term: list[str] = Field(default_factory=list)
    medium_term: list[str] = Field(default_factory=list)
    long_term: list[str] = Field(default_factory=list)


class CommunicationStrategy(_Layer):
    tone_style: str = "warm"
    suitable_topics: list[str] = Field(default_factory=list)
    topics_to_avoid: list[str] = Field(default_factory=list)
    preferences: dict[str, Any] = Field(default_factory=dict)
    prompt_variant: str | None = Field(default=None, description="Prompt variant to use for this user")


class SelfReflection(_Layer):
    content: str
    reflection_type: str = "general"
    timestamp: datetime = Field(default_factory=utc_now)
    related_log_id: str | None = None


class StrategicLayer(_Layer):
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    relational_goals: RelationalGoals = Field(default_factory=RelationalGoals)
    communication_strategy: CommunicationStrategy = Field(default_factory=CommunicationStrategy)
    self_reflections: list[SelfReflection] = Field(default_factory=list)


# Schema migration


def migrate_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a stored payload up to the current schema version.

    Version 1.0 kept only profile and history; 2.0 had no strategic layer.
    Missing sections are filled with empty defaults.
    """
    version = str(data.get("version", CURRENT_SCHEMA_VERSION))
    if version == CURRENT_SCHEMA_VERSION:
        return data
    if version not in LEGACY_SCHEMA_VERSIONS:
        raise ValueError(f"unsupported memory schema version '{version}'")

    migrated = dict(data)
    if version == "1.0" and "episodic" not in migrated and "history" in migrated:
        migrated["episodic"] = migrated.pop("history")
    for section in ("profile", "semantic", "action_state", "strategic"):
        if migrated.get(section) is None:
            migrated[section] = {}
    migrated.setdefault("episodic", [])
    migrated["version"] = CURRENT_SCHEMA_VERSION
    return migrated


def merge_episodic(existing: list[InteractionLog], incoming: list[InteractionLog]) -> list[InteractionLog]:
    """Keep every stored entry and append incoming entries with unseen log ids, in order."""
    seen = {log.log_id for log in existing}
    merged = list(existing)
    for log in incoming:
        if log.log_id not in seen:
            seen.add(log.log_id)
            merged.append(log)
    return merged


class MemoryRecord(BaseModel):
    """Complete persistent state for one user."""

    model_config = ConfigDict(validate_assignment=True)

    user_id: str = Field(min_length=1)
    version: str = CURRENT_SCHEMA_VERSION
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    profile: Profile = Field(default_factory=Profile)
    episodic: list[InteractionLog] = Field(default_factory=list)
    semantic: SemanticMemory = Field(default_factory=SemanticMemory)
    action_state: ActionState = Field(default_factory=ActionState)
    strategic: StrategicLayer = Field(default_factory=StrategicLayer)

    @model_validator(mode="before")
    @classmethod
    def migrate(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return migrate_payload(data)
        return data

    @field_validator("user_id")
    @classmethod
    def user_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user_id must not be blank")
        return value

    @field_validator("version")
    @classmethod
    def version_is_current(cls, value: str) -> str:
        if value != CURRENT_SCHEMA_VERSION:
            raise ValueError(f"expected schema version {CURRENT_SCHEMA_VERSION}, got {value}")
        return value

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> Self:
        """Validate (and migrate) a stored payload.

        Raises:
            MemoryValidationError: If the payload is malformed
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MemoryValidationError(
                f"Invalid memory record: {e.error_count()} error(s)",
                details={
                    "source": "memory_model",
                    "operation": "from_payload",
                    "field": ".".join(str(p) for p in e.errors()[0]["loc"]) if e.errors() else None,
                    "constraint": e.errors()[0]["msg"] if e.errors() else None,
                },
            ) from e

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def touch(self) -> None:
        self.updated_at = utc_now()

    @property
    def log_ids(self) -> set[str]:
        return {log.log_id for log in self.episodic}

    def add_interaction(self, log: InteractionLog) -> None:
        """Append an interaction to the episodic history.

        Raises:
            MemoryValidationError: If the log belongs to another user or its id is already present
        """
        if log.user_id != self.user_id:
            raise MemoryValidationError(
                f"Interaction for '{log.user_id}' cannot be added to record '{self.user_id}'",
                details={"source": "memory_model", "operation": "add_interaction", "field": "user_id"},
            )
        if log.log_id in self.log_ids:
            raise MemoryValidationError(
                f"Interaction '{log.log_id}' already recorded",
                details={"source": "memory_model", "operation": "add_interaction", "field": "log_id"},
            )
        self.episodic.append(log)
        self.touch()

    def update_profile(self, **changes: Any) -> None:
        """Apply profile field changes.

        Raises:
            MemoryValidationError: On unknown fields or invalid values
        """
        unknown = set(changes) - set(Profile.model_fields)
        if unknown:
            raise MemoryValidationError(
                f"Unknown profile field(s): {', '.join(sorted(unknown))}",
                details={"source": "memory_model", "operation": "update_profile", "field": sorted(unknown)[0]},
            )
        try:
            self.profile = Profile.model_validate({**self.profile.model_dump(), **changes})
        except ValidationError as e:
            raise MemoryValidationError(
                f"Invalid profile update: {e.error_count()} error(s)",
                details={"source": "memory_model", "operation": "update_profile"},
            ) from e
        self.touch()

    def add_hypothesis(self, hypothesis: Hypothesis) -> None:
        """Record a hypothesis whose evidence refers to known interactions.

        Raises:
            MemoryValidationError: If any evidence id is not in the episodic history
        """
        missing = [log_id for log_id in hypothesis.evidence if log_id not in self.log_ids]
        if missing:
            raise MemoryValidationError(
                f"Hypothesis evidence refers to unknown interactions: {', '.join(missing)}",
                details={
                    "source": "memory_model",
                    "operation": "add_hypothesis",
                    "field": "evidence",
                    "actual_value": missing,
                },
            )
        self.strategic.hypotheses.append(hypothesis)
        self.touch()
