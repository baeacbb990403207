"""Turning generated content into a reply body and memory changes.

The model may answer with plain text or with a JSON object such as::

    {"reply": "...", "reasoning": "...", "tags": [...],
     "memory_updates": {"preferences": [...], "new_tasks": [...]}}

``interpret_reply`` accepts both. Which facts end up in memory is decided
by a ``MemoryExtractor``; the default one only takes updates the model
listed explicitly and infers nothing on its own.
"""

import json
import re
from typing import Any

from pydantic import ValidationError

from sentio.core.errors import MemoryValidationError
from sentio.core.logging import get_logger
from sentio.domain.models import (
    CommunicationStrategy,
    InboundMessage,
    InterpretedReply,
    MemoryDelta,
    MemoryRecord,
)

logger = get_logger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def interpret_reply(content: str) -> InterpretedReply:
    """Split generated text into reply body and structured extras.

    Anything that is not a JSON object with a string ``reply`` key is used
    verbatim as the body.
    """
    text = content.strip()
    fenced = _FENCE.match(text)
    candidate = fenced.group(1) if fenced else text

    if candidate.startswith("{"):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("reply"), str):
            updates = data.get("memory_updates")
            tags = data.get("tags")
            reasoning = data.get("reasoning")
            return InterpretedReply(
                body=data["reply"].strip(),
                memory_updates=updates if isinstance(updates, dict) else {},
                reasoning=reasoning if isinstance(reasoning, str) else None,
                tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
                structured=True,
            )

    return InterpretedReply(body=text)


class StructuredUpdateExtractor:
    """Takes exactly the ``memory_updates`` the model returned.

    A malformed update block is dropped as a whole and logged; the reply
    itself is still delivered.
    """

    def extract(self, record: MemoryRecord, message: InboundMessage, reply: InterpretedReply) -> MemoryDelta:
        if not reply.memory_updates:
            return MemoryDelta()
        try:
            return MemoryDelta.model_validate(reply.memory_updates)
        except ValidationError as e:
            logger.warning(
                "Discarding malformed memory updates",
                user_id=record.user_id,
                errors=e.error_count(),
                first_error=e.errors()[0]["msg"] if e.errors() else None,
            )
            return MemoryDelta()


class NoUpdateExtractor:
    """Never changes memory beyond the interaction log."""

    def extract(self, record: MemoryRecord, message: InboundMessage, reply: InterpretedReply) -> MemoryDelta:
        return MemoryDelta()


def _merge_strategy(current: CommunicationStrategy, changes: dict[str, Any]) -> CommunicationStrategy:
    unknown = set(changes) - set(CommunicationStrategy.model_fields)
    if unknown:
        raise MemoryValidationError(
            f"Unknown communication strategy field(s): {', '.join(sorted(unknown))}",
            details={"source": "memory_updates", "operation": "apply_delta", "field": sorted(unknown)[0]},
        )
    try:
        return CommunicationStrategy.model_validate({**current.model_dump(), **changes})
    except ValidationError as e:
        raise MemoryValidationError(
            f"Invalid communication strategy update: {e.error_count()} error(s)",
            details={"source": "memory_updates", "operation": "apply_delta", "field": "communication_strategy"},
        ) from e


def apply_delta(record: MemoryRecord, delta: MemoryDelta) -> MemoryRecord:
    """Return a copy of ``record`` with ``delta`` applied.

    The input record is left untouched, so a delta that fails validation
    half way leaves nothing behind.

    Raises:
        MemoryValidationError: If any part of the delta breaks a model invariant
    """
    updated = record.model_copy(deep=True)
    if delta.is_empty:
        return updated

    if delta.profile:
        updated.update_profile(**delta.profile)

    semantic = updated.semantic
    semantic.preferences.extend(delta.preferences)
    semantic.habits.extend(delta.habits)
    semantic.significant_events.extend(delta.significant_events)
    semantic.skills.extend(delta.skills)
    for belief in delta.values_and_beliefs:
        if belief not in semantic.values_and_beliefs:
            semantic.values_and_beliefs.append(belief)

    actions = updated.action_state
    for task in delta.new_tasks:
        if actions.get_task(task.task_id) is None:
            actions.tasks.append(task)
    for change in delta.task_transitions:
        task = actions.get_task(change.task_id)
        if task is None:
            raise MemoryValidationError(
                f"Unknown task '{change.task_id}'",
                details={"source": "memory_updates", "operation": "apply_delta", "field": "task_transitions"},
            )
        task.transition(change.status)
    actions.plans.extend(delta.plans)
    actions.follow_ups.extend(delta.follow_ups)

    for hypothesis in delta.hypotheses:
        updated.add_hypothesis(hypothesis)
    if delta.communication_strategy:
        updated.strategic.communication_strategy = _merge_strategy(
            updated.strategic.communication_strategy, delta.communication_strategy
        )
    updated.strategic.self_reflections.extend(delta.reflections)

    updated.touch()
    return updated
