"""Context captured when an error crosses a component boundary."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .base import ApplicationError
from .logging import get_log_context


def _trace_id() -> str:
    # Errors raised inside a workflow share its id, so they line up with the
    # rest of that workflow's log lines.
    return str(get_log_context().get("workflow_id") or uuid4())


@dataclass
class ErrorContext:
    error: BaseException
    function: str
    trace_id: str = field(default_factory=_trace_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "function": self.function,
            "error_type": type(self.error).__name__,
            "error_message": str(self.error),
            "trace_id": self.trace_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if isinstance(self.error, ApplicationError):
            result.update(self.error.log_fields())

        cause = self.error.__cause__
        if cause is not None:
            result["cause"] = f"{type(cause).__name__}: {cause}"
        return result
