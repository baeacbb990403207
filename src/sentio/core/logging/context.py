"""Logging context utilities for structured logging.

Workflow-scoped values (workflow id, user id, current stage) are kept in
structlog's contextvars so every log line emitted while a workflow runs
carries them, including lines from the store and the generation client.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


def get_log_context() -> dict[str, Any]:
    """Get the current logging context.

    Returns:
        Dict containing the current logging context
    """
    return dict(structlog.contextvars.get_contextvars())


def update_log_context(key: str, value: Any) -> None:
    """Update a single key in the logging context.

    Args:
        key: Context key to update
        value: Value to set
    """
    structlog.contextvars.bind_contextvars(**{key: value})


def clear_log_context() -> None:
    """Clear the current logging context."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind values to the logging context for the duration of a block.

    Previous values of the same keys are restored on exit, so nested
    blocks (a workflow inside a batch, say) do not clobber each other.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield
