"""Logger factory used by every module."""

import structlog
from structlog.typing import FilteringBoundLogger


def get_logger(name: str | None = None) -> FilteringBoundLogger:
    """Return a structlog logger tagged with the module that asked for it.

    Safe to call at import time: the logger is resolved lazily, so it picks
    up whatever ``setup_logging`` configures later.
    """
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name, component=name.removeprefix("sentio."))
