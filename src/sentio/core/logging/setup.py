"""Centralized logging setup with Logfire integration.

Logfire is only wired into the processor chain when a token is configured;
without one the engine logs to stderr through structlog alone, keeping
stdout free for command output.
"""

import logging
import sys
from typing import TYPE_CHECKING

import logfire
import structlog
from structlog.processors import CallsiteParameter, CallsiteParameterAdder
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from sentio.core.config import LoggingSettings

_SECRET_KEYS = frozenset({"api_key", "password", "authorization", "token"})


def add_error_context(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add the error type name when an exception object is logged."""
    if "error" in event_dict and isinstance(event_dict["error"], BaseException):
        event_dict["error_type"] = type(event_dict["error"]).__name__

    return event_dict


def redact_secrets(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mask values of keys that commonly hold credentials."""
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = "***"
    return event_dict


def setup_logging(settings: "LoggingSettings") -> None:
    """Set up application-wide logging with structlog and optional Logfire.

    Args:
        settings: Logging section of the application settings
    """
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    use_logfire = settings.logfire_token is not None
    if use_logfire:
        logfire.configure(
            service_name=settings.service_name,
            token=settings.logfire_token.get_secret_value(),
            send_to_logfire="if-token-present",
        )

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        CallsiteParameterAdder(
            parameters=[
                CallsiteParameter.FILENAME,
                CallsiteParameter.LINENO,
                CallsiteParameter.FUNC_NAME,
            ]
        ),
        add_error_context,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    renderer: Processor
    if settings.json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    processors: list[Processor] = [*shared]
    if settings.json_format:
        processors.append(structlog.processors.format_exc_info)
    if use_logfire:
        # Must come before the final renderer
        processors.append(logfire.StructlogProcessor())
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        # PrintLogger avoids double logging with the standard library
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Standard library loggers (httpx, neo4j) go through the same processors
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared,
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

