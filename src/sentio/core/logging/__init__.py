"""Structured logging module.

This module provides utilities for structured logging using structlog,
optionally forwarded to logfire.
"""

from .base import get_logger
from .context import (
    clear_log_context,
    get_log_context,
    log_context,
    update_log_context,
)
from .setup import setup_logging

__all__ = [
    "clear_log_context",
    "get_log_context",
    "get_logger",
    "log_context",
    "setup_logging",
    "update_log_context",
]
