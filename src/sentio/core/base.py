"""Error primitives shared by every component.

Codes are grouped by the part of the engine that raises them; the code of
the error that stopped a workflow is what ends up in ``FailureInfo``.
"""

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from logfire.integrations.pydantic import PluginSettings
from pydantic import BaseModel, Field, field_serializer


class ErrorLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def to_logging_level(self) -> int:
        return logging.getLevelNamesMapping()[self.name]


class ErrorCode(str, Enum):
    """Stable, dotted identifiers; the prefix names the failing component."""

    CONFIG_INVALID = "config.invalid"

    # Memory store and model
    DB_RECORD_NOT_FOUND = "memory.not_found"
    DB_CONNECTION = "memory.unavailable"
    DB_VALIDATION = "memory.invalid"

    # Prompt catalog
    PROMPT_NOT_FOUND = "prompt.not_found"
    PROMPT_CATALOG_INVALID = "prompt.catalog_invalid"

    # Generation provider
    PROCESSING_FAILED = "generation.failed"
    AUTHENTICATION_FAILED = "generation.unauthorized"
    RATE_LIMITED = "generation.rate_limited"
    TRANSIENT_FAILURE = "generation.transient"
    INVALID_REQUEST = "generation.invalid_request"
    INVALID_RESPONSE = "generation.invalid_response"
    DEADLINE_EXCEEDED = "generation.deadline_exceeded"
    MAX_RETRIES_EXCEEDED = "generation.retries_exhausted"

    # Outbound delivery
    SEND_FAILED = "delivery.failed"


class ErrorDetails(BaseModel, plugin_settings=PluginSettings(logfire={"record": "all"})):
    """Structured context attached to every ApplicationError."""

    source: str = Field(description="Component that raised the error")
    operation: str = Field(description="Operation in progress")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_serializer("timestamp")
    def serialize_timestamp(self, timestamp: datetime) -> str:
        return timestamp.isoformat()


class ValidationErrorDetails(ErrorDetails):
    field: str | None = Field(None, description="Offending field, dotted for nested values")
    actual_value: Any = None
    constraint: str | None = Field(None, description="Rule that was broken")


class ResourceErrorDetails(ErrorDetails):
    resource_type: str = Field(description="memory_record, prompt, ...")
    resource_id: str | None = None


class ServiceErrorDetails(ErrorDetails):
    """Context for a call to something outside the process."""

    service_name: str
    endpoint: str | None = None
    status_code: int | None = None
    request_id: str | None = None
    latency_ms: float | None = None


class DatabaseErrorDetails(ServiceErrorDetails):
    query_type: str | None = Field(None, description="get, upsert, append_interaction, ...")
    user_id: str | None = None


class AIServiceErrorDetails(ServiceErrorDetails):
    model_name: str | None = None
    attempt: int | None = Field(None, description="Zero-based attempt that produced the error")
    max_tokens: int | None = None
    temperature: float | None = None


class DeliveryErrorDetails(ServiceErrorDetails):
    recipient: str | None = None


class ApplicationError(Exception):
    """Base class for all errors the engine raises on purpose.

    ``retryable`` tells callers whether repeating the same operation
    unchanged could succeed.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        level: ErrorLevel = ErrorLevel.ERROR,
        details: ErrorDetails | dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.level = level

        if isinstance(details, ErrorDetails):
            self.details = details
        else:
            fields = dict(details or {})
            source = fields.pop("source", "unknown")
            operation = fields.pop("operation", "unknown")
            # Plain dicts carry validation context (field, constraint, ...)
            self.details = ValidationErrorDetails(source=source, operation=operation, **fields)

        super().__init__(message)

    def log_fields(self) -> dict[str, Any]:
        """Flat key/value view for structured log lines."""
        fields: dict[str, Any] = {
            "error_code": self.code.value,
            "error_level": self.level.value,
            "retryable": self.retryable,
        }
        for key, value in self.details.model_dump(mode="json", exclude_none=True).items():
            fields[f"details.{key}"] = value
        return fields
