"""Specific error types for the Sentio engine."""

from .base import (
    AIServiceErrorDetails,
    ApplicationError,
    DatabaseErrorDetails,
    DeliveryErrorDetails,
    ErrorCode,
    ErrorDetails,
    ErrorLevel,
    ResourceErrorDetails,
    ValidationErrorDetails,
)


class ConfigurationError(ApplicationError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.CONFIG_INVALID,
            level=ErrorLevel.CRITICAL,
            details=details,
        )


# Persistence


class NotFoundError(ApplicationError):
    """No memory record exists for the requested user.

    This is an expected outcome (first contact), so it is logged quietly.
    """

    def __init__(self, user_id: str, details: ErrorDetails | None = None):
        self.user_id = user_id
        super().__init__(
            message=f"No memory record for user '{user_id}'",
            code=ErrorCode.DB_RECORD_NOT_FOUND,
            level=ErrorLevel.DEBUG,
            details=details
            or ResourceErrorDetails(
                source="memory_store",
                operation="get",
                resource_id=user_id,
                resource_type="memory_record",
            ),
        )


class StoreUnavailableError(ApplicationError):
    """The persistence backend could not be reached or failed mid-operation."""

    retryable = True

    def __init__(self, message: str, details: DatabaseErrorDetails | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.DB_CONNECTION,
            level=ErrorLevel.ERROR,
            details=details
            or DatabaseErrorDetails(source="memory_store", operation="unknown", service_name="memory_store"),
        )


class MemoryValidationError(ApplicationError):
    """Memory data violates the schema or a model invariant."""

    def __init__(self, message: str, details: ValidationErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.DB_VALIDATION,
            level=ErrorLevel.ERROR,
            details=details,
        )


# Prompt catalog


class PromptNotFoundError(ApplicationError):
    """No template is registered under the requested (category, variant) key."""

    def __init__(self, category: str, variant: str):
        self.category = category
        self.variant = variant
        super().__init__(
            message=f"Prompt '{category}.{variant}' not found",
            code=ErrorCode.PROMPT_NOT_FOUND,
            level=ErrorLevel.ERROR,
            details=ResourceErrorDetails(
                source="prompt_catalog",
                operation="render",
                resource_id=f"{category}.{variant}",
                resource_type="prompt_template",
            ),
        )


class PromptCatalogError(ApplicationError):
    """The prompt definitions file is missing or malformed."""

    def __init__(self, message: str, details: ErrorDetails | dict | None = None):
        super().__init__(
            message=message,
            code=ErrorCode.PROMPT_CATALOG_INVALID,
            level=ErrorLevel.CRITICAL,
            details=details,
        )


# Generation


class GenerationError(ApplicationError):
    """Base class for failures of a generation call."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.PROCESSING_FAILED,
        level: ErrorLevel = ErrorLevel.ERROR,
        details: AIServiceErrorDetails | None = None,
    ):
        super().__init__(
            message=message,
            code=code,
            level=level,
            details=details
            or AIServiceErrorDetails(source="generation_client", operation="generate", service_name="generation"),
        )

    @property
    def status_code(self) -> int | None:
        return getattr(self.details, "status_code", None)


class AuthenticationError(GenerationError):
    """Provider rejected our credentials (401/403). Never retried."""

    def __init__(self, message: str, details: AIServiceErrorDetails | None = None):
        super().__init__(message, code=ErrorCode.AUTHENTICATION_FAILED, details=details)


class RateLimitedError(GenerationError):
    """Provider returned 429. Retried after the server-provided delay when one is given."""

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        details: AIServiceErrorDetails | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, code=ErrorCode.RATE_LIMITED, level=ErrorLevel.WARNING, details=details)


class TransientError(GenerationError):
    """5xx, timeout or connection failure. Retried with exponential backoff."""

    retryable = True

    def __init__(
        self,
        message: str,
        timed_out: bool = False,
        details: AIServiceErrorDetails | None = None,
    ):
        self.timed_out = timed_out
        super().__init__(message, code=ErrorCode.TRANSIENT_FAILURE, level=ErrorLevel.WARNING, details=details)


class InvalidRequestError(GenerationError):
    """Any other 4xx. Never retried."""

    def __init__(self, message: str, details: AIServiceErrorDetails | None = None):
        super().__init__(message, code=ErrorCode.INVALID_REQUEST, details=details)


class InvalidResponseError(GenerationError):
    """A 2xx response whose body could not be interpreted."""

    def __init__(self, message: str, details: AIServiceErrorDetails | None = None):
        super().__init__(message, code=ErrorCode.INVALID_RESPONSE, details=details)


class DeadlineExceededError(GenerationError):
    """The next attempt would not fit into the caller's remaining time budget."""

    def __init__(
        self,
        message: str,
        last_error: GenerationError | None = None,
        attempts: int = 0,
        details: AIServiceErrorDetails | None = None,
    ):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message, code=ErrorCode.DEADLINE_EXCEEDED, details=details)


class MaxRetriesExceededError(GenerationError):
    """All attempts failed with retryable errors; wraps the last one."""

    def __init__(self, last_error: GenerationError, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Generation failed after {attempts} attempts: {last_error.message}",
            code=ErrorCode.MAX_RETRIES_EXCEEDED,
            details=last_error.details if isinstance(last_error.details, AIServiceErrorDetails) else None,
        )


# Delivery


class SendError(ApplicationError):
    """The outbound sender could not deliver a reply."""

    def __init__(self, reason: str, recipient: str | None = None, details: DeliveryErrorDetails | None = None):
        self.reason = reason
        super().__init__(
            message=f"Failed to send message: {reason}",
            code=ErrorCode.SEND_FAILED,
            level=ErrorLevel.ERROR,
            details=details
            or DeliveryErrorDetails(source="sender", operation="send", service_name="smtp", recipient=recipient),
        )
