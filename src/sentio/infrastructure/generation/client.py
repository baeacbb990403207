"""Chat-completions generation client.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint (DeepSeek by
default). One ``generate`` call moves through Building -> Sending and ends
Succeeded or Failed, passing through Retrying for rate limits and
transient faults:

- 401/403: ``AuthenticationError``, never retried
- 429: ``RateLimitedError``, retried after ``Retry-After`` when given
- 408, 5xx, timeouts, connection errors: ``TransientError``, retried with
  exponential backoff plus jitter
- any other 4xx: ``InvalidRequestError``, never retried

When retryable failures use up every attempt the last one is wrapped in
``MaxRetriesExceededError``. A retry that would not fit in the caller's
deadline is not attempted (``DeadlineExceededError``).
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import ValidationError

from sentio.core.base import AIServiceErrorDetails, ErrorLevel
from sentio.core.config import GenerationSettings
from sentio.core.decorators import with_error_handling
from sentio.core.errors import (
    AuthenticationError,
    DeadlineExceededError,
    GenerationError,
    InvalidRequestError,
    InvalidResponseError,
    MaxRetriesExceededError,
    RateLimitedError,
    TransientError,
)
from sentio.core.logging import get_logger
from sentio.core.retry import RetryPolicy, parse_retry_after
from sentio.domain.models import GenerationParameters, GenerationRequest, GenerationResponse, TokenUsage

logger = get_logger(__name__)

COMPLETIONS_PATH = "/chat/completions"
_OVERRIDABLE = frozenset(GenerationParameters.model_fields)


class ChatCompletionsClient:
    """Generation client for OpenAI-compatible chat-completions APIs.

    Holds no per-call state; the underlying ``httpx.AsyncClient`` keeps a
    connection pool that concurrent workflows share.
    """

    @with_error_handling(error_level=ErrorLevel.ERROR)
    def __init__(
        self,
        settings: GenerationSettings,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Provider endpoint, defaults and retry settings
            retry_policy: Overrides the policy derived from ``settings``
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
            sleep: Coroutine used to wait between attempts
            clock: Monotonic clock the ``deadline`` argument is measured on

        Raises:
            AuthenticationError: If no API key is configured
        """
        api_key = settings.api_key.get_secret_value()
        if not api_key:
            raise AuthenticationError(
                "Generation API key not found in settings",
                details=AIServiceErrorDetails(
                    source="generation_client",
                    operation="initialization",
                    service_name="generation",
                    endpoint=settings.base_url,
                ),
            )

        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    @property
    def default_parameters(self) -> GenerationParameters:
        return GenerationParameters(
            model=self.settings.model,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            top_p=self.settings.top_p,
        )

    def build_request(self, instruction: str, turn: str, overrides: dict[str, Any] | None = None) -> GenerationRequest:
        """Layer caller overrides on the configured defaults.

        Raises:
            InvalidRequestError: On unknown or out-of-range parameters
        """
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        unknown = set(overrides) - _OVERRIDABLE
        if unknown:
            raise InvalidRequestError(
                f"Unknown generation parameter(s): {', '.join(sorted(unknown))}",
                details=self._details("build_request"),
            )
        try:
            parameters = self.default_parameters.model_copy(update=overrides)
            parameters = GenerationParameters.model_validate(parameters.model_dump())
        except ValidationError as e:
            raise InvalidRequestError(
                f"Invalid generation parameters: {e.error_count()} error(s)",
                details=self._details("build_request"),
            ) from e
        return GenerationRequest(instruction=instruction, turn=turn, parameters=parameters)

    def _details(
        self,
        operation: str,
        request: GenerationRequest | None = None,
        status_code: int | None = None,
        attempt: int | None = None,
        latency_ms: float | None = None,
    ) -> AIServiceErrorDetails:
        return AIServiceErrorDetails(
            source="generation_client",
            operation=operation,
            service_name="generation",
            endpoint=f"{self.settings.base_url}{COMPLETIONS_PATH}",
            status_code=status_code,
            request_id=request.request_id if request else None,
            latency_ms=latency_ms,
            model_name=request.parameters.model if request else self.settings.model,
            attempt=attempt,
            max_tokens=request.parameters.max_tokens if request else None,
            temperature=request.parameters.temperature if request else None,
        )

    def _classify(
        self, response: httpx.Response, request: GenerationRequest, attempt: int, latency_ms: float
    ) -> GenerationError:
        status = response.status_code
        details = self._details("generate", request, status, attempt, latency_ms)
        body = response.text[:200]

        if status in (401, 403):
            return AuthenticationError(f"Provider rejected credentials (HTTP {status})", details=details)
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("retry-after"))
            return RateLimitedError(f"Rate limited by provider: {body}", retry_after=retry_after, details=details)
        if status == 408 or status >= 500:
            return TransientError(f"Provider error HTTP {status}: {body}", timed_out=status == 408, details=details)
        return InvalidRequestError(f"Provider refused request HTTP {status}: {body}", details=details)

    def _parse(
        self, response: httpx.Response, request: GenerationRequest, attempt: int, latency_ms: float
    ) -> GenerationResponse:
        try:
            data = response.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
            if not isinstance(content, str):
                raise TypeError("content is not a string")
            usage_data = data.get("usage") or {}
            usage = TokenUsage(
                prompt_tokens=usage_data.get("prompt_tokens", 0),
                completion_tokens=usage_data.get("completion_tokens", 0),
                total_tokens=usage_data.get(
                    "total_tokens",
                    usage_data.get("prompt_tokens", 0) + usage_data.get("completion_tokens", 0),
                ),
            )
        except (ValueError, KeyError, IndexError, TypeError, ValidationError) as e:
            raise InvalidResponseError(
                f"Unparseable provider response: {e}",
                details=self._details("generate", request, response.status_code, attempt, latency_ms),
            ) from e

        return GenerationResponse(
            request_id=request.request_id,
            response_id=str(data.get("id") or request.request_id),
            content=content,
            model=str(data.get("model") or request.parameters.model),
            usage=usage,
            cost_usd=self.cost_of(usage),
            attempts=attempt + 1,
            latency_ms=latency_ms,
            finish_reason=choice.get("finish_reason"),
        )

    def cost_of(self, usage: TokenUsage) -> float:
        return (
            usage.prompt_tokens * self.settings.prompt_price_per_1k_tokens
            + usage.completion_tokens * self.settings.completion_price_per_1k_tokens
        ) / 1000

    async def _attempt(self, request: GenerationRequest, attempt: int, timeout: float) -> GenerationResponse:
        started = self._clock()
        try:
            response = await self._client.post(COMPLETIONS_PATH, json=request.to_payload(), timeout=timeout)
        except httpx.TimeoutException as e:
            raise TransientError(
                f"Provider call timed out after {timeout:.1f}s",
                timed_out=True,
                details=self._details("generate", request, attempt=attempt),
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"Provider connection failed: {e}",
                details=self._details("generate", request, attempt=attempt),
            ) from e

        latency_ms = (self._clock() - started) * 1000
        if not response.is_success:
            raise self._classify(response, request, attempt, latency_ms)
        return self._parse(response, request, attempt, latency_ms)

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def generate(
        self,
        request: GenerationRequest,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> GenerationResponse:
        """Run the request, retrying rate limits and transient failures.

        Args:
            request: Request from ``build_request``
            timeout: Per-attempt timeout in seconds; defaults to the configured one
            deadline: Absolute time on this client's clock after which no
                attempt may start or run

        Raises:
            AuthenticationError, InvalidRequestError, InvalidResponseError:
                Fatal classifications, raised on the first occurrence
            MaxRetriesExceededError: Every attempt failed with a retryable error
            DeadlineExceededError: The next attempt would overrun ``deadline``
        """
        per_call = timeout or self.settings.timeout_seconds
        last_error: GenerationError | None = None
        attempt = 0

        while True:
            attempt_timeout = per_call
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise DeadlineExceededError(
                        "No time left for another generation attempt",
                        last_error=last_error,
                        attempts=attempt,
                        details=self._details("generate", request, attempt=attempt),
                    )
                attempt_timeout = min(per_call, remaining)

            try:
                response = await self._attempt(request, attempt, attempt_timeout)
            except GenerationError as e:
                if not e.retryable:
                    raise
                last_error = e
                attempt += 1
                if not self.retry_policy.has_attempts_left(attempt):
                    raise MaxRetriesExceededError(e, attempts=attempt) from e

                delay = self.retry_policy.backoff(attempt - 1)
                if isinstance(e, RateLimitedError) and e.retry_after is not None:
                    delay = e.retry_after
                if deadline is not None and self._clock() + delay >= deadline:
                    raise DeadlineExceededError(
                        f"Retry in {delay:.1f}s would overrun the deadline",
                        last_error=e,
                        attempts=attempt,
                        details=self._details("generate", request, attempt=attempt),
                    ) from e

                logger.warning(
                    "Generation attempt failed, retrying",
                    request_id=request.request_id,
                    attempt=attempt,
                    max_attempts=self.retry_policy.max_attempts,
                    delay=round(delay, 3),
                    error_code=e.code.value,
                    error=e.message,
                )
                await self._sleep(delay)
                continue

            if attempt:
                logger.info("Generation succeeded after retry", request_id=request.request_id, attempts=attempt + 1)
            logger.debug(
                "Generation completed",
                request_id=request.request_id,
                model=response.model,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                latency_ms=round(response.latency_ms, 1),
            )
            return response

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/models", timeout=min(10.0, self.settings.timeout_seconds))
        except httpx.HTTPError as e:
            logger.warning("Generation provider health check failed", error=str(e))
            return False
        return response.is_success

    async def aclose(self) -> None:
        await self._client.aclose()
