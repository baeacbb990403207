import asyncio
import json

import httpx
import pytest
from pydantic import SecretStr

from sentio.core.errors import (
    AuthenticationError,
    DeadlineExceededError,
    InvalidRequestError,
    InvalidResponseError,
    MaxRetriesExceededError,
    RateLimitedError,
    TransientError,
)
from sentio.core.retry import RetryPolicy
from sentio.infrastructure.generation import ChatCompletionsClient


def completion(content: str = "Hello there", **usage) -> dict:
    return {
        "id": "cmpl-1",
        "model": "test-model",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120, **usage},
    }


class Scripted:
    """Mock transport handler that replays queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_client(settings, handler, clock: FakeClock | None = None, **policy) -> ChatCompletionsClient:
    clock = clock or FakeClock()
    retry_policy = RetryPolicy(
        max_attempts=policy.get("max_attempts", settings.generation.max_attempts),
        base_delay=1.0,
        max_delay=8.0,
        jitter=0.0,
    )
    return ChatCompletionsClient(
        settings.generation,
        retry_policy=retry_policy,
        transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
        clock=clock,
    )


def run_generate(client: ChatCompletionsClient, deadline: float | None = None):
    async def scenario():
        try:
            request = client.build_request("You are helpful.", "Hi")
            return await client.generate(request, deadline=deadline)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_successful_call_sends_chat_payload(settings):
    handler = Scripted(httpx.Response(200, json=completion()))
    client = make_client(settings, handler)

    response = run_generate(client)

    assert response.content == "Hello there"
    assert response.response_id == "cmpl-1"
    assert response.usage.total_tokens == 120
    assert response.attempts == 1
    assert response.cost_usd == pytest.approx((100 * 0.5 + 20 * 1.5) / 1000)

    sent = handler.requests[0]
    assert sent.url == "https://llm.test/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer test-key"
    body = json.loads(sent.content)
    assert body["model"] == "test-model"
    assert body["messages"] == [
        {"role": "system", "content": "You are helpful."},
        {"role": "user", "content": "Hi"},
    ]


def test_rate_limit_waits_for_retry_after(settings):
    clock = FakeClock()
    handler = Scripted(
        httpx.Response(429, headers={"retry-after": "2"}, json={"error": "slow down"}),
        httpx.Response(200, json=completion()),
    )
    client = make_client(settings, handler, clock)

    response = run_generate(client)

    assert response.attempts == 2
    assert len(handler.requests) == 2
    assert clock.sleeps == [2.0]
    assert clock.sleeps[0] >= 2


def test_authentication_failure_is_not_retried(settings):
    clock = FakeClock()
    handler = Scripted(httpx.Response(401, json={"error": "bad key"}))
    client = make_client(settings, handler, clock)

    with pytest.raises(AuthenticationError) as exc_info:
        run_generate(client)

    assert len(handler.requests) == 1
    assert clock.sleeps == []
    assert exc_info.value.status_code == 401
    assert not exc_info.value.retryable


def test_other_client_errors_are_invalid_requests(settings):
    handler = Scripted(httpx.Response(422, json={"error": "bad temperature"}))
    client = make_client(settings, handler)

    with pytest.raises(InvalidRequestError):
        run_generate(client)
    assert len(handler.requests) == 1


def test_server_errors_exhaust_retries(settings):
    clock = FakeClock()
    handler = Scripted(httpx.Response(503, text="overloaded"))
    client = make_client(settings, handler, clock)

    with pytest.raises(MaxRetriesExceededError) as exc_info:
        run_generate(client)

    assert len(handler.requests) == 3
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, TransientError)
    assert clock.sleeps == [1.0, 2.0]


def test_single_attempt_policy_fails_without_sleeping(settings):
    clock = FakeClock()
    handler = Scripted(httpx.Response(503, text="overloaded"))
    client = make_client(settings, handler, clock, max_attempts=1)

    with pytest.raises(MaxRetriesExceededError) as exc_info:
        run_generate(client)

    assert len(handler.requests) == 1
    assert exc_info.value.attempts == 1
    assert clock.sleeps == []


def test_timeouts_are_transient(settings):
    handler = Scripted(httpx.ReadTimeout("read timed out"))
    client = make_client(settings, handler, max_attempts=2)

    with pytest.raises(MaxRetriesExceededError) as exc_info:
        run_generate(client)

    assert len(handler.requests) == 2
    last = exc_info.value.last_error
    assert isinstance(last, TransientError)
    assert last.timed_out


def test_rate_limit_then_exhaustion_wraps_last_error(settings):
    handler = Scripted(httpx.Response(429, json={"error": "slow down"}))
    client = make_client(settings, handler, max_attempts=2)

    with pytest.raises(MaxRetriesExceededError) as exc_info:
        run_generate(client)

    assert isinstance(exc_info.value.last_error, RateLimitedError)
    assert exc_info.value.last_error.retry_after is None


def test_retry_is_skipped_when_it_would_overrun_deadline(settings):
    clock = FakeClock()
    handler = Scripted(
        httpx.Response(429, headers={"retry-after": "30"}, json={}),
        httpx.Response(200, json=completion()),
    )
    client = make_client(settings, handler, clock)

    with pytest.raises(DeadlineExceededError) as exc_info:
        run_generate(client, deadline=clock.now + 10)

    assert len(handler.requests) == 1
    assert clock.sleeps == []
    assert isinstance(exc_info.value.last_error, RateLimitedError)


def test_expired_deadline_prevents_any_call(settings):
    clock = FakeClock()
    handler = Scripted(httpx.Response(200, json=completion()))
    client = make_client(settings, handler, clock)

    with pytest.raises(DeadlineExceededError):
        run_generate(client, deadline=clock.now - 1)
    assert handler.requests == []


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json={"choices": [{"message": {"content": None}}]}),
    ],
)
def test_unparseable_success_is_invalid_response(settings, response):
    client = make_client(settings, Scripted(response))

    with pytest.raises(InvalidResponseError):
        run_generate(client)


def test_build_request_layers_overrides(settings):
    client = make_client(settings, Scripted(httpx.Response(200, json=completion())))

    request = client.build_request("sys", "turn", {"temperature": 0.1, "max_tokens": 64})

    assert request.parameters.model == "test-model"
    assert request.parameters.temperature == 0.1
    assert request.parameters.max_tokens == 64
    assert request.parameters.top_p == settings.generation.top_p
    with pytest.raises(InvalidRequestError):
        client.build_request("sys", "turn", {"temperature": 5})
    with pytest.raises(InvalidRequestError):
        client.build_request("sys", "turn", {"frequency": 1})
    asyncio.run(client.aclose())


def test_missing_api_key_is_rejected(settings):
    generation = settings.generation.model_copy(update={"api_key": SecretStr("")})

    with pytest.raises(AuthenticationError):
        ChatCompletionsClient(generation)
