import asyncio
import json

import httpx
import pytest

from sentio.core.errors import (
    AuthenticationError,
    InvalidRequestError,
    NotFoundError,
    RateLimitedError,
)
from sentio.core.retry import RetryPolicy
from sentio.domain.models import (
    Disposition,
    FailureStage,
    InboundMessage,
    MemoryRecord,
    MessageDirection,
    Task,
    WorkflowStage,
)
from sentio.domain.models.utils import utc_now
from sentio.infrastructure.generation import ChatCompletionsClient
from sentio.infrastructure.repositories import FileMemoryStore
from sentio.services.memory_updates import NoUpdateExtractor
from sentio.services.workflow import WorkflowOrchestrator, classify_failure
from tests.fakes import (
    CommitFailingStore,
    FakeGenerator,
    InMemoryStore,
    RecordingSender,
    UnavailableStore,
)


def inbound(sender: str = "a@x.com", body: str = "Hi", subject: str = "Hello again") -> InboundMessage:
    return InboundMessage(sender_address=sender, subject=subject, body_text=body, message_id="<in-1@x.com>")


def make_orchestrator(settings, catalog, store=None, generator=None, sender=None, **kwargs) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        store=store if store is not None else InMemoryStore(),
        catalog=catalog,
        generator=generator or FakeGenerator(),
        sender=sender or RecordingSender(),
        settings=settings,
        **kwargs,
    )


def test_reply_is_sent_and_both_turns_committed(settings, catalog):
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    assert result.succeeded
    assert result.stage is WorkflowStage.COMMITTED
    assert len(sender.sent) == 1
    assert "Hello" in sender.sent[0].body
    assert sender.sent[0].to == "a@x.com"
    assert sender.sent[0].subject == "Re: Hello again"
    assert sender.sent[0].in_reply_to == "<in-1@x.com>"

    record = asyncio.run(store.get("a@x.com"))
    assert [log.direction for log in record.episodic] == [MessageDirection.INBOUND, MessageDirection.OUTBOUND]
    assert result.log_ids == [log.log_id for log in record.episodic]
    outbound = record.episodic[1]
    assert outbound.message_id == result.reply_message_id
    assert outbound.cost is not None and outbound.cost.total_tokens == 15
    assert outbound.model_version == "fake-model"
    assert not outbound.send_failed


def test_first_contact_with_file_store(settings, catalog):
    store = FileMemoryStore(settings.store.directory)
    sender = RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, sender=sender)
    started = utc_now()

    result = asyncio.run(orchestrator.process(inbound(sender="A@X.com ", body="Hi")))

    record = asyncio.run(store.get("a@x.com"))
    assert result.succeeded
    assert len(sender.sent) == 1
    assert len(record.episodic) == 2
    assert record.updated_at > started


def test_prompt_is_rendered_from_memory(settings, catalog):
    store, generator = InMemoryStore(), FakeGenerator()
    record = MemoryRecord(user_id="a@x.com")
    record.update_profile(name="Ada")
    record.action_state.tasks.append(Task(description="book train tickets"))
    asyncio.run(store.upsert(record))
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=generator)

    asyncio.run(orchestrator.process(inbound(body="Any news?")))

    request = generator.requests[0]
    assert "Ada" in request.instruction
    assert "book train tickets" in request.instruction
    assert "Any news?" in request.turn


def test_strategy_variant_selects_prompt(settings, catalog):
    store, generator = InMemoryStore(), FakeGenerator()
    record = MemoryRecord(user_id="a@x.com")
    record.strategic.communication_strategy.prompt_variant = "concise"
    asyncio.run(store.upsert(record))
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=generator)

    asyncio.run(orchestrator.process(inbound()))

    assert "under five sentences" in generator.requests[0].instruction


def test_unknown_variant_falls_back_to_default(settings, catalog):
    store, generator = InMemoryStore(), FakeGenerator()
    record = MemoryRecord(user_id="a@x.com")
    record.strategic.communication_strategy.prompt_variant = "pirate"
    asyncio.run(store.upsert(record))
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=generator)

    result = asyncio.run(orchestrator.process(inbound()))

    assert result.succeeded
    assert "attentive personal correspondent" in generator.requests[0].instruction


def test_structured_reply_updates_memory(settings, catalog):
    content = json.dumps(
        {
            "reply": "Enjoy the tea!",
            "reasoning": "User mentioned tea",
            "tags": ["tea"],
            "memory_updates": {
                "profile": {"city": "Leeds"},
                "preferences": [{"category": "drink", "value": "green tea", "confidence": 0.8}],
                "new_tasks": [{"description": "ask about the trip"}],
            },
        }
    )
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=FakeGenerator(content), sender=sender)

    result = asyncio.run(orchestrator.process(inbound(body="I love green tea")))

    record = asyncio.run(store.get("a@x.com"))
    assert result.succeeded
    assert sender.sent[0].body == "Enjoy the tea!"
    assert record.profile.city == "Leeds"
    assert [p.value for p in record.semantic.preferences] == ["green tea"]
    assert [t.description for t in record.action_state.tasks] == ["ask about the trip"]
    assert record.episodic[1].reasoning_snapshot == "User mentioned tea"
    assert record.episodic[0].tags == ["tea"]


def test_out_of_range_update_is_dropped_but_reply_sent(settings, catalog):
    content = json.dumps(
        {"reply": "Noted.", "memory_updates": {"preferences": [{"category": "c", "value": "v", "confidence": 3}]}}
    )
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=FakeGenerator(content), sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    record = asyncio.run(store.get("a@x.com"))
    assert result.succeeded
    assert record.semantic.preferences == []
    assert len(record.episodic) == 2


def test_invalid_task_transition_keeps_interactions(settings, catalog):
    content = json.dumps(
        {"reply": "Done?", "memory_updates": {"task_transitions": [{"task_id": "missing", "status": "completed"}]}}
    )
    store = InMemoryStore()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=FakeGenerator(content))

    result = asyncio.run(orchestrator.process(inbound()))

    assert result.succeeded
    assert len(asyncio.run(store.get("a@x.com")).episodic) == 2


def test_repeated_timeouts_send_nothing_and_record_failure(settings, catalog):
    async def no_wait(_seconds: float) -> None:
        return None

    def always_timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    generator = ChatCompletionsClient(
        settings.generation,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0),
        transport=httpx.MockTransport(always_timeout),
        sleep=no_wait,
    )
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=generator, sender=sender)

    async def scenario():
        try:
            return await orchestrator.process(inbound())
        finally:
            await generator.aclose()

    result = asyncio.run(scenario())

    assert sender.sent == []
    assert result.stage is WorkflowStage.FAILED
    assert result.failure.stage is FailureStage.TIMEOUT
    assert result.failure.disposition is Disposition.RETRY_LATER
    record = asyncio.run(store.get("a@x.com"))
    assert len(record.episodic) == 1
    entry = record.episodic[0]
    assert entry.failure is not None and entry.failure.stage == "timeout"
    assert entry.direction is MessageDirection.INBOUND
    assert all(log.direction is not MessageDirection.OUTBOUND for log in record.episodic)


def test_workflow_deadline_cancels_generation(settings, catalog):
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=FakeGenerator(delay=5), sender=sender)

    result = asyncio.run(orchestrator.process(inbound(), deadline_seconds=0.05))

    assert sender.sent == []
    assert result.failure.stage is FailureStage.TIMEOUT
    assert len(asyncio.run(store.get("a@x.com")).episodic) == 1


def test_zero_deadline_fails_before_generation(settings, catalog):
    store, generator, sender = InMemoryStore(), FakeGenerator(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=generator, sender=sender)

    result = asyncio.run(orchestrator.process(inbound(), deadline_seconds=0))

    assert generator.requests == []
    assert sender.sent == []
    assert result.failure.stage is FailureStage.TIMEOUT
    assert result.failure.disposition is Disposition.RETRY_LATER


def test_sender_outside_allow_list_is_ignored(settings, catalog):
    settings.workflow.allowed_senders = ["bob@x.com"]
    store, generator, sender = InMemoryStore(), FakeGenerator(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=generator, sender=sender)

    result = asyncio.run(orchestrator.process(inbound(sender="eve@x.com")))

    assert result.ignored
    assert not result.succeeded
    assert result.stage is WorkflowStage.IGNORED
    assert result.failure is None
    assert result.log_ids == []
    assert generator.requests == []
    assert sender.sent == []
    with pytest.raises(NotFoundError):
        asyncio.run(store.get("eve@x.com"))


def test_allowed_sender_matches_regardless_of_case(settings, catalog):
    settings.workflow.allowed_senders = ["bob@x.com"]
    sender = RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, sender=sender)

    result = asyncio.run(orchestrator.process(inbound(sender="Bob@X.com")))

    assert result.succeeded
    assert len(sender.sent) == 1


@pytest.mark.parametrize(
    ("error", "disposition"),
    [
        (AuthenticationError("bad key"), Disposition.TERMINAL),
        (InvalidRequestError("bad request"), Disposition.TERMINAL),
        (RateLimitedError("slow down"), Disposition.RETRY_LATER),
    ],
)
def test_generation_failures_produce_no_reply(settings, catalog, error, disposition):
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(
        settings, catalog, store=store, generator=FakeGenerator(errors=[error]), sender=sender
    )

    result = asyncio.run(orchestrator.process(inbound()))

    assert sender.sent == []
    assert result.failure.stage is FailureStage.GENERATE
    assert result.failure.disposition is disposition
    assert result.failure.error_code == error.code.value
    assert result.usage is None
    record = asyncio.run(store.get("a@x.com"))
    assert len(record.episodic) == 1
    assert record.episodic[0].failure.error_code == error.code.value


def test_send_failure_still_logs_usage(settings, catalog):
    store, sender = InMemoryStore(), RecordingSender(fail_with="mailbox unavailable")
    orchestrator = make_orchestrator(settings, catalog, store=store, sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    assert result.stage is WorkflowStage.FAILED
    assert result.failure.stage is FailureStage.SEND
    assert result.failure.disposition is Disposition.TERMINAL
    assert result.reply_message_id is None
    assert result.cost_usd == pytest.approx(0.002)
    record = asyncio.run(store.get("a@x.com"))
    outbound = record.episodic[-1]
    assert outbound.send_failed
    assert outbound.cost.total_tokens == 15
    assert outbound.failure.stage == "send"


def test_missing_prompt_is_terminal(settings, catalog):
    settings.workflow.prompt_category = "no_such_category"
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    assert sender.sent == []
    assert result.failure.stage is FailureStage.RENDER
    assert result.failure.disposition is Disposition.TERMINAL


def test_unavailable_store_is_retry_now(settings, catalog):
    sender = RecordingSender()
    generator = FakeGenerator()
    orchestrator = make_orchestrator(settings, catalog, store=UnavailableStore(), generator=generator, sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    assert result.failure.stage is FailureStage.LOAD
    assert result.failure.disposition is Disposition.RETRY_NOW
    assert generator.requests == []
    assert sender.sent == []
    assert result.log_ids == []


def test_commit_failure_does_not_unsend_reply(settings, catalog):
    sender = RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=CommitFailingStore(), sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    assert len(sender.sent) == 1
    assert result.reply_message_id is not None
    assert result.failure.stage is FailureStage.COMMIT
    assert result.failure.disposition is Disposition.RETRY_NOW


def test_empty_generation_is_not_sent(settings, catalog):
    store, sender = InMemoryStore(), RecordingSender()
    orchestrator = make_orchestrator(settings, catalog, store=store, generator=FakeGenerator("   "), sender=sender)

    result = asyncio.run(orchestrator.process(inbound()))

    assert sender.sent == []
    assert result.failure.stage is FailureStage.COMPOSE
    entry = asyncio.run(store.get("a@x.com")).episodic[0]
    assert entry.cost is not None


def test_same_user_workflows_are_serialized(settings, catalog):
    store = InMemoryStore()
    active: list[str] = []
    overlaps: list[int] = []

    class TrackingGenerator(FakeGenerator):
        async def generate(self, request, timeout=None, deadline=None):
            active.append(request.request_id)
            overlaps.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(request.request_id)
            return await super().generate(request, timeout, deadline)

    orchestrator = make_orchestrator(settings, catalog, store=store, generator=TrackingGenerator())

    async def scenario():
        return await asyncio.gather(*(orchestrator.process(inbound(body=f"msg {i}")) for i in range(5)))

    results = asyncio.run(scenario())

    assert all(result.succeeded for result in results)
    assert max(overlaps) == 1
    assert len(asyncio.run(store.get("a@x.com")).episodic) == 10
    assert len(orchestrator.leases) == 0


def test_different_users_run_in_parallel(settings, catalog):
    active: list[str] = []
    overlaps: list[int] = []

    class TrackingGenerator(FakeGenerator):
        async def generate(self, request, timeout=None, deadline=None):
            active.append(request.request_id)
            overlaps.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(request.request_id)
            return await super().generate(request, timeout, deadline)

    orchestrator = make_orchestrator(settings, catalog, generator=TrackingGenerator())

    async def scenario():
        return await asyncio.gather(*(orchestrator.process(inbound(sender=f"u{i}@x.com")) for i in range(4)))

    results = asyncio.run(scenario())

    assert all(result.succeeded for result in results)
    assert max(overlaps) > 1


def test_custom_extractor_controls_memory_updates(settings, catalog):
    content = json.dumps({"reply": "Hi", "memory_updates": {"profile": {"name": "Ada"}}})
    store = InMemoryStore()
    orchestrator = make_orchestrator(
        settings, catalog, store=store, generator=FakeGenerator(content), extractor=NoUpdateExtractor()
    )

    asyncio.run(orchestrator.process(inbound()))

    assert asyncio.run(store.get("a@x.com")).profile.name is None


def test_classify_failure():
    assert classify_failure(TimeoutError()) == (FailureStage.TIMEOUT, Disposition.RETRY_LATER)
    assert classify_failure(AuthenticationError("nope")) == (None, Disposition.TERMINAL)
