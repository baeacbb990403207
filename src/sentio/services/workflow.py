"""Per-message workflow.

One inbound message moves through::

    received -> memory_loaded -> prompt_rendered -> generating
             -> reply_composed -> sent -> committed

and may stop in ``failed`` from any stage. Mail from a sender outside
``workflow.allowed_senders`` stops at ``ignored`` before any of this runs.
Work for one user is serialized by a per-user lease held from loading
memory until the commit; different users run in parallel.

Failures are classified here and nowhere else:

- ``retry_now``: the store was unreachable
- ``retry_later``: rate limits, exhausted retries, timeouts
- ``terminal``: bad credentials, bad request/response, missing prompt,
  invalid memory data, failed delivery

A failure before the reply is sent produces no reply and one interaction
log entry recording it (best effort). Once a reply is sent, a failing
commit is reported but the reply stands.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sentio.core.base import ApplicationError
from sentio.core.config import Settings
from sentio.core.errors import (
    DeadlineExceededError,
    GenerationError,
    MaxRetriesExceededError,
    MemoryValidationError,
    NotFoundError,
    PromptNotFoundError,
    RateLimitedError,
    SendError,
    StoreUnavailableError,
    TransientError,
)
from sentio.core.leases import UserLeaseRegistry
from sentio.core.logging import get_logger, log_context, update_log_context
from sentio.domain.models import (
    CostRecord,
    Disposition,
    FailureInfo,
    FailureStage,
    GenerationResponse,
    InboundMessage,
    InteractionLog,
    InterpretedReply,
    MemoryDelta,
    MemoryRecord,
    MessageDirection,
    OutgoingMessage,
    RenderedPrompt,
    WorkflowFailure,
    WorkflowResult,
    WorkflowStage,
)
from sentio.domain.services import GenerationService, MemoryExtractor, MessageSender
from sentio.infrastructure.repositories import MemoryStore
from sentio.services.memory_updates import StructuredUpdateExtractor, apply_delta, interpret_reply
from sentio.services.prompts import DEFAULT_VARIANT, PromptCatalog

logger = get_logger(__name__)


class WorkflowAborted(Exception):
    """Internal signal: the current stage failed and the run must stop."""

    def __init__(self, failure: WorkflowFailure):
        self.failure = failure
        super().__init__(failure.reason)


def classify_failure(error: BaseException) -> tuple[FailureStage | None, Disposition]:
    """Map an error to the stage it implies (if any) and what the caller should do next."""
    if isinstance(error, TimeoutError | DeadlineExceededError):
        return FailureStage.TIMEOUT, Disposition.RETRY_LATER
    if isinstance(error, MaxRetriesExceededError):
        last = error.last_error
        if isinstance(last, TransientError) and last.timed_out:
            return FailureStage.TIMEOUT, Disposition.RETRY_LATER
        return None, Disposition.RETRY_LATER
    if isinstance(error, RateLimitedError | TransientError):
        return None, Disposition.RETRY_LATER
    if isinstance(error, StoreUnavailableError):
        return None, Disposition.RETRY_NOW
    return None, Disposition.TERMINAL


def _error_code(error: BaseException) -> str | None:
    return error.code.value if isinstance(error, ApplicationError) else None


def _reason(error: BaseException) -> str:
    if isinstance(error, ApplicationError):
        return error.message
    return str(error) or type(error).__name__


def _cost_record(response: GenerationResponse) -> CostRecord:
    return CostRecord(
        prompt_tokens=response.usage.prompt_tokens,
        completion_tokens=response.usage.completion_tokens,
        total_tokens=response.usage.total_tokens,
        cost_usd=response.cost_usd,
    )


@dataclass
class _Run:
    """Mutable state of one workflow execution."""

    workflow_id: str
    message: InboundMessage
    deadline: float
    stage: WorkflowStage = WorkflowStage.RECEIVED
    first_contact: bool = False
    response: GenerationResponse | None = None
    delta: MemoryDelta = field(default_factory=MemoryDelta)
    reply_message_id: str | None = None
    log_ids: list[str] = field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.message.user_id

    def advance(self, stage: WorkflowStage) -> None:
        self.stage = stage
        update_log_context("stage", stage.value)
        logger.debug("Workflow stage reached")

    def fail(
        self, stage: FailureStage, error: BaseException, disposition: Disposition | None = None
    ) -> WorkflowAborted:
        implied_stage, implied_disposition = classify_failure(error)
        return WorkflowAborted(
            WorkflowFailure(
                stage=implied_stage or stage,
                reason=_reason(error),
                disposition=disposition or implied_disposition,
                error_code=_error_code(error),
            )
        )


class WorkflowOrchestrator:
    """Runs inbound messages through memory, prompt, generation, delivery and commit."""

    def __init__(
        self,
        store: MemoryStore,
        catalog: PromptCatalog,
        generator: GenerationService,
        sender: MessageSender,
        settings: Settings,
        extractor: MemoryExtractor | None = None,
        leases: UserLeaseRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.generator = generator
        self.sender = sender
        self.settings = settings.workflow
        self.extractor = extractor or StructuredUpdateExtractor()
        self.leases = leases or UserLeaseRegistry(name="workflow")
        self._clock = clock

    async def process(self, message: InboundMessage, deadline_seconds: float | None = None) -> WorkflowResult:
        """Handle one inbound message end to end.

        Classified failures are returned in the result, never raised.
        Cancelling the calling task cancels the workflow; nothing is sent or
        committed after that.
        """
        budget = self.settings.deadline_seconds if deadline_seconds is None else deadline_seconds
        run = _Run(workflow_id=str(uuid4()), message=message, deadline=self._clock() + budget)

        with log_context(workflow_id=run.workflow_id, user_id=run.user_id, stage=run.stage.value):
            if not self.settings.allows(message.sender_address):
                logger.warning("Ignoring mail from a sender that is not allowed", subject=message.subject)
                run.stage = WorkflowStage.IGNORED
                return self._result(run, None)

            logger.info("Processing inbound message", subject=message.subject, message_id=message.message_id)
            async with self.leases.hold(run.user_id):
                try:
                    record = await self._load(run)
                    prompt = self._render(run, record)
                    response = await self._generate(run, prompt)
                    reply, outgoing = self._compose(run, record, response)
                except WorkflowAborted as aborted:
                    await self._record_failure(run, aborted.failure)
                    return self._result(run, aborted.failure)

                failure = await self._send(run, outgoing)
                commit_failure = await self._commit(run, record, response, reply, send_failure=failure)
                return self._result(run, failure or commit_failure)

    # Stages

    async def _load(self, run: _Run) -> MemoryRecord:
        try:
            record = await self.store.get(run.user_id)
        except NotFoundError:
            record = MemoryRecord(user_id=run.user_id)
            run.first_contact = True
            logger.info("First contact, starting an empty memory record")
        except (StoreUnavailableError, MemoryValidationError) as e:
            raise run.fail(FailureStage.LOAD, e) from e
        run.advance(WorkflowStage.MEMORY_LOADED)
        return record

    def _select_variant(self, record: MemoryRecord) -> str:
        category = self.settings.prompt_category
        variant = record.strategic.communication_strategy.prompt_variant or self.settings.default_variant
        if not self.catalog.has(category, variant):
            logger.warning("Prompt variant not in catalog, using default", variant=variant)
            variant = DEFAULT_VARIANT
        return variant

    def build_context(self, record: MemoryRecord, message: InboundMessage) -> dict[str, Any]:
        """Values available to prompt templates."""
        window = self.settings.history_window
        recent = record.episodic[-window:] if window else []
        actions = record.action_state
        return {
            "user_name": record.profile.name or message.sender_address.partition("@")[0],
            "sender": message.sender_address,
            "subject": message.subject,
            "body": message.body_text,
            "email_body": message.body_text,
            "user_query": message.body_text,
            "received_at": message.received_at,
            "profile": record.profile,
            "semantic": record.semantic,
            "action_state": {
                "open_tasks": actions.open_tasks,
                "plans": actions.plans,
                "follow_ups": [f for f in actions.follow_ups if not f.resolved],
            },
            "strategy": record.strategic.communication_strategy,
            "relational_goals": record.strategic.relational_goals,
            "recent_interactions": [
                {"timestamp": log.timestamp, "direction": log.direction, "summary": log.summary}
                for log in recent
                if not log.is_failure
            ],
            "interaction_count": len(record.episodic),
            "first_contact": not record.episodic,
        }

    def _render(self, run: _Run, record: MemoryRecord) -> RenderedPrompt:
        variant = self._select_variant(record)
        try:
            prompt = self.catalog.render(
                self.settings.prompt_category,
                variant,
                self.build_context(record, run.message),
            )
        except PromptNotFoundError as e:
            raise run.fail(FailureStage.RENDER, e) from e
        run.advance(WorkflowStage.PROMPT_RENDERED)
        return prompt

    async def _generate(self, run: _Run, prompt: RenderedPrompt) -> GenerationResponse:
        run.advance(WorkflowStage.GENERATING)
        try:
            request = self.generator.build_request(prompt.instruction, prompt.turn)
            remaining = run.deadline - self._clock()
            if remaining <= 0:
                raise DeadlineExceededError("Workflow deadline passed before generation started")
            async with asyncio.timeout(remaining):
                response = await self.generator.generate(request, deadline=run.deadline)
        except (GenerationError, TimeoutError) as e:
            raise run.fail(FailureStage.GENERATE, e) from e

        run.response = response
        logger.info(
            "Generation finished",
            model=response.model,
            attempts=response.attempts,
            total_tokens=response.usage.total_tokens,
        )
        return response

    def _compose(
        self, run: _Run, record: MemoryRecord, response: GenerationResponse
    ) -> tuple[InterpretedReply, OutgoingMessage]:
        reply = interpret_reply(response.content)
        if not reply.body:
            raise run.fail(
                FailureStage.COMPOSE,
                ValueError("Generated reply is empty"),
                disposition=Disposition.TERMINAL,
            )

        run.delta = self.extractor.extract(record, run.message, reply)
        outgoing = OutgoingMessage.reply_to(
            run.message,
            body=reply.body,
            sender=self.settings.sender_address,
            prefix=self.settings.reply_subject_prefix,
        )
        run.advance(WorkflowStage.REPLY_COMPOSED)
        return reply, outgoing

    async def _send(self, run: _Run, outgoing: OutgoingMessage) -> WorkflowFailure | None:
        if self._clock() >= run.deadline:
            return WorkflowFailure(
                stage=FailureStage.TIMEOUT,
                reason="Workflow deadline passed before the reply was sent",
                disposition=Disposition.RETRY_LATER,
            )

        try:
            run.reply_message_id = await self.sender.send(outgoing)
        except SendError as e:
            logger.error("Reply could not be delivered", reason=e.reason)
            return run.fail(FailureStage.SEND, e, disposition=Disposition.TERMINAL).failure

        run.advance(WorkflowStage.SENT)
        return None

    def _inbound_log(self, run: _Run, **extra: Any) -> InteractionLog:
        message = run.message
        return InteractionLog(
            user_id=run.user_id,
            timestamp=message.received_at,
            direction=MessageDirection.INBOUND,
            summary=f"Subject: {message.subject}\n\n{message.body_text}",
            message_id=message.message_id,
            **extra,
        )

    async def _commit(
        self,
        run: _Run,
        record: MemoryRecord,
        response: GenerationResponse,
        reply: InterpretedReply,
        send_failure: WorkflowFailure | None,
    ) -> WorkflowFailure | None:
        """Persist both turns and the memory delta.

        Runs after a failed send too, so the generation cost is never lost.
        A timeout before sending counts as a failure before delivery: only the
        failure entry is written.
        """
        if send_failure is not None and send_failure.stage != FailureStage.SEND:
            await self._record_failure(run, send_failure)
            return None

        sent = send_failure is None
        inbound = self._inbound_log(run, tags=reply.tags, key_topics=reply.tags)
        outbound = InteractionLog(
            user_id=run.user_id,
            direction=MessageDirection.OUTBOUND,
            summary=reply.body,
            message_id=run.reply_message_id,
            tags=reply.tags,
            model_version=response.model,
            reasoning_snapshot=reply.reasoning,
            cost=_cost_record(response),
            send_failed=not sent,
            failure=(
                FailureInfo(
                    stage=send_failure.stage.value, reason=send_failure.reason, error_code=send_failure.error_code
                )
                if send_failure
                else None
            ),
        )

        updated = record.model_copy(deep=True)
        updated.add_interaction(inbound)
        updated.add_interaction(outbound)
        try:
            updated = apply_delta(updated, run.delta)
        except MemoryValidationError as e:
            logger.warning("Memory delta rejected, committing interactions only", error=e.message)

        try:
            await self.store.upsert(updated)
        except (StoreUnavailableError, MemoryValidationError) as e:
            logger.error("Commit failed after the reply was handled", error=e.message, reply_sent=sent)
            return run.fail(FailureStage.COMMIT, e).failure

        run.log_ids.extend([inbound.log_id, outbound.log_id])
        if sent:
            run.advance(WorkflowStage.COMMITTED)
        logger.info("Workflow committed", reply_sent=sent, interactions=len(updated.episodic))
        return None

    async def _record_failure(self, run: _Run, failure: WorkflowFailure) -> None:
        """Best-effort log entry for a workflow that produced no reply."""
        log = self._inbound_log(
            run,
            tags=["workflow_failed"],
            model_version=run.response.model if run.response else "none",
            cost=_cost_record(run.response) if run.response else None,
            failure=FailureInfo(stage=failure.stage.value, reason=failure.reason, error_code=failure.error_code),
        )
        logger.warning(
            "Workflow failed",
            failed_stage=failure.stage.value,
            disposition=failure.disposition.value,
            reason=failure.reason,
            error_code=failure.error_code,
        )
        try:
            await self.store.append_interaction(run.user_id, log)
        except ApplicationError as e:
            logger.error("Could not record workflow failure", error=e.message, error_code=e.code.value)
            return
        run.log_ids.append(log.log_id)

    def _result(self, run: _Run, failure: WorkflowFailure | None) -> WorkflowResult:
        response = run.response
        return WorkflowResult(
            workflow_id=run.workflow_id,
            user_id=run.user_id,
            stage=WorkflowStage.FAILED if failure else run.stage,
            failure=failure,
            reply_message_id=run.reply_message_id,
            log_ids=list(run.log_ids),
            usage=response.usage if response else None,
            cost_usd=response.cost_usd if response else 0.0,
        )
