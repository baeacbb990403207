"""Test doubles for the workflow collaborators."""

import asyncio
from datetime import datetime

from sentio.core.errors import NotFoundError, SendError, StoreUnavailableError
from sentio.domain.models import (
    GenerationParameters,
    GenerationRequest,
    GenerationResponse,
    InteractionLog,
    MemoryRecord,
    OutgoingMessage,
    TokenUsage,
)
from sentio.domain.models.memory import merge_episodic
from sentio.domain.models.utils import utc_now
from sentio.infrastructure.repositories.base import (
    InteractionPage,
    InteractionStats,
    MemoryStore,
    compute_stats,
    paginate,
)


class InMemoryStore(MemoryStore):
    """Dict-backed store that round-trips records through JSON like a real backend."""

    def __init__(self) -> None:
        self.payloads: dict[str, dict] = {}
        self.upserts = 0
        self.appends = 0
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    def _read(self, user_id: str) -> MemoryRecord | None:
        payload = self.payloads.get(user_id)
        return MemoryRecord.from_payload(payload) if payload is not None else None

    async def get(self, user_id: str) -> MemoryRecord:
        await asyncio.sleep(0)
        record = self._read(user_id)
        if record is None:
            raise NotFoundError(user_id)
        return record

    async def upsert(self, record: MemoryRecord) -> None:
        async with self._lock(record.user_id):
            stored = self._read(record.user_id)
            await asyncio.sleep(0)
            merged = record.model_copy(deep=True)
            if stored is not None:
                merged.created_at = stored.created_at
                merged.episodic = merge_episodic(stored.episodic, record.episodic)
            merged.updated_at = utc_now()
            record.updated_at = merged.updated_at
            self.payloads[record.user_id] = merged.to_payload()
            self.upserts += 1

    async def append_interaction(self, user_id: str, log: InteractionLog) -> None:
        async with self._lock(user_id):
            record = self._read(user_id) or MemoryRecord(user_id=user_id)
            await asyncio.sleep(0)
            if log.log_id not in record.log_ids:
                record.add_interaction(log)
            self.payloads[user_id] = record.to_payload()
            self.appends += 1

    async def list_interactions(
        self,
        user_id: str,
        since: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> InteractionPage:
        record = self._read(user_id)
        return paginate(record.episodic if record else [], since=since, limit=limit, cursor=cursor)

    async def stats(self, user_id: str) -> InteractionStats:
        record = self._read(user_id)
        return compute_stats(record.episodic if record else [])

    async def erase(self, user_id: str) -> None:
        self.payloads.pop(user_id, None)

    async def health_check(self) -> bool:
        return True


class UnavailableStore(InMemoryStore):
    """Every operation fails as if the backend were down."""

    def _down(self, operation: str) -> StoreUnavailableError:
        return StoreUnavailableError(f"backend down during {operation}")

    async def get(self, user_id: str) -> MemoryRecord:
        raise self._down("get")

    async def upsert(self, record: MemoryRecord) -> None:
        raise self._down("upsert")

    async def append_interaction(self, user_id: str, log: InteractionLog) -> None:
        raise self._down("append_interaction")


class CommitFailingStore(InMemoryStore):
    """Reads work, saving the record does not."""

    async def upsert(self, record: MemoryRecord) -> None:
        raise StoreUnavailableError("backend down during upsert")


class FakeGenerator:
    """Returns canned content, or raises the queued errors first."""

    def __init__(
        self,
        content: str = "Hello",
        errors: list[Exception] | None = None,
        delay: float = 0.0,
        usage: TokenUsage | None = None,
    ) -> None:
        self.content = content
        self.errors = list(errors or [])
        self.delay = delay
        self.usage = usage or TokenUsage(prompt_tokens=12, completion_tokens=3, total_tokens=15)
        self.requests: list[GenerationRequest] = []

    def build_request(self, instruction: str, turn: str, overrides: dict | None = None) -> GenerationRequest:
        parameters = GenerationParameters(model="fake-model", temperature=0.7, max_tokens=256, top_p=0.9)
        return GenerationRequest(instruction=instruction, turn=turn, parameters=parameters)

    async def generate(
        self,
        request: GenerationRequest,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> GenerationResponse:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return GenerationResponse(
            request_id=request.request_id,
            response_id=f"resp-{len(self.requests)}",
            content=self.content,
            model="fake-model",
            usage=self.usage,
            cost_usd=0.002,
        )


class RecordingSender:
    def __init__(self, fail_with: str | None = None) -> None:
        self.sent: list[OutgoingMessage] = []
        self.fail_with = fail_with

    async def send(self, message: OutgoingMessage) -> str:
        if self.fail_with:
            raise SendError(self.fail_with, recipient=message.to)
        self.sent.append(message)
        return f"<reply-{len(self.sent)}@sentio.test>"
