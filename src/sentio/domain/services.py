"""Domain service protocols.

The orchestrator depends only on these interfaces; concrete
implementations live under ``sentio.infrastructure``.
"""

from typing import Protocol, runtime_checkable

from sentio.domain.models import (
    GenerationRequest,
    GenerationResponse,
    InboundMessage,
    InterpretedReply,
    MemoryDelta,
    MemoryRecord,
    MessageId,
    OutgoingMessage,
)


@runtime_checkable
class GenerationService(Protocol):
    """Runs a rendered prompt against the generation provider."""

    def build_request(self, instruction: str, turn: str, overrides: dict | None = None) -> GenerationRequest: ...

    async def generate(
        self,
        request: GenerationRequest,
        timeout: float | None = None,
        deadline: float | None = None,
    ) -> GenerationResponse:
        """Raises a ``GenerationError`` subclass on failure."""
        ...


@runtime_checkable
class MessageSender(Protocol):
    async def send(self, message: OutgoingMessage) -> MessageId:
        """Deliver a reply. Raises ``SendError`` on failure."""
        ...


@runtime_checkable
class MemoryExtractor(Protocol):
    """Decides which facts to take from an interaction into memory."""

    def extract(self, record: MemoryRecord, message: InboundMessage, reply: InterpretedReply) -> MemoryDelta: ...
