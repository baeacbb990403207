"""Memory store contract shared by every persistence backend."""

import base64
import binascii
from abc import ABC, abstractmethod
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from sentio.core.errors import MemoryValidationError
from sentio.domain.models import InteractionLog, MemoryRecord
from sentio.domain.models.utils import ensure_utc

DEFAULT_PAGE_SIZE = 100


class InteractionPage(BaseModel):
    """A slice of a user's episodic history, oldest first."""

    model_config = ConfigDict(frozen=True)

    items: list[InteractionLog] = Field(default_factory=list)
    next_cursor: str | None = None


class InteractionStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_interactions: int = 0
    first_interaction_at: datetime | None = None
    last_interaction_at: datetime | None = None


def encode_cursor(position: int) -> str:
    return base64.urlsafe_b64encode(f"pos:{position}".encode()).decode()


def decode_cursor(cursor: str | None) -> int:
    """Position in the episodic sequence a cursor points at. ``None`` means the start."""
    if cursor is None:
        return 0
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        prefix, _, value = raw.partition(":")
        position = int(value)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MemoryValidationError(
            "Malformed interaction cursor",
            details={"source": "memory_store", "operation": "list_interactions", "field": "cursor"},
        ) from e
    if prefix != "pos" or position < 0:
        raise MemoryValidationError(
            "Malformed interaction cursor",
            details={"source": "memory_store", "operation": "list_interactions", "field": "cursor"},
        )
    return position


def paginate(
    logs: list[InteractionLog],
    since: datetime | None = None,
    limit: int | None = None,
    cursor: str | None = None,
) -> InteractionPage:
    """Slice an ordered episodic sequence.

    The cursor encodes an index into the full sequence, so paging is
    stable while new entries are appended at the end.
    """
    start = decode_cursor(cursor)
    limit = DEFAULT_PAGE_SIZE if limit is None else limit
    if limit <= 0:
        return InteractionPage(items=[], next_cursor=encode_cursor(start) if start < len(logs) else None)

    threshold = ensure_utc(since) if since is not None else None
    items: list[InteractionLog] = []
    position = start
    while position < len(logs) and len(items) < limit:
        log = logs[position]
        position += 1
        if threshold is None or log.timestamp > threshold:
            items.append(log)

    next_cursor = encode_cursor(position) if position < len(logs) else None
    return InteractionPage(items=items, next_cursor=next_cursor)


def compute_stats(logs: list[InteractionLog]) -> InteractionStats:
    if not logs:
        return InteractionStats()
    timestamps = [log.timestamp for log in logs]
    return InteractionStats(
        total_interactions=len(logs),
        first_interaction_at=min(timestamps),
        last_interaction_at=max(timestamps),
    )


class MemoryStore(ABC):
    """Async persistence for memory records.

    Implementations raise ``NotFoundError`` for unknown users and
    ``StoreUnavailableError`` when the backend cannot be reached. The two
    must never be conflated.
    """

    @abstractmethod
    async def get(self, user_id: str) -> MemoryRecord:
        """Load the record for ``user_id``.

        Raises:
            NotFoundError: If no record exists
            StoreUnavailableError: If the backend failed
            MemoryValidationError: If the stored data is malformed
        """

    @abstractmethod
    async def upsert(self, record: MemoryRecord) -> None:
        """Create or replace the record, stamping ``updated_at``.

        Stored episodic entries are always kept; entries of ``record``
        with unseen log ids are appended in order.
        """

    @abstractmethod
    async def append_interaction(self, user_id: str, log: InteractionLog) -> None:
        """Append one interaction atomically. Creates an empty record on first contact."""

    @abstractmethod
    async def list_interactions(
        self,
        user_id: str,
        since: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> InteractionPage:
        """Interactions oldest first, restartable from ``next_cursor``."""

    @abstractmethod
    async def stats(self, user_id: str) -> InteractionStats: ...

    @abstractmethod
    async def erase(self, user_id: str) -> None:
        """Remove the record and every sub-collection in one step."""

    @abstractmethod
    async def health_check(self) -> bool: ...

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""
