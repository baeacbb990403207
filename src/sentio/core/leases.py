"""Per-key asyncio leases.

One lock per key, created on first use and dropped once no task holds or
waits for it, so the registry does not grow with the number of users seen.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class UserLeaseRegistry:
    """Serializes work per user id while letting different users run in parallel."""

    def __init__(self, name: str = "lease") -> None:
        self.name = name
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_held(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.refs += 1
        try:
            if entry.lock.locked():
                logger.debug("Waiting for lease", registry=self.name, key=key, waiters=entry.refs - 1)
            async with entry.lock:
                yield
        finally:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(key) is entry:
                del self._entries[key]
