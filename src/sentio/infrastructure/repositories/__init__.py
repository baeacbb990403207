"""Memory store backends.

``create_memory_store`` picks the backend named in the store settings;
callers only ever see the ``MemoryStore`` interface.
"""

from sentio.core.config import StoreSettings
from sentio.core.logging import get_logger

from .base import InteractionPage, InteractionStats, MemoryStore
from .file import FileMemoryStore
from .neo4j_store import Neo4jMemoryStore

logger = get_logger(__name__)


async def create_memory_store(settings: StoreSettings) -> MemoryStore:
    """Build the configured store.

    Raises:
        StoreUnavailableError: If the neo4j backend cannot be reached
    """
    logger.info("Creating memory store", backend=settings.backend)
    if settings.backend == "neo4j":
        return await Neo4jMemoryStore.connect(settings)
    return FileMemoryStore(settings.directory)


__all__ = [
    "FileMemoryStore",
    "InteractionPage",
    "InteractionStats",
    "MemoryStore",
    "Neo4jMemoryStore",
    "create_memory_store",
]
