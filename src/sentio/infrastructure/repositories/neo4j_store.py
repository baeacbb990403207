"""Neo4j-backed memory store.

A user is one ``(:UserMemory)`` node holding the JSON-encoded record
sections; every interaction is an ``(:Interaction)`` node linked by
``HAS_INTERACTION`` and numbered by a per-user ``seq`` counter kept on the
owner node. Appends bump that counter inside the write transaction, so the
node write lock serializes concurrent appends for the same user.
"""

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, LiteralString

from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncManagedTransaction
from neo4j.exceptions import DriverError, Neo4jError

from sentio.core.base import DatabaseErrorDetails, ErrorLevel
from sentio.core.config import StoreSettings
from sentio.core.decorators import with_error_handling
from sentio.core.errors import NotFoundError, StoreUnavailableError
from sentio.core.logging import get_logger
from sentio.domain.models import InteractionLog, MemoryRecord
from sentio.domain.models.utils import utc_now
from sentio.infrastructure.repositories.base import (
    InteractionPage,
    InteractionStats,
    MemoryStore,
    paginate,
)

logger = get_logger(__name__)

_SECTIONS = ("profile", "semantic", "action_state", "strategic")


class MemoryQueries:
    """Cypher used by the store."""

    CONSTRAINT: LiteralString = (
        "CREATE CONSTRAINT user_memory_id IF NOT EXISTS FOR (u:UserMemory) REQUIRE u.user_id IS UNIQUE"
    )
    INTERACTION_INDEX: LiteralString = (
        "CREATE INDEX interaction_log_id IF NOT EXISTS FOR (i:Interaction) ON (i.log_id)"
    )

    GET: LiteralString = """
        MATCH (u:UserMemory {user_id: $user_id})
        OPTIONAL MATCH (u)-[:HAS_INTERACTION]->(i:Interaction)
        WITH u, i ORDER BY i.seq
        RETURN u {.*} AS user, collect(i.payload) AS interactions
        """

    UPSERT: LiteralString = """
        MERGE (u:UserMemory {user_id: $user_id})
        ON CREATE SET u.created_at = $created_at, u.seq = 0
        SET u.version = $version,
            u.updated_at = $updated_at,
            u.profile = $profile,
            u.semantic = $semantic,
            u.action_state = $action_state,
            u.strategic = $strategic
        """

    ENSURE_USER: LiteralString = """
        MERGE (u:UserMemory {user_id: $user_id})
        ON CREATE SET u.created_at = $now, u.seq = 0, u.version = $version,
            u.profile = '{}', u.semantic = '{}', u.action_state = '{}', u.strategic = '{}'
        SET u.updated_at = $now
        """

    KNOWN_LOG_IDS: LiteralString = """
        MATCH (:UserMemory {user_id: $user_id})-[:HAS_INTERACTION]->(i:Interaction)
        WHERE i.log_id IN $log_ids
        RETURN collect(i.log_id) AS log_ids
        """

    # $logs holds only entries not stored yet; seq continues from the owner's counter
    APPEND: LiteralString = """
        MATCH (u:UserMemory {user_id: $user_id})
        WITH u, coalesce(u.seq, 0) AS base
        UNWIND range(0, size($logs) - 1) AS idx
        WITH u, base, idx, $logs[idx] AS log
        CREATE (u)-[:HAS_INTERACTION]->(:Interaction {
            log_id: log.log_id, seq: base + idx + 1, ts: log.ts, payload: log.payload
        })
        WITH u, base, count(*) AS appended
        SET u.seq = base + appended
        RETURN appended
        """

    LIST: LiteralString = """
        MATCH (:UserMemory {user_id: $user_id})-[:HAS_INTERACTION]->(i:Interaction)
        RETURN i.payload AS payload ORDER BY i.seq
        """

    STATS: LiteralString = """
        MATCH (:UserMemory {user_id: $user_id})-[:HAS_INTERACTION]->(i:Interaction)
        RETURN count(i) AS total, min(i.ts) AS first_ts, max(i.ts) AS last_ts
        """

    ERASE: LiteralString = """
        MATCH (u:UserMemory {user_id: $user_id})
        OPTIONAL MATCH (u)-[:HAS_INTERACTION]->(i:Interaction)
        DETACH DELETE i, u
        """


def _encode_log(log: InteractionLog) -> dict[str, Any]:
    return {
        "log_id": log.log_id,
        "ts": log.timestamp.timestamp(),
        "payload": json.dumps(log.model_dump(mode="json"), ensure_ascii=False),
    }


class Neo4jMemoryStore(MemoryStore):
    """Document-style memory store over a shared Neo4j driver pool."""

    def __init__(self, driver: AsyncDriver, database: str | None = None) -> None:
        self.driver = driver
        self.database = database

    @classmethod
    async def connect(cls, settings: StoreSettings) -> "Neo4jMemoryStore":
        """Open a driver from settings and verify it can reach the server.

        Raises:
            StoreUnavailableError: If the server cannot be reached
        """
        logger.info(
            "Creating Neo4j driver",
            uri=settings.neo4j_uri,
            pool_size=settings.max_connection_pool_size,
        )
        driver = AsyncGraphDatabase.driver(
            settings.neo4j_uri,
            auth=(settings.neo4j_user, settings.neo4j_password.get_secret_value()),
            max_connection_pool_size=settings.max_connection_pool_size,
        )
        store = cls(driver, database=settings.neo4j_database)
        try:
            async with store._translate_errors("connect"):
                await driver.verify_connectivity()
                await store.initialize()
        except StoreUnavailableError:
            await driver.close()
            raise
        logger.info("Neo4j connection established")
        return store

    @asynccontextmanager
    async def _translate_errors(self, operation: str, user_id: str | None = None) -> AsyncIterator[None]:
        try:
            yield
        except (DriverError, Neo4jError, OSError) as e:
            raise StoreUnavailableError(
                f"Neo4j {operation} failed: {e}",
                details=DatabaseErrorDetails(
                    source="neo4j_memory_store",
                    operation=operation,
                    service_name="neo4j",
                    query_type=operation,
                    user_id=user_id,
                ),
            ) from e

    async def initialize(self) -> None:
        async with self.driver.session(database=self.database) as session:
            await session.run(MemoryQueries.CONSTRAINT)
            await session.run(MemoryQueries.INTERACTION_INDEX)

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def get(self, user_id: str) -> MemoryRecord:
        async with self._translate_errors("get", user_id):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(MemoryQueries.GET, user_id=user_id)
                row = await result.single(strict=False)

        if row is None or row["user"] is None:
            raise NotFoundError(user_id)

        node: dict[str, Any] = dict(row["user"])
        payload: dict[str, Any] = {
            "user_id": node["user_id"],
            "version": node.get("version"),
            "created_at": node.get("created_at"),
            "updated_at": node.get("updated_at"),
            "episodic": [json.loads(item) for item in row["interactions"]],
        }
        for section in _SECTIONS:
            payload[section] = json.loads(node.get(section) or "{}")
        return MemoryRecord.from_payload(payload)

    @staticmethod
    async def _append_logs(tx: AsyncManagedTransaction, user_id: str, logs: list[InteractionLog]) -> int:
        """Store the entries of ``logs`` the user does not have yet, in order.

        Callers write the owner node first in the same transaction, so its
        write lock keeps the known-id check and the append consistent.
        """
        if not logs:
            return 0
        result = await tx.run(MemoryQueries.KNOWN_LOG_IDS, user_id=user_id, log_ids=[log.log_id for log in logs])
        row = await result.single(strict=False)
        known = set(row["log_ids"]) if row else set()
        fresh = [_encode_log(log) for log in logs if log.log_id not in known]
        if not fresh:
            return 0

        result = await tx.run(MemoryQueries.APPEND, user_id=user_id, logs=fresh)
        row = await result.single(strict=False)
        return row["appended"] if row else 0

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def upsert(self, record: MemoryRecord) -> None:
        now = utc_now()
        payload = record.to_payload()
        params: dict[str, Any] = {
            "user_id": record.user_id,
            "version": record.version,
            "created_at": payload["created_at"],
            "updated_at": now.isoformat(),
        }
        for section in _SECTIONS:
            params[section] = json.dumps(payload[section], ensure_ascii=False, sort_keys=True)

        async def work(tx: AsyncManagedTransaction) -> int:
            await tx.run(MemoryQueries.UPSERT, **params)
            return await self._append_logs(tx, record.user_id, list(record.episodic))

        async with self._translate_errors("upsert", record.user_id):
            async with self.driver.session(database=self.database) as session:
                appended = await session.execute_write(work)

        record.updated_at = now
        logger.debug("Memory record saved", user_id=record.user_id, appended=appended)

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def append_interaction(self, user_id: str, log: InteractionLog) -> None:
        async def work(tx: AsyncManagedTransaction) -> int:
            await tx.run(
                MemoryQueries.ENSURE_USER,
                user_id=user_id,
                now=utc_now().isoformat(),
                version=MemoryRecord.model_fields["version"].default,
            )
            return await self._append_logs(tx, user_id, [log])

        async with self._translate_errors("append_interaction", user_id):
            async with self.driver.session(database=self.database) as session:
                appended = await session.execute_write(work)

        if not appended:
            logger.debug("Interaction already stored", user_id=user_id, log_id=log.log_id)

    async def list_interactions(
        self,
        user_id: str,
        since: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> InteractionPage:
        async with self._translate_errors("list_interactions", user_id):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(MemoryQueries.LIST, user_id=user_id)
                rows = [row["payload"] async for row in result]

        logs = [InteractionLog.model_validate_json(item) for item in rows]
        return paginate(logs, since=since, limit=limit, cursor=cursor)

    async def stats(self, user_id: str) -> InteractionStats:
        async with self._translate_errors("stats", user_id):
            async with self.driver.session(database=self.database) as session:
                result = await session.run(MemoryQueries.STATS, user_id=user_id)
                row = await result.single(strict=False)

        if row is None or not row["total"]:
            return InteractionStats()
        return InteractionStats(
            total_interactions=row["total"],
            first_interaction_at=datetime.fromtimestamp(row["first_ts"], tz=UTC),
            last_interaction_at=datetime.fromtimestamp(row["last_ts"], tz=UTC),
        )

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def erase(self, user_id: str) -> None:
        async def work(tx: AsyncManagedTransaction) -> None:
            await tx.run(MemoryQueries.ERASE, user_id=user_id)

        async with self._translate_errors("erase", user_id):
            async with self.driver.session(database=self.database) as session:
                await session.execute_write(work)
        logger.info("Memory record erased", user_id=user_id)

    async def health_check(self) -> bool:
        try:
            async with self._translate_errors("health_check"):
                await self.driver.verify_connectivity()
        except StoreUnavailableError as e:
            logger.warning("Neo4j health check failed", error=e.message)
            return False
        return True

    async def close(self) -> None:
        await self.driver.close()
        logger.info("Neo4j driver closed")
