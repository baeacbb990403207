"""File-backed memory store.

Each user gets one JSON-lines file: line 1 is the record snapshot without
``episodic``, every following line is one interaction log. Every commit
rewrites the whole file through a temporary file and ``os.replace``, so a
reader never sees a half-written record.
"""

import asyncio
import hashlib
import json
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sentio.core.base import DatabaseErrorDetails, ErrorLevel
from sentio.core.decorators import with_error_handling
from sentio.core.errors import MemoryValidationError, NotFoundError, StoreUnavailableError
from sentio.core.leases import UserLeaseRegistry
from sentio.core.logging import get_logger
from sentio.domain.models import InteractionLog, MemoryRecord
from sentio.domain.models.memory import merge_episodic
from sentio.domain.models.utils import utc_now
from sentio.infrastructure.repositories.base import (
    InteractionPage,
    InteractionStats,
    MemoryStore,
    compute_stats,
    paginate,
)

logger = get_logger(__name__)


def _unavailable(operation: str, user_id: str | None, error: OSError) -> StoreUnavailableError:
    return StoreUnavailableError(
        f"Memory file store failed during {operation}: {error}",
        details=DatabaseErrorDetails(
            source="file_memory_store",
            operation=operation,
            service_name="file",
            query_type=operation,
            user_id=user_id,
        ),
    )


class FileMemoryStore(MemoryStore):
    """Durable single-process store keeping one JSON-lines file per user.

    All mutations for one user run under that user's lock; blocking file
    I/O runs in a worker thread so the event loop is never held up.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self._locks = UserLeaseRegistry(name="file_store")

    def _path(self, user_id: str) -> Path:
        # Addresses are not safe file names; hash them into a stable key
        digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:32]
        return self.directory / f"{digest}.jsonl"

    # Blocking helpers, always run through asyncio.to_thread

    def _read(self, user_id: str) -> MemoryRecord | None:
        path = self._path(user_id)
        try:
            with path.open(encoding="utf-8") as fh:
                lines = [line for line in fh.read().splitlines() if line.strip()]
        except FileNotFoundError:
            return None

        if not lines:
            raise MemoryValidationError(
                f"Memory file for '{user_id}' is empty",
                details={"source": "file_memory_store", "operation": "get", "field": "snapshot"},
            )
        try:
            snapshot: dict[str, Any] = json.loads(lines[0])
            snapshot["episodic"] = [json.loads(line) for line in lines[1:]]
        except json.JSONDecodeError as e:
            raise MemoryValidationError(
                f"Memory file for '{user_id}' is not valid JSON-lines",
                details={"source": "file_memory_store", "operation": "get", "constraint": str(e)},
            ) from e

        record = MemoryRecord.from_payload(snapshot)
        if record.user_id != user_id:
            raise MemoryValidationError(
                f"Memory file for '{user_id}' holds the record of '{record.user_id}'",
                details={"source": "file_memory_store", "operation": "get", "field": "user_id"},
            )
        return record

    def _write(self, record: MemoryRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = record.to_payload()
        episodic = payload.pop("episodic")

        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".jsonl")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, ensure_ascii=False) + "\n")
                for entry in episodic:
                    fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path(record.user_id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _unlink(self, user_id: str) -> bool:
        try:
            self._path(user_id).unlink()
        except FileNotFoundError:
            return False
        return True

    async def _load(self, user_id: str, operation: str) -> MemoryRecord | None:
        try:
            return await asyncio.to_thread(self._read, user_id)
        except OSError as e:
            raise _unavailable(operation, user_id, e) from e

    async def _save(self, record: MemoryRecord, operation: str) -> None:
        try:
            await asyncio.to_thread(self._write, record)
        except OSError as e:
            raise _unavailable(operation, record.user_id, e) from e

    # MemoryStore

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def get(self, user_id: str) -> MemoryRecord:
        record = await self._load(user_id, "get")
        if record is None:
            raise NotFoundError(user_id)
        return record

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def upsert(self, record: MemoryRecord) -> None:
        async with self._locks.hold(record.user_id):
            stored = await self._load(record.user_id, "upsert")
            try:
                merged = record.model_copy(deep=True)
                if stored is not None:
                    merged.created_at = stored.created_at
                    merged.episodic = merge_episodic(stored.episodic, record.episodic)
                merged.updated_at = utc_now()
            except ValidationError as e:
                raise MemoryValidationError(
                    f"Invalid memory record for '{record.user_id}'",
                    details={"source": "file_memory_store", "operation": "upsert"},
                ) from e
            await self._save(merged, "upsert")
            record.updated_at = merged.updated_at

        logger.debug("Memory record saved", user_id=record.user_id, interactions=len(merged.episodic))

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def append_interaction(self, user_id: str, log: InteractionLog) -> None:
        async with self._locks.hold(user_id):
            record = await self._load(user_id, "append_interaction")
            if record is None:
                record = MemoryRecord(user_id=user_id)
            if log.log_id in record.log_ids:
                logger.debug("Interaction already stored", user_id=user_id, log_id=log.log_id)
                return
            record.add_interaction(log)
            await self._save(record, "append_interaction")

        logger.debug("Interaction appended", user_id=user_id, log_id=log.log_id, direction=log.direction.value)

    async def list_interactions(
        self,
        user_id: str,
        since: datetime | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> InteractionPage:
        record = await self._load(user_id, "list_interactions")
        if record is None:
            return InteractionPage()
        return paginate(record.episodic, since=since, limit=limit, cursor=cursor)

    async def stats(self, user_id: str) -> InteractionStats:
        record = await self._load(user_id, "stats")
        if record is None:
            return InteractionStats()
        return compute_stats(record.episodic)

    @with_error_handling(error_level=ErrorLevel.ERROR)
    async def erase(self, user_id: str) -> None:
        async with self._locks.hold(user_id):
            try:
                removed = await asyncio.to_thread(self._unlink, user_id)
            except OSError as e:
                raise _unavailable("erase", user_id, e) from e
        logger.info("Memory record erased", user_id=user_id, existed=removed)

    async def health_check(self) -> bool:
        def writable() -> bool:
            self.directory.mkdir(parents=True, exist_ok=True)
            return os.access(self.directory, os.W_OK) and shutil.disk_usage(self.directory).free > 0

        try:
            return await asyncio.to_thread(writable)
        except OSError as e:
            logger.warning("File store health check failed", directory=str(self.directory), error=str(e))
            return False
