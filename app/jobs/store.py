"""Job record persistence.

Two interchangeable backends behind one interface:

- InMemoryJobStore: process-local dict, no durability, no cross-process
  visibility. Used when no Redis URL is configured.
- RedisJobStore: TTL-bounded keys shared by every API and worker process.

All mutation after creation goes through `update`, which re-reads the record
inside the store's write guard and only writes if the current record accepts
the replacement (see JobRecord.accepts). That is what keeps a late progress
tick from overwriting a terminal record.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from app.core.errors import TransientInfraError
from app.jobs.models import JobRecord

logger = logging.getLogger(__name__)

Mutation = Callable[[JobRecord], Optional[JobRecord]]


class JobStore(ABC):
    """Abstract key/value store for job records."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        """Current record, or None if unknown or expired."""
        ...

    @abstractmethod
    async def set(self, job_id: str, record: JobRecord) -> None:
        """Write a full record and start its retention window."""
        ...

    @abstractmethod
    async def update(self, job_id: str, mutate: Mutation) -> Optional[JobRecord]:
        """Guarded read-modify-write.

        mutate(current) returns the replacement or None to discard. Returns the
        record that was written, or None if nothing was written.
        """
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


def _apply(job_id: str, current: Optional[JobRecord], mutate: Mutation) -> Optional[JobRecord]:
    if current is None:
        return None
    new = mutate(current)
    if new is None:
        return None
    if not current.accepts(new):
        logger.debug(
            "Discarded write for job=%s: %s -> %s (progress %d -> %d)",
            job_id, current.status.value, new.status.value, current.progress, new.progress,
        )
        return None
    return new


class InMemoryJobStore(JobStore):
    """Dict-backed store; expired records are evicted lazily."""

    def __init__(self, ttl_seconds: int = 86400, clock: Callable[[], float] = time.monotonic):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, Tuple[JobRecord, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, job_id: str) -> Optional[JobRecord]:
        entry = self._records.get(job_id)
        if entry is None:
            return None
        record, expires_at = entry
        if self._clock() >= expires_at:
            del self._records[job_id]
            return None
        return record

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [k for k, (_, exp) in self._records.items() if now >= exp]
        for k in expired:
            del self._records[k]

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return self._live(job_id)

    async def set(self, job_id: str, record: JobRecord) -> None:
        async with self._lock:
            self._evict_expired()
            self._records[job_id] = (record, self._clock() + self._ttl_seconds)

    async def update(self, job_id: str, mutate: Mutation) -> Optional[JobRecord]:
        async with self._lock:
            current = self._live(job_id)
            new = _apply(job_id, current, mutate)
            if new is not None:
                _, expires_at = self._records[job_id]
                self._records[job_id] = (new, expires_at)
            return new

    def count(self) -> int:
        self._evict_expired()
        return len(self._records)


class RedisJobStore(JobStore):
    """Redis-backed store. `update` is an optimistic WATCH/MULTI compare-and-swap."""

    KEY_PREFIX = "job:"

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 86400):
        self._redis = client
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 86400) -> "RedisJobStore":
        return cls(aioredis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, job_id: str) -> str:
        return f"{self.KEY_PREFIX}{job_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[JobRecord]:
        if raw is None:
            return None
        return JobRecord.model_validate_json(raw)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        try:
            raw = await self._redis.get(self._key(job_id))
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientInfraError(f"Job store unavailable: {e}") from e
        return self._decode(raw)

    async def set(self, job_id: str, record: JobRecord) -> None:
        try:
            await self._redis.set(self._key(job_id), record.model_dump_json(), ex=self._ttl_seconds)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientInfraError(f"Job store unavailable: {e}") from e

    async def update(self, job_id: str, mutate: Mutation) -> Optional[JobRecord]:
        key = self._key(job_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = self._decode(await pipe.get(key))
                        new = _apply(job_id, current, mutate)
                        if new is None:
                            await pipe.unwatch()
                            return None
                        pipe.multi()
                        # retention is measured from creation, not last update
                        pipe.set(key, new.model_dump_json(), keepttl=True)
                        await pipe.execute()
                        return new
                    except WatchError:
                        # another writer touched the record, re-read and retry
                        continue
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientInfraError(f"Job store unavailable: {e}") from e

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisConnectionError, RedisTimeoutError):
            return False

    async def close(self) -> None:
        await self._redis.aclose()
