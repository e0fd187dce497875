"""
Work queue for transcoding job references.

The queue only hands out pointers to jobs; the job store stays the source of
truth. A lost entry leaves its job pending, and a duplicate entry is harmless
because the worker skips jobs that are no longer pending.

Backends:
- Redis list (LPUSH by producers, BRPOP by workers). BRPOP hands each entry
  to exactly one of the competing workers.
- In-process asyncio queue, for tests and single-process setups.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

from core import metrics
from core.redis_client import RedisClient

logger = logging.getLogger(__name__)


class MalformedJobRefError(ValueError):
    """A queue payload could not be decoded into a JobRef."""


@dataclass(frozen=True)
class JobRef:
    """Pointer to a job, as carried on the queue."""

    job_id: str
    episode_id: str
    upload_id: str

    def to_json(self) -> str:
        # Wire format shared with existing producers
        return json.dumps(
            {"jobId": self.job_id, "episodeId": self.episode_id, "uploadId": self.upload_id}
        )

    @classmethod
    def from_json(cls, payload) -> "JobRef":
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedJobRefError(f"Queue payload is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedJobRefError("Queue payload is not a JSON object")

        values = {}
        for key in ("jobId", "episodeId", "uploadId"):
            value = data.get(key)
            if value is None or value == "":
                raise MalformedJobRefError(f"Queue payload is missing {key}")
            values[key] = str(value)
        return cls(job_id=values["jobId"], episode_id=values["episodeId"], upload_id=values["uploadId"])


class WorkQueue:
    """Interface for pushing and popping job references."""

    async def push(self, job_ref: JobRef) -> None:
        raise NotImplementedError

    async def pop_blocking(self, timeout: float) -> Optional[JobRef]:
        """Wait up to ``timeout`` seconds for a job. Returns None when empty."""
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class RedisWorkQueue(WorkQueue):
    """Redis list queue: LPUSH to enqueue, BRPOP to dequeue (FIFO)."""

    def __init__(self, redis: RedisClient, name: str):
        self.redis = redis
        self.name = name

    async def push(self, job_ref: JobRef) -> None:
        await self.redis.client.lpush(self.name, job_ref.to_json())
        logger.debug(f"Pushed job {job_ref.job_id} to {self.name}")

    async def pop_blocking(self, timeout: float) -> Optional[JobRef]:
        # BRPOP only takes whole seconds; 0 would block forever. Never block
        # longer than the client's socket read timeout allows.
        block = max(1, min(int(timeout), int(self.redis.max_block_seconds)))
        result = await self.redis.client.brpop([self.name], timeout=block)
        if result is None:
            return None

        _, payload = result
        try:
            return JobRef.from_json(payload)
        except MalformedJobRefError as e:
            metrics.QUEUE_MALFORMED_TOTAL.inc()
            logger.warning(f"Dropping malformed queue entry from {self.name}: {e} ({str(payload)[:200]!r})")
            return None

    async def health_check(self) -> bool:
        return await self.redis.health_check()

    async def close(self) -> None:
        await self.redis.close()


class InMemoryWorkQueue(WorkQueue):
    """asyncio.Queue backed queue, visible only inside one process."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    async def push(self, job_ref: JobRef) -> None:
        await self._queue.put(job_ref)

    async def pop_blocking(self, timeout: float) -> Optional[JobRef]:
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()
