"""Redis queue for cross-process job delivery."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import redis.asyncio as redis

from ..constants import DEFAULT_QUEUE_NAME, DEFAULT_VISIBILITY_TIMEOUT
from ..models import utcnow
from .base import BaseQueue, QueueJob, new_job_id

logger = logging.getLogger(__name__)


def _score(moment: datetime) -> float:
    return moment.timestamp()


# Stores the job unless known and schedules it unless it is already
# scheduled or in flight. A job hash left without a schedule entry is
# scheduled again.
_ENQUEUE_SCRIPT = """
local created = redis.call("HSETNX", KEYS[1], ARGV[1], ARGV[2])
if created == 0 and (redis.call("ZSCORE", KEYS[2], ARGV[1]) or redis.call("ZSCORE", KEYS[3], ARGV[1])) then
    return 0
end
redis.call("ZADD", KEYS[2], "NX", ARGV[3], ARGV[1])
return 1
"""


class RedisQueue(BaseQueue):
    """Redis-backed delayed queue.

    Layout, for queue ``name``:

    - ``stepflow:<name>:jobs``      hash of job id -> job payload
    - ``stepflow:<name>:scheduled`` sorted set of job ids scored by ``not_before``
    - ``stepflow:<name>:inflight``  sorted set of delivered job ids scored by
      their visibility deadline

    A job is claimed by the worker whose ``ZREM`` on the scheduled set
    succeeds, so each scheduled entry is delivered once.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        name: str = DEFAULT_QUEUE_NAME,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        poll_interval: float = 0.1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._redis: Optional[Any] = None

    @property
    def _jobs_key(self) -> str:
        return f"stepflow:{self.name}:jobs"

    @property
    def _scheduled_key(self) -> str:
        return f"stepflow:{self.name}:scheduled"

    @property
    def _inflight_key(self) -> str:
        return f"stepflow:{self.name}:inflight"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    # ------------------------------------------------------------------
    async def enqueue_delayed(
        self, execution_id: str, not_before: datetime, job_id: Optional[str] = None
    ) -> str:
        client = await self._client()
        job_id = job_id or new_job_id()
        job = QueueJob(
            job_id=job_id, execution_id=execution_id, queue_name=self.name, not_before=not_before
        )
        script = client.register_script(_ENQUEUE_SCRIPT)
        scheduled = await script(
            keys=[self._jobs_key, self._scheduled_key, self._inflight_key],
            args=[job_id, job.model_dump_json(), _score(not_before)],
        )
        if scheduled:
            logger.debug(f"Enqueued job {job_id} for execution {execution_id} not before {not_before}")
        return job_id

    async def _reclaim_expired(self, client: Any, now: float) -> None:
        expired = await client.zrangebyscore(self._inflight_key, "-inf", now)
        for job_id in expired:
            if await client.zrem(self._inflight_key, job_id):
                logger.warning(f"Job {job_id} was not acknowledged in time; redelivering")
                await client.zadd(self._scheduled_key, {job_id: now})

    async def _claim_due(self, client: Any, now: float) -> Optional[QueueJob]:
        due = await client.zrangebyscore(self._scheduled_key, "-inf", now, start=0, num=10)
        for job_id in due:
            if not await client.zrem(self._scheduled_key, job_id):
                continue  # claimed by another worker
            raw = await client.hget(self._jobs_key, job_id)
            if raw is None:
                continue  # cancelled or acknowledged meanwhile
            await client.zadd(self._inflight_key, {job_id: now + self.visibility_timeout})
            job = QueueJob.model_validate(json.loads(raw))
            job.deliveries += 1
            await client.hset(self._jobs_key, job_id, job.model_dump_json())
            return job
        return None

    async def subscribe(self, lifespan: Optional[float] = None) -> AsyncIterator[QueueJob]:
        """Yield due jobs from Redis."""
        client = await self._client()
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            now = _score(utcnow())
            await self._reclaim_expired(client, now)
            job = await self._claim_due(client, now)
            if job is not None:
                yield job
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, job_id: str) -> None:
        client = await self._client()
        await client.zrem(self._inflight_key, job_id)
        await client.zrem(self._scheduled_key, job_id)
        await client.hdel(self._jobs_key, job_id)

    async def touch(self, job_id: str) -> bool:
        client = await self._client()
        if await client.zscore(self._inflight_key, job_id) is None:
            return False
        deadline = _score(utcnow()) + self.visibility_timeout
        await client.zadd(self._inflight_key, {job_id: deadline}, xx=True)
        return True

    async def nack(self, job_id: str, redeliver_after: Optional[datetime] = None) -> None:
        client = await self._client()
        if not await client.hexists(self._jobs_key, job_id):
            return
        moment = redeliver_after or utcnow()
        await client.zrem(self._inflight_key, job_id)
        await client.zadd(self._scheduled_key, {job_id: _score(moment)})

    async def cancel(self, job_id: str) -> bool:
        client = await self._client()
        await client.zrem(self._inflight_key, job_id)
        await client.zrem(self._scheduled_key, job_id)
        return bool(await client.hdel(self._jobs_key, job_id))
