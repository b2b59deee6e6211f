"""In-memory queue for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from ..constants import DEFAULT_QUEUE_NAME, DEFAULT_VISIBILITY_TIMEOUT
from ..models import utcnow
from .base import BaseQueue, QueueJob, new_job_id

logger = logging.getLogger(__name__)


class InMemoryQueue(BaseQueue):
    """Simple in-process delayed queue.

    Delivered jobs stay in flight until acknowledged; a job that is not
    acknowledged within ``visibility_timeout`` seconds is delivered again.
    Data is not persisted across process restarts.
    """

    def __init__(
        self,
        name: str = DEFAULT_QUEUE_NAME,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
        poll_interval: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._jobs: Dict[str, QueueJob] = {}
        self._heap: List[Tuple[datetime, int, str]] = []
        self._scheduled_seq: Dict[str, int] = {}
        self._inflight: Dict[str, datetime] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    def _schedule(self, job: QueueJob, not_before: datetime) -> None:
        job.not_before = not_before
        seq = next(self._counter)
        self._scheduled_seq[job.job_id] = seq
        heapq.heappush(self._heap, (not_before, seq, job.job_id))

    def _reclaim_expired(self, now: datetime) -> None:
        expired = [job_id for job_id, deadline in self._inflight.items() if deadline <= now]
        for job_id in expired:
            del self._inflight[job_id]
            logger.warning(f"Job {job_id} was not acknowledged in time; redelivering")
            self._schedule(self._jobs[job_id], now)

    def _pop_due(self, now: datetime) -> Optional[QueueJob]:
        while self._heap and self._heap[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._heap)
            if self._scheduled_seq.get(job_id) != seq:
                continue  # superseded by a reschedule, cancel or ack
            del self._scheduled_seq[job_id]
            job = self._jobs[job_id]
            job.deliveries += 1
            self._inflight[job_id] = now + timedelta(seconds=self.visibility_timeout)
            return job.model_copy()
        return None

    # ------------------------------------------------------------------
    async def enqueue_delayed(
        self, execution_id: str, not_before: datetime, job_id: Optional[str] = None
    ) -> str:
        job_id = job_id or new_job_id()
        async with self._lock:
            if job_id in self._jobs:
                return job_id
            job = QueueJob(job_id=job_id, execution_id=execution_id, queue_name=self.name)
            self._jobs[job_id] = job
            self._schedule(job, not_before)
        logger.debug(f"Enqueued job {job_id} for execution {execution_id} not before {not_before}")
        return job_id

    async def subscribe(self, lifespan: Optional[float] = None) -> AsyncIterator[QueueJob]:
        """Yield due jobs.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                now = self._now()
                self._reclaim_expired(now)
                job = self._pop_due(now)

            if job is not None:
                yield job
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, job_id: str) -> None:
        async with self._lock:
            self._inflight.pop(job_id, None)
            self._scheduled_seq.pop(job_id, None)
            self._jobs.pop(job_id, None)

    async def touch(self, job_id: str) -> bool:
        async with self._lock:
            if job_id not in self._inflight:
                return False
            self._inflight[job_id] = self._now() + timedelta(seconds=self.visibility_timeout)
            return True

    async def nack(self, job_id: str, redeliver_after: Optional[datetime] = None) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            self._inflight.pop(job_id, None)
            self._schedule(job, redeliver_after or self._now())

    async def cancel(self, job_id: str) -> bool:
        async with self._lock:
            self._inflight.pop(job_id, None)
            self._scheduled_seq.pop(job_id, None)
            return self._jobs.pop(job_id, None) is not None

    # ------------------------------------------------------------------
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job else None

    async def pending_jobs(self) -> List[QueueJob]:
        """Jobs waiting for delivery, soonest first."""
        async with self._lock:
            waiting = [self._jobs[j] for j in self._scheduled_seq]
            return sorted((j.model_copy() for j in waiting), key=lambda j: j.not_before)

    async def receive(self) -> Optional[QueueJob]:
        """Deliver one due job without polling, or ``None``."""
        async with self._lock:
            now = self._now()
            self._reclaim_expired(now)
            return self._pop_due(now)
