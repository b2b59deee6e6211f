"""Base queue interface for execution jobs."""

from __future__ import annotations

import abc
import uuid
from datetime import datetime
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

from ..models import utcnow


class QueueJob(BaseModel):
    """One delivery of an execution job."""

    job_id: str
    execution_id: str
    queue_name: str
    not_before: datetime = Field(default_factory=utcnow)
    deliveries: int = 0


def new_job_id() -> str:
    return str(uuid.uuid4())


class BaseQueue(metaclass=abc.ABCMeta):
    """Abstract durable job queue with at-least-once delivery.

    Job identifiers are chosen by the caller (or generated when omitted) and
    enqueueing a known identifier again does not create a second job.
    """

    name: str
    visibility_timeout: float

    def _now(self) -> datetime:
        return utcnow()

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    async def enqueue(self, execution_id: str, job_id: Optional[str] = None) -> str:
        """Schedule a job for immediate delivery."""
        return await self.enqueue_delayed(execution_id, self._now(), job_id=job_id)

    @abc.abstractmethod
    async def enqueue_delayed(
        self, execution_id: str, not_before: datetime, job_id: Optional[str] = None
    ) -> str:
        """Schedule a job that must not be delivered before ``not_before``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, lifespan: Optional[float] = None) -> AsyncIterator[QueueJob]:
        """Yield due jobs until ``lifespan`` seconds elapse (forever if None)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, job_id: str) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def touch(self, job_id: str) -> bool:
        """Push back the visibility deadline of a delivered job.

        Returns ``False`` when the job is no longer in flight.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, job_id: str, redeliver_after: Optional[datetime] = None) -> None:
        """Return a job to the queue, optionally not before ``redeliver_after``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Remove a job that has not been acknowledged. Returns ``True`` if found."""
        raise NotImplementedError
