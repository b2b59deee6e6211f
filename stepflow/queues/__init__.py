"""Queue factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepflowConfig, load_config
from .base import BaseQueue, QueueJob, new_job_id
from .inmemory import InMemoryQueue


def get_queue(backend: Optional[str] = None, config: Optional[StepflowConfig] = None) -> BaseQueue:
    """Factory function to get the configured queue."""

    config = config or load_config()
    backend = (backend or os.getenv("STEPFLOW_QUEUE") or config.queue.backend).lower()
    queue_conf = config.queue

    if backend == "inmemory":
        return InMemoryQueue(
            name=queue_conf.name,
            visibility_timeout=queue_conf.visibility_timeout,
            poll_interval=queue_conf.poll_interval,
        )
    elif backend == "redis":
        from .redis import RedisQueue

        redis_conf = queue_conf.redis
        return RedisQueue(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            name=queue_conf.name,
            visibility_timeout=queue_conf.visibility_timeout,
            poll_interval=queue_conf.poll_interval,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseQueue", "InMemoryQueue", "QueueJob", "get_queue", "new_job_id"]
