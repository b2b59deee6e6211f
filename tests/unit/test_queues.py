"""Queue tests."""

import pytest

from stepflow.queues import InMemoryQueue, get_queue
from stepflow.config import StepflowConfig


@pytest.mark.asyncio
async def test_inmemory_queue_basic(clock):
    queue = InMemoryQueue(clock=clock)
    job_id = await queue.enqueue("exec-1")

    received = False
    async for job in queue.subscribe(lifespan=1):
        assert job.job_id == job_id
        assert job.execution_id == "exec-1"
        assert job.deliveries == 1
        await queue.ack(job.job_id)
        received = True
        break

    assert received
    assert await queue.get_job(job_id) is None


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_on_job_id(clock):
    queue = InMemoryQueue(clock=clock)
    await queue.enqueue("exec-1", job_id="job-1")
    await queue.enqueue("exec-1", job_id="job-1")
    assert len(await queue.pending_jobs()) == 1


@pytest.mark.asyncio
async def test_delayed_job_is_held_until_due(clock):
    queue = InMemoryQueue(clock=clock)
    not_before = clock.now.replace(second=30)
    await queue.enqueue_delayed("exec-1", not_before, job_id="job-1")

    assert await queue.receive() is None
    clock.now = not_before
    job = await queue.receive()
    assert job is not None and job.job_id == "job-1"


@pytest.mark.asyncio
async def test_unacked_job_is_redelivered_after_visibility_timeout(clock):
    queue = InMemoryQueue(visibility_timeout=10, clock=clock)
    await queue.enqueue("exec-1", job_id="job-1")
    first = await queue.receive()
    assert first is not None
    assert await queue.receive() is None

    clock.advance(11)
    again = await queue.receive()
    assert again is not None
    assert again.job_id == "job-1"
    assert again.deliveries == 2


@pytest.mark.asyncio
async def test_touch_extends_visibility(clock):
    queue = InMemoryQueue(visibility_timeout=10, clock=clock)
    await queue.enqueue("exec-1", job_id="job-1")
    assert await queue.touch("job-1") is False  # not delivered yet
    await queue.receive()

    clock.advance(8)
    assert await queue.touch("job-1") is True
    clock.advance(5)
    assert await queue.receive() is None

    clock.advance(6)
    again = await queue.receive()
    assert again is not None and again.deliveries == 2

    await queue.ack("job-1")
    assert await queue.touch("job-1") is False


@pytest.mark.asyncio
async def test_nack_and_cancel(clock):
    queue = InMemoryQueue(clock=clock)
    await queue.enqueue("exec-1", job_id="job-1")
    await queue.receive()

    later = clock.now.replace(minute=5)
    await queue.nack("job-1", redeliver_after=later)
    assert await queue.receive() is None
    assert (await queue.pending_jobs())[0].not_before == later

    assert await queue.cancel("job-1") is True
    assert await queue.cancel("job-1") is False
    clock.now = later
    assert await queue.receive() is None


def test_get_queue_from_config():
    config = StepflowConfig.model_validate({"queue": {"name": "billing", "visibility_timeout": 30}})
    queue = get_queue(backend="inmemory", config=config)
    assert isinstance(queue, InMemoryQueue)
    assert queue.name == "billing"
    assert queue.visibility_timeout == 30


def test_get_queue_redis_backend():
    from stepflow.queues.redis import RedisQueue

    config = StepflowConfig.model_validate(
        {"queue": {"backend": "redis", "redis": {"host": "redis.local", "port": 6380}}}
    )
    queue = get_queue(config=config)
    assert isinstance(queue, RedisQueue)
    assert queue.host == "redis.local"
    assert queue.port == 6380


def test_get_queue_rejects_unknown_backend():
    with pytest.raises(ValueError):
        get_queue(backend="carrier-pigeon", config=StepflowConfig())
