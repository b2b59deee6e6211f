from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from pydantic import BaseModel

from ..constants import DEFAULT_BASE_DELAY, DEFAULT_JITTER, DEFAULT_MAX_DELAY
from ..models import StepFailed

# Shortest delay ever returned, so ``retry_after`` is always in the future.
MIN_DELAY = 0.001
# Cap on the backoff exponent; 2 ** 1024 no longer fits in a float.
MAX_EXPONENT = 64


class Retry(BaseModel):
    after: datetime
    delay: float


class Exhausted(BaseModel):
    reason: str


RetryDecision = Union[Retry, Exhausted]


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    """Compute exponential backoff with proportional jitter.

    ``attempt`` is the number of attempts already made (1 for the first
    retry). The delay is ``base * 2 ** (attempt - 1)`` capped at
    ``max_delay``, then moved by up to ``jitter`` of its value either way.
    """
    exponent = min(max(attempt - 1, 0), MAX_EXPONENT)
    delay = min(base * 2 ** exponent, max_delay)
    if jitter:
        delay += delay * rand(-jitter, jitter)
    return max(delay, MIN_DELAY)


def decide(
    attempt_count: int,
    max_attempts: int,
    error: StepFailed,
    now: datetime,
    base: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    rand: Optional[Callable[[float, float], float]] = None,
) -> RetryDecision:
    """Decide whether a failed attempt is retried and when.

    ``attempt_count`` includes the attempt that just failed.
    """
    if not error.retryable:
        return Exhausted(reason=f"non-retryable {error.error_type}: {error.error}")
    if attempt_count >= max_attempts:
        return Exhausted(
            reason=f"retry limit reached after {attempt_count}/{max_attempts} attempts: {error.error}"
        )
    delay = compute_backoff(
        attempt_count, base=base, max_delay=max_delay, jitter=jitter, rand=rand or random.uniform
    )
    return Retry(after=now + timedelta(seconds=delay), delay=delay)
