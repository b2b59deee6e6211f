"""Retry policy tests."""

from datetime import datetime, timezone

from stepflow.models import StepFailed
from stepflow.utils.retry import MIN_DELAY, Exhausted, Retry, compute_backoff, decide

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
RETRYABLE = StepFailed(error="503 Service Unavailable", retryable=True, status_code=503)
PERMANENT = StepFailed(error="404 Not Found", retryable=False, status_code=404)


def no_jitter(low, high):
    return 0.0


def test_backoff_doubles_and_caps():
    delays = [compute_backoff(a, base=5, max_delay=300, rand=no_jitter) for a in range(1, 9)]
    assert delays[:4] == [5, 10, 20, 40]
    assert delays[-1] == 300


def test_jitter_stays_within_bounds():
    assert compute_backoff(1, base=10, jitter=0.2, rand=lambda low, high: high) == 12
    assert compute_backoff(1, base=10, jitter=0.2, rand=lambda low, high: low) == 8


def test_delay_is_always_positive():
    assert compute_backoff(1, base=0.0000001, rand=no_jitter) == MIN_DELAY


def test_retry_until_limit():
    first = decide(1, 3, RETRYABLE, NOW, base=5, rand=no_jitter)
    assert isinstance(first, Retry)
    assert first.delay == 5
    assert first.after > NOW

    second = decide(2, 3, RETRYABLE, NOW, base=5, rand=no_jitter)
    assert isinstance(second, Retry)
    assert second.delay == 10

    last = decide(3, 3, RETRYABLE, NOW)
    assert isinstance(last, Exhausted)
    assert "3/3" in last.reason


def test_non_retryable_exhausts_immediately():
    decision = decide(1, 5, PERMANENT, NOW)
    assert isinstance(decision, Exhausted)
    assert "non-retryable" in decision.reason


def test_single_attempt_never_retries():
    assert isinstance(decide(1, 1, RETRYABLE, NOW), Exhausted)


def test_backoff_for_huge_attempt_counts_stays_capped():
    assert compute_backoff(5000, base=5, max_delay=300, rand=no_jitter) == 300
    decision = decide(5000, 10_000, RETRYABLE, NOW, base=5, max_delay=300, rand=no_jitter)
    assert isinstance(decision, Retry)
    assert decision.delay == 300
