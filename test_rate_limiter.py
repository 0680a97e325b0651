"""
Rate-limited executor: hint parsing, bounded retries, typed exhaustion,
shared usage tracking and the circuit breaker.
"""

import asyncio
import threading

import pytest

from conftest import RATE_LIMIT_MESSAGE, ProviderHTTPError
from theme_extraction.errors import CircuitOpenError, RateLimitError, RateLimitUsage
from theme_extraction.tools.rate_limiter import (
    BackoffPolicy,
    CircuitBreaker,
    CircuitState,
    RateLimitTracker,
    is_rate_limit_error,
    parse_rate_limit_error,
    parse_retry_after,
    parse_usage,
    retry_async,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class CountingOperation:
    """Async operation failing with `errors` in order, then returning `value`."""

    def __init__(self, errors=(), value="ok"):
        self.errors = list(errors)
        self.value = value
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


# ── Parsing ──────────────────────────────────────────────────────────

def test_parse_retry_after_minutes_and_seconds():
    assert parse_retry_after("Please try again in 2m0s.") == (120, True)
    assert parse_retry_after("Please try again in 7m12.5s") == (433, True)


def test_parse_retry_after_seconds_and_header():
    assert parse_retry_after("try again in 45.2s") == (46, True)
    assert parse_retry_after("429 Too Many Requests, Retry-After: 30") == (30, True)


def test_parse_retry_after_defaults_without_hint():
    assert parse_retry_after("slow down") == (300, False)
    assert parse_retry_after("slow down", default_seconds=60) == (60, False)


def test_parse_retry_after_is_capped():
    seconds, parsed = parse_retry_after("try again in 999m0s", max_seconds=3600)
    assert parsed
    assert seconds == 3600


def test_parse_usage():
    usage = parse_usage(RATE_LIMIT_MESSAGE)
    assert usage == RateLimitUsage(limit=100000, used=99996, requested=400)
    assert usage.percentage == pytest.approx(99.996, abs=0.01)
    assert parse_usage("no numbers here") is None


def test_rate_limit_detection():
    assert is_rate_limit_error(ProviderHTTPError(429, "Too Many Requests"))
    assert is_rate_limit_error(Exception("Rate limit reached for requests"))
    assert not is_rate_limit_error(ProviderHTTPError(500, "internal error"))
    assert not is_rate_limit_error(ValueError("bad json"))


def test_parse_rate_limit_error_from_provider_exception():
    info = parse_rate_limit_error(ProviderHTTPError(429, RATE_LIMIT_MESSAGE))
    assert info.retry_after_seconds == 120
    assert info.parsed_retry
    assert (info.usage.limit, info.usage.used, info.usage.requested) == (100000, 99996, 400)
    assert parse_rate_limit_error(ValueError("bad json")) is None


def test_user_message_is_actionable():
    usage = RateLimitUsage(limit=100000, used=99996, requested=400)
    assert RateLimitError("groq", 420, usage).user_message() == (
        "groq rate limit exceeded: try again in 7 minutes, 99,996/100,000 used"
    )
    assert "45 seconds" in RateLimitError("groq", 45).user_message()
    payload = RateLimitError("groq", 120, usage).to_dict()
    assert payload["type"] == "rate_limit_error"
    assert payload["usage"] == {"limit": 100000, "used": 99996, "requested": 400}


# ── Backoff + retry combinator ───────────────────────────────────────

def test_backoff_is_capped_by_retry_hint():
    policy = BackoffPolicy(base_delay=5.0)
    assert policy.delay(1) == 10.0
    assert policy.delay(2) == 20.0
    assert policy.delay(2, retry_after=7) == 7.0
    assert policy.delay(1, retry_after=120) == 10.0
    assert policy.total_bound(3) == 30.0


def test_retry_async_rejects_zero_attempts():
    with pytest.raises(ValueError):
        asyncio.run(retry_async(
            CountingOperation(), is_retryable=lambda e: True, delay_for=lambda a, e: 0, max_attempts=0,
        ))


def test_retry_async_stops_on_non_retryable(sleeper):
    op = CountingOperation(errors=[KeyError("x"), KeyError("y")])
    with pytest.raises(KeyError):
        asyncio.run(retry_async(
            op, is_retryable=lambda e: isinstance(e, TimeoutError),
            delay_for=lambda a, e: 1.0, max_attempts=5, sleep=sleeper,
        ))
    assert op.attempts == 1
    assert sleeper.delays == []


# ── Executor ─────────────────────────────────────────────────────────

def test_executor_exhaustion_raises_typed_error(executor, sleeper):
    op = CountingOperation(errors=[ProviderHTTPError(429, RATE_LIMIT_MESSAGE)] * 5)
    with pytest.raises(RateLimitError) as exc_info:
        asyncio.run(executor.execute(op, context="extract batch 1/1", provider="groq"))

    err = exc_info.value
    assert op.attempts == 3
    assert err.retry_after_seconds == 120
    assert (err.usage.limit, err.usage.used, err.usage.requested) == (100000, 99996, 400)
    assert err.provider == "groq"
    # min(retry hint, 2^attempt * base) between attempts, no sleep after the last
    assert sleeper.delays == [10.0, 20.0]
    assert sum(sleeper.delays) <= executor.backoff.total_bound(3)
    assert executor.total_wait_seconds == pytest.approx(30.0)

    stats = executor.tracker.snapshot()["groq"]
    assert stats["calls"] == 3
    assert stats["rate_limited"] == 3
    assert executor.tracker.check_threshold("groq")


def test_executor_per_call_retry_override(executor):
    op = CountingOperation(errors=[ProviderHTTPError(429, RATE_LIMIT_MESSAGE)] * 5)
    with pytest.raises(RateLimitError):
        asyncio.run(executor.execute(op, context="ctx", max_retries=2))
    assert op.attempts == 2


def test_executor_recovers_after_transient_rate_limit(executor, sleeper):
    op = CountingOperation(errors=[ProviderHTTPError(429, "try again in 1.5s")], value="done")
    assert asyncio.run(executor.execute(op, context="ctx")) == "done"
    assert op.attempts == 2
    assert sleeper.delays == [2.0]


def test_executor_does_not_retry_other_errors(executor, sleeper):
    op = CountingOperation(errors=[ValueError("bad json")])
    with pytest.raises(ValueError):
        asyncio.run(executor.execute(op, context="ctx"))
    assert op.attempts == 1
    assert sleeper.delays == []


def test_executor_fast_fails_when_circuit_open(settings, sleeper):
    from theme_extraction.tools.rate_limiter import RateLimitedExecutor

    settings.circuit_failure_threshold = 1
    executor = RateLimitedExecutor(settings=settings, sleep=sleeper)
    with pytest.raises(ValueError):
        asyncio.run(executor.execute(CountingOperation(errors=[ValueError("boom")]), context="ctx", provider="p"))

    op = CountingOperation()
    with pytest.raises(CircuitOpenError):
        asyncio.run(executor.execute(op, context="ctx", provider="p"))
    assert op.attempts == 0


# ── Shared tracker + circuit breaker ─────────────────────────────────

def test_tracker_counts_are_consistent_across_threads():
    tracker = RateLimitTracker()

    def _worker():
        for _ in range(500):
            tracker.record_call("openai")

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert tracker.snapshot()["openai"]["calls"] == 4000


def test_tracker_threshold_from_usage():
    tracker = RateLimitTracker(warning_ratio=0.9)
    assert not tracker.check_threshold("openai")
    tracker.record_usage("openai", RateLimitUsage(limit=1000, used=500, requested=10))
    assert not tracker.check_threshold("openai")
    tracker.record_usage("openai", RateLimitUsage(limit=1000, used=895, requested=10))
    assert tracker.check_threshold("openai")


def test_tracker_block_expires():
    clock = FakeClock()
    tracker = RateLimitTracker(clock=clock)
    info = parse_rate_limit_error(ProviderHTTPError(429, "try again in 30s"))
    tracker.record_rate_limit("groq", info)
    assert tracker.retry_after("groq") == pytest.approx(30.0)
    assert tracker.check_threshold("groq")
    clock.now += 31
    assert tracker.retry_after("groq") == 0.0


def test_circuit_breaker_lifecycle():
    clock = FakeClock()
    breaker = CircuitBreaker("groq", failure_threshold=2, success_threshold=2, open_seconds=60, clock=clock)
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    clock.now += 60
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.before_call()
    breaker.record_success()
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_circuit_breaker_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("groq", failure_threshold=1, open_seconds=10, clock=clock)
    breaker.record_failure()
    clock.now += 10
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
