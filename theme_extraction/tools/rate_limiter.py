"""
Rate-limited call executor for external LLM calls.

Every extraction and labeling call goes through RateLimitedExecutor.execute().
On a rate-limit response (HTTP 429, or a provider message such as
"Rate limit reached ... Limit 100000, Used 99996, Requested 400. Please try
again in 7m12.5s") it parses the retry hint and quota usage, logs the usage
percentage, waits min(retry_after, 2^attempt * base_delay) and tries again.
Anything else propagates on the first failure.

When retries run out the executor raises a typed RateLimitError carrying the
retry time and usage, never a generic exception. Swallowing that error is how
a run ends up "complete" with zero themes.

Pieces:
  - parse_rate_limit_error(): signature detection + retry/usage parsing
  - BackoffPolicy / retry_async(): the retry combinator (predicate, backoff, max attempts)
  - RateLimitTracker: usage state shared across concurrent runs (threading.Lock)
  - CircuitBreaker: per-provider CLOSED → OPEN → HALF_OPEN fast-fail
  - RateLimitedExecutor: wires the above together
"""

import asyncio
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..config import get_settings
from ..errors import CircuitOpenError, RateLimitError, RateLimitUsage

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS = 429
# Provider messages can embed whole request payloads; regexes only see the head
MAX_ERROR_MESSAGE_LENGTH = 1000
DEFAULT_RETRY_SECONDS = 300
MAX_RETRY_SECONDS = 3600

_RE_RETRY_MIN_SEC = re.compile(r"try again in (\d{1,3})m([\d.]{1,10})s", re.IGNORECASE)
_RE_RETRY_SEC = re.compile(r"try again in ([\d.]{1,10})s", re.IGNORECASE)
_RE_RETRY_AFTER_HEADER = re.compile(r"retry[- ]after[:=\s]+(\d{1,5})", re.IGNORECASE)
_RE_USAGE = re.compile(
    r"Limit (\d{1,10}), Used (\d{1,10}), Requested (\d{1,10})", re.IGNORECASE,
)


# ══════════════════════════════════════════════════════════════════════════════
# PARSING
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RateLimitInfo:
    """What a rate-limit response told us."""
    retry_after_seconds: int
    usage: Optional[RateLimitUsage]
    message: str
    # False when retry_after_seconds is the default, not a parsed hint
    parsed_retry: bool = True


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _error_message(error: BaseException) -> str:
    parts = [str(error)]
    body = getattr(error, "body", None)
    if body and str(body) not in parts[0]:
        parts.append(str(body))
    return " ".join(parts)[:MAX_ERROR_MESSAGE_LENGTH]


def is_rate_limit_error(error: BaseException) -> bool:
    """HTTP 429, or a message mentioning 429 / rate limit."""
    if isinstance(error, RateLimitError):
        return True
    if _status_code(error) == RATE_LIMIT_STATUS:
        return True
    message = _error_message(error)
    return "429" in message or "rate limit" in message.lower()


def parse_retry_after(
    message: str,
    default_seconds: int = DEFAULT_RETRY_SECONDS,
    max_seconds: int = MAX_RETRY_SECONDS,
) -> tuple:
    """Return (seconds, parsed). "try again in 2m0s" → (120, True)."""
    text = message[:MAX_ERROR_MESSAGE_LENGTH]
    match = _RE_RETRY_MIN_SEC.search(text)
    if match:
        try:
            seconds = int(match.group(1)) * 60 + float(match.group(2))
            return min(math.ceil(seconds), max_seconds), True
        except ValueError:
            pass
    match = _RE_RETRY_SEC.search(text)
    if match:
        try:
            return min(math.ceil(float(match.group(1))), max_seconds), True
        except ValueError:
            pass
    match = _RE_RETRY_AFTER_HEADER.search(text)
    if match:
        return min(int(match.group(1)), max_seconds), True
    return default_seconds, False


def parse_usage(message: str) -> Optional[RateLimitUsage]:
    """"Limit 100000, Used 99996, Requested 400" → RateLimitUsage."""
    match = _RE_USAGE.search(message[:MAX_ERROR_MESSAGE_LENGTH])
    if not match:
        return None
    return RateLimitUsage(
        limit=int(match.group(1)),
        used=int(match.group(2)),
        requested=int(match.group(3)),
    )


def parse_rate_limit_error(
    error: BaseException,
    default_retry_seconds: int = DEFAULT_RETRY_SECONDS,
    max_retry_seconds: int = MAX_RETRY_SECONDS,
) -> Optional[RateLimitInfo]:
    """Parse a provider error. None when it is not a rate-limit error."""
    if not is_rate_limit_error(error):
        return None
    if isinstance(error, RateLimitError):
        return RateLimitInfo(error.retry_after_seconds, error.usage, error.details or str(error))
    message = _error_message(error)
    seconds, parsed = parse_retry_after(message, default_retry_seconds, max_retry_seconds)
    return RateLimitInfo(
        retry_after_seconds=seconds,
        usage=parse_usage(message),
        message=message,
        parsed_retry=parsed,
    )


# ══════════════════════════════════════════════════════════════════════════════
# RETRY COMBINATOR
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff capped by the provider's own retry hint."""
    base_delay: float = 5.0

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        exponential = (2 ** attempt) * self.base_delay
        if retry_after is None:
            return exponential
        return min(float(retry_after), exponential)

    def total_bound(self, max_attempts: int) -> float:
        """Upper bound on total sleep across max_attempts calls (no sleep after the last)."""
        return sum(self.delay(a) for a in range(1, max_attempts))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    is_retryable: Callable[[BaseException], bool],
    delay_for: Callable[[int, BaseException], float],
    max_attempts: int,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call `operation` at most `max_attempts` times.

    Retries only when `is_retryable(error)`; the last error is re-raised
    unchanged so the caller decides how to type it.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not is_retryable(e):
                raise
            await sleep(delay_for(attempt, e))


# ══════════════════════════════════════════════════════════════════════════════
# SHARED STATE
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ProviderUsage:
    provider: str
    calls: int = 0
    rate_limited: int = 0
    last_usage: Optional[RateLimitUsage] = None
    blocked_until: float = 0.0
    last_message: str = ""


class RateLimitTracker:
    """Usage counters shared by every run that talks to the same providers.

    Inject one instance into every executor that should see the same quota.
    All mutation happens under a threading.Lock so concurrent runs (threads or
    event loops) see consistent counts.
    """

    def __init__(self, warning_ratio: float = 0.9, clock: Callable[[], float] = time.monotonic):
        self.warning_ratio = warning_ratio
        self._clock = clock
        self._lock = threading.Lock()
        self._providers: Dict[str, ProviderUsage] = {}

    def _get(self, provider: str) -> ProviderUsage:
        if provider not in self._providers:
            self._providers[provider] = ProviderUsage(provider=provider)
        return self._providers[provider]

    def record_call(self, provider: str) -> int:
        with self._lock:
            entry = self._get(provider)
            entry.calls += 1
            return entry.calls

    def record_usage(self, provider: str, usage: RateLimitUsage) -> None:
        with self._lock:
            self._get(provider).last_usage = usage

    def record_rate_limit(self, provider: str, info: RateLimitInfo) -> None:
        with self._lock:
            entry = self._get(provider)
            entry.rate_limited += 1
            entry.last_message = info.message[:200]
            if info.usage is not None:
                entry.last_usage = info.usage
            entry.blocked_until = max(
                entry.blocked_until, self._clock() + info.retry_after_seconds,
            )

    def check_threshold(self, provider: str, threshold: Optional[float] = None) -> bool:
        """True when the provider is at/over `threshold` of its quota or still blocked."""
        ratio = self.warning_ratio if threshold is None else threshold
        with self._lock:
            entry = self._providers.get(provider)
            if entry is None:
                return False
            if entry.blocked_until > self._clock():
                return True
            usage = entry.last_usage
            if usage is None or usage.limit <= 0:
                return False
            return (usage.used + usage.requested) / usage.limit >= ratio

    def retry_after(self, provider: str) -> float:
        with self._lock:
            entry = self._providers.get(provider)
            if entry is None:
                return 0.0
            return max(0.0, entry.blocked_until - self._clock())

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {
                    "calls": e.calls,
                    "rate_limited": e.rate_limited,
                    "usage": e.last_usage.model_dump() if e.last_usage else None,
                    "usage_percentage": e.last_usage.percentage if e.last_usage else None,
                }
                for name, e in self._providers.items()
            }


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Per-provider circuit breaker.

    CLOSED: calls flow. `failure_threshold` consecutive failures → OPEN.
    OPEN: calls fail fast with CircuitOpenError for `open_seconds`, then HALF_OPEN.
    HALF_OPEN: trial calls flow; `success_threshold` successes → CLOSED,
    any failure → OPEN again.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        open_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.open_seconds = open_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    def _refresh(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.open_seconds:
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info(f"Circuit {self.name}: OPEN → HALF_OPEN")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def before_call(self) -> None:
        with self._lock:
            self._refresh()
            if self._state == CircuitState.OPEN:
                remaining = self.open_seconds - (self._clock() - self._opened_at)
                raise CircuitOpenError(self.name, max(0.0, remaining))

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.success_threshold:
                    self._state = CircuitState.CLOSED
                    logger.info(f"Circuit {self.name}: HALF_OPEN → CLOSED")

    def record_failure(self) -> None:
        with self._lock:
            self._refresh()
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                return
            self._failures += 1
            if self._failures >= self.failure_threshold and self._state == CircuitState.CLOSED:
                self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._successes = 0
        logger.warning(
            f"Circuit {self.name}: OPEN after {self._failures} failure(s), "
            f"fast-failing for {self.open_seconds:.0f}s"
        )


# ══════════════════════════════════════════════════════════════════════════════
# EXECUTOR
# ══════════════════════════════════════════════════════════════════════════════

class RateLimitedExecutor:
    """Runs external calls with rate-limit-aware retry and typed exhaustion.

    Usage:
        executor = RateLimitedExecutor(tracker=shared_tracker)
        text = await executor.execute(lambda: llm.complete(prompt), "extract batch 2/5",
                                      provider=llm.provider_name)
    """

    def __init__(
        self,
        tracker: Optional[RateLimitTracker] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: Optional[int] = None,
        settings=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.tracker = tracker or RateLimitTracker(warning_ratio=self.settings.rate_limit_warning_ratio)
        self.backoff = backoff or BackoffPolicy(self.settings.rate_limit_base_delay_seconds)
        self.max_retries = max_retries or self.settings.rate_limit_max_retries
        self._sleep = sleep
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breaker_lock = threading.Lock()
        self.total_wait_seconds = 0.0

    def breaker(self, provider: str) -> CircuitBreaker:
        with self._breaker_lock:
            if provider not in self._breakers:
                s = self.settings
                self._breakers[provider] = CircuitBreaker(
                    provider,
                    failure_threshold=s.circuit_failure_threshold,
                    success_threshold=s.circuit_success_threshold,
                    open_seconds=s.circuit_open_seconds,
                    clock=self._clock,
                )
            return self._breakers[provider]

    def _parse(self, error: BaseException) -> Optional[RateLimitInfo]:
        return parse_rate_limit_error(
            error,
            default_retry_seconds=self.settings.rate_limit_default_retry_seconds,
            max_retry_seconds=self.settings.rate_limit_max_retry_seconds,
        )

    def _log_rate_limit(self, provider: str, context: str, attempt: int, max_attempts: int, info: RateLimitInfo):
        usage = info.usage
        usage_str = (
            f"usage {usage.percentage:.2f}% ({usage.used:,}/{usage.limit:,}, requested {usage.requested:,})"
            if usage else "usage unknown"
        )
        hint = "" if info.parsed_retry else " (default, no hint in response)"
        logger.warning(
            f"Rate limit from {provider} during {context} (attempt {attempt}/{max_attempts}): "
            f"retry after {info.retry_after_seconds}s{hint}, {usage_str}"
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str,
        max_retries: Optional[int] = None,
        provider: str = "llm",
    ) -> T:
        """Run `operation`, retrying rate-limit failures up to `max_retries` attempts in total."""
        max_attempts = max_retries or self.max_retries
        breaker = self.breaker(provider)
        breaker.before_call()

        async def _attempt():
            self.tracker.record_call(provider)
            return await operation()

        def _delay_for(attempt: int, error: BaseException) -> float:
            info = self._parse(error)
            self._log_rate_limit(provider, context, attempt, max_attempts, info)
            self.tracker.record_rate_limit(provider, info)
            wait = self.backoff.delay(attempt, info.retry_after_seconds)
            self.total_wait_seconds += wait
            logger.info(f"Backing off {wait:.1f}s before retrying {context}")
            return wait

        try:
            result = await retry_async(
                _attempt,
                is_retryable=is_rate_limit_error,
                delay_for=_delay_for,
                max_attempts=max_attempts,
                sleep=self._sleep,
            )
        except Exception as e:
            info = self._parse(e)
            breaker.record_failure()
            if info is None:
                raise
            self._log_rate_limit(provider, context, max_attempts, max_attempts, info)
            self.tracker.record_rate_limit(provider, info)
            logger.error(f"Rate limit retries exhausted for {context} ({max_attempts} attempts)")
            raise RateLimitError(
                provider=provider,
                retry_after_seconds=info.retry_after_seconds,
                usage=info.usage,
                details=info.message,
            ) from e
        breaker.record_success()
        return result
