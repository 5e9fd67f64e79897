"""
Request throttling and retry policy for the Northpass API.

Two independent profiles exist: the standard one for most endpoints and a
slower one for the course properties sub-API. Each profile is a
pyrate-limiter ``Limiter`` enforcing every window at once: ``rate`` requests
per ``window`` plus one request per ``min_delay``. Waiters on a profile are
released in arrival order.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pyrate_limiter import Duration, InMemoryBucket, Limiter, Rate, SingleBucketFactory

logger = logging.getLogger(__name__)

_MS = Duration.SECOND.value


def _ms(seconds: float) -> int:
    return max(1, round(seconds * _MS))


@dataclass(frozen=True)
class RateProfile:
    rate: int          # requests per window
    window: float      # seconds
    min_delay: float   # seconds between consecutive requests

    def rates(self) -> list[Rate]:
        """pyrate-limiter windows for this profile, shortest first.

        A window implied by a stricter one is dropped: a bucket rejects rate
        lists whose limits and intervals do not both grow.
        """
        window = Rate(self.rate, _ms(self.window))
        if self.min_delay <= 0:
            return [window]
        gap = Rate(1, _ms(self.min_delay))
        if self.rate == 1:
            return [Rate(1, max(gap.interval, window.interval))]
        if gap.interval >= window.interval or self.min_delay * self.rate > self.window:
            return [gap]
        return [gap, window]


STANDARD_PROFILE = RateProfile(rate=5, window=1.0, min_delay=0.2)
PROPERTIES_PROFILE = RateProfile(rate=1, window=1.0, min_delay=1.0)


class _Bucket(InMemoryBucket):
    """In-memory sliding log stamped from an injectable seconds clock."""

    def __init__(self, rates: list[Rate], clock: Callable[[], float]) -> None:
        super().__init__(rates)
        self._seconds = clock

    def now(self) -> int:
        return round(self._seconds() * _MS)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for retryable HTTP statuses (429 by default)."""
    max_retries: int = 3
    base_delay: float = 2.0
    factor: float = 3.0
    jitter: float = 1.0
    retry_statuses: frozenset[int] = field(default_factory=lambda: frozenset({429}))

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        status = getattr(error, "status", None)
        return attempt < self.max_retries and status in self.retry_statuses

    def backoff(self, attempt: int) -> float:
        """2-3s, 6-7s, 18-19s with the defaults."""
        return self.base_delay * self.factor ** attempt + random.uniform(0, self.jitter)


class _ProfileState:
    def __init__(self, name: str, profile: RateProfile, clock: Callable[[], float]) -> None:
        rates = profile.rates()
        self.name = name
        self.profile = profile
        self.lock = asyncio.Lock()
        self.bucket = _Bucket(rates, clock)
        # leaked inline on every dispatch, no background thread
        self.limiter = Limiter(SingleBucketFactory(self.bucket, schedule_leak=False))
        # polling step while the bucket is full
        self.poll = min(rate.interval for rate in rates) / _MS / 20
        self.dispatched = 0
        self.throttled = 0


class RateLimiter:
    """
    Throttles coroutines against the standard or properties profile.

    Usage:
        limiter = RateLimiter()
        response = await limiter.call(lambda: client.get("/v2/courses"))
    """

    def __init__(
        self,
        standard: RateProfile = STANDARD_PROFILE,
        properties: RateProfile = PROPERTIES_PROFILE,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._standard = _ProfileState("standard", standard, clock)
        self._properties = _ProfileState("properties", properties, clock)
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self.retries = 0

    def _state(self, properties: bool) -> _ProfileState:
        return self._properties if properties else self._standard

    async def acquire(self, properties: bool = False) -> None:
        """Wait until the selected profile allows one more request, then claim it."""
        state = self._state(properties)
        # Held while sleeping: later arrivals queue behind this one (FIFO).
        async with state.lock:
            while not state.limiter.try_acquire(state.name, blocking=False):
                state.throttled += 1
                await self._sleep(state.poll)
            state.dispatched += 1
            state.bucket.leak(state.bucket.now())

    async def call(
        self,
        fn: Callable[[], Awaitable[Any]],
        properties: bool = False,
        policy: RetryPolicy | None = None,
    ) -> Any:
        """Run ``fn`` under the rate limit, retrying retryable failures with backoff."""
        policy = policy or self.retry_policy
        attempt = 0
        while True:
            await self.acquire(properties)
            try:
                return await fn()
            except Exception as exc:
                if not policy.should_retry(exc, attempt):
                    raise
                delay = policy.backoff(attempt)
                attempt += 1
                self.retries += 1
                logger.warning(
                    "Rate limited, backing off for %.1fs (attempt %d/%d)",
                    delay, attempt, policy.max_retries,
                )
                await self._sleep(delay)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            state.name: {
                "dispatched": state.dispatched,
                "throttled": state.throttled,
                "inWindow": state.bucket.count(),
            }
            for state in (self._standard, self._properties)
        }
        stats["retries"] = self.retries
        return stats
