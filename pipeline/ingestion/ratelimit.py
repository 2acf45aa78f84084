"""
Dual-window rate limiter for quota-constrained providers.

Tracks a per-minute and a per-hour request counter, reconciles them against
the provider's x-ratelimit-* headers, and backs off on HTTP 429. The limiter
is owned by a single logical flow, so its state is mutated without locks.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional

from pipeline.config import RateLimitConfig
from pipeline.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0

# A reported limit at or below this is assumed to describe the minute window.
MINUTE_LIMIT_CEILING = 100


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup that also works on plain dicts."""
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        for key, val in headers.items():
            if key.lower() == name:
                return val
    return value


def _header_int(headers: Optional[Mapping[str, str]], name: str) -> Optional[int]:
    raw = _header(headers, name)
    if raw is None or raw == "":
        return None
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


@dataclass
class RateLimitState:
    """Process-local counters; never persisted."""
    requests_this_minute: int
    requests_this_hour: int
    minute_reset_at: float
    hour_reset_at: float
    last_request_at: Optional[float] = None


@dataclass
class RetryPolicy:
    """
    Bounded retry for 429 responses.

    max_attempts counts the original call, so the default of 2 allows exactly
    one retry.
    """
    max_attempts: int = 2
    default_backoff_seconds: float = 60.0
    reset_buffer_seconds: float = 5.0

    def backoff_seconds(self, headers: Optional[Mapping[str, str]] = None) -> float:
        reset = _header_int(headers, "x-ratelimit-reset")
        if reset is not None and reset >= 0:
            return reset + self.reset_buffer_seconds
        return self.default_backoff_seconds

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            default_backoff_seconds=config.default_backoff_seconds,
            reset_buffer_seconds=config.reset_buffer_seconds,
        )


class RateLimiter:
    """
    Guards calls to a provider with minute and hour quotas.

    Usage
    -----
    1.  limiter = RateLimiter(minute_limit=60, hour_limit=2000)
    2.  response = await limiter.send(lambda: client.get(url))
        or, step by step:
        await limiter.wait_if_needed(); resp = await call(); limiter.record_request(resp.headers)
    """

    def __init__(
        self,
        minute_limit: int = 60,
        hour_limit: int = 2000,
        policy: Optional[RetryPolicy] = None,
        wait_buffer_seconds: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "provider",
    ):
        self.minute_limit = minute_limit
        self.hour_limit = hour_limit
        self.policy = policy or RetryPolicy()
        self.wait_buffer_seconds = wait_buffer_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        now = clock()
        self.state = RateLimitState(
            requests_this_minute=0,
            requests_this_hour=0,
            minute_reset_at=now + MINUTE_SECONDS,
            hour_reset_at=now + HOUR_SECONDS,
        )

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs) -> "RateLimiter":
        return cls(
            minute_limit=config.minute_limit,
            hour_limit=config.hour_limit,
            policy=RetryPolicy.from_config(config),
            wait_buffer_seconds=config.wait_buffer_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Window bookkeeping
    # ------------------------------------------------------------------

    def _roll_windows(self) -> float:
        """Reset any window whose boundary has passed. Returns the current time."""
        now = self._clock()
        if now >= self.state.minute_reset_at:
            self.state.requests_this_minute = 0
            self.state.minute_reset_at = now + MINUTE_SECONDS
        if now >= self.state.hour_reset_at:
            self.state.requests_this_hour = 0
            self.state.hour_reset_at = now + HOUR_SECONDS
        return now

    def can_make_request(self) -> bool:
        self._roll_windows()
        return (
            self.state.requests_this_minute < self.minute_limit
            and self.state.requests_this_hour < self.hour_limit
        )

    def required_delay(self) -> float:
        """Seconds until both windows have room again (0 when they already do)."""
        now = self._roll_windows()
        delay = 0.0
        if self.state.requests_this_minute >= self.minute_limit:
            delay = max(delay, self.state.minute_reset_at - now)
        if self.state.requests_this_hour >= self.hour_limit:
            delay = max(delay, self.state.hour_reset_at - now)
        return delay

    async def wait_if_needed(self) -> None:
        delay = self.required_delay()
        while delay > 0:
            logger.info(
                "Rate limit reached for %s, waiting %.1fs (%d/%d per minute, %d/%d per hour)",
                self.name, delay,
                self.state.requests_this_minute, self.minute_limit,
                self.state.requests_this_hour, self.hour_limit,
            )
            await self._sleep(delay + self.wait_buffer_seconds)
            delay = self.required_delay()

    def record_request(self, headers: Optional[Mapping[str, str]] = None) -> None:
        """Account for a call that has already completed."""
        now = self._roll_windows()
        self.state.requests_this_minute += 1
        self.state.requests_this_hour += 1
        self.state.last_request_at = now

        if headers:
            self._reconcile(headers, now)

        logger.debug(
            "Rate limit status for %s: %d/%d per minute, %d/%d per hour",
            self.name,
            self.state.requests_this_minute, self.minute_limit,
            self.state.requests_this_hour, self.hour_limit,
        )

    def _reconcile(self, headers: Mapping[str, str], now: float) -> None:
        """Trust the provider's own usage figures over local counting."""
        used = _header_int(headers, "x-ratelimit-used")
        limit = _header_int(headers, "x-ratelimit-limit")
        reset = _header_int(headers, "x-ratelimit-reset")
        if used is None or not limit:
            return

        if limit <= MINUTE_LIMIT_CEILING:
            self.state.requests_this_minute = used
            if reset:
                self.state.minute_reset_at = now + reset
        else:
            self.state.requests_this_hour = used
            if reset:
                self.state.hour_reset_at = now + reset

    async def handle_429(self, headers: Optional[Mapping[str, str]] = None) -> float:
        """Sleep for the provider's reset hint (or the default). Returns the wait."""
        wait = self.policy.backoff_seconds(headers)
        logger.warning("Rate limit exceeded (429) for %s, backing off %.0fs", self.name, wait)
        await self._sleep(wait)
        return wait

    # ------------------------------------------------------------------
    # Guarded call
    # ------------------------------------------------------------------

    async def send(self, call: Callable[[], Awaitable]):
        """
        Run call() under the limiter: wait, call, record, and on 429 back off
        and retry until the policy's attempts are exhausted.

        Raises:
            RateLimitExceeded: if the final attempt is still rejected with 429.
        """
        attempts = max(1, self.policy.max_attempts)
        for attempt in range(1, attempts + 1):
            await self.wait_if_needed()
            response = None
            try:
                response = await call()
            finally:
                # A call that raised may still have been counted by the provider.
                self.record_request(response.headers if response is not None else None)
            if response.status_code != 429:
                return response
            if attempt < attempts:
                await self.handle_429(response.headers)

        raise RateLimitExceeded(
            f"{self.name} still rate limited after {attempts} attempts",
            source=self.name,
        )

    def get_status(self) -> dict:
        """Snapshot for monitoring endpoints."""
        now = self._roll_windows()
        return {
            "minute_usage": {
                "used": self.state.requests_this_minute,
                "limit": self.minute_limit,
                "remaining": max(0, self.minute_limit - self.state.requests_this_minute),
            },
            "hour_usage": {
                "used": self.state.requests_this_hour,
                "limit": self.hour_limit,
                "remaining": max(0, self.hour_limit - self.state.requests_this_hour),
            },
            "can_make_request": self.can_make_request(),
            "seconds_until_reset": round(
                min(self.state.minute_reset_at, self.state.hour_reset_at) - now, 3
            ),
        }
