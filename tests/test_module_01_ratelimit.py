"""
Tests for Module 01 — Rate Limiter.
Tests window accounting, header reconciliation, 429 backoff and the bounded retry.
"""

import pytest

from pipeline.config import RateLimitConfig
from pipeline.errors import RateLimitExceeded
from pipeline.ingestion.ratelimit import RateLimiter, RetryPolicy


class FakeClock:
    """Monotonic clock whose sleep() just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, headers=None):
        self.status_code = status_code
        self.headers = headers or {}


def make_limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    return RateLimiter(clock=clock, sleep=clock.sleep, name="test", **kwargs)


# ============================================================
# Window accounting
# ============================================================

class TestWindows:
    def test_fresh_limiter_allows_requests(self):
        limiter = make_limiter(FakeClock())
        assert limiter.can_make_request()
        assert limiter.required_delay() == 0.0

    def test_record_increments_both_counters(self):
        limiter = make_limiter(FakeClock())
        limiter.record_request()
        limiter.record_request()
        assert limiter.state.requests_this_minute == 2
        assert limiter.state.requests_this_hour == 2

    def test_minute_limit_blocks(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=3)
        for _ in range(3):
            limiter.record_request()
        assert not limiter.can_make_request()
        assert limiter.required_delay() == pytest.approx(60.0)

    def test_minute_window_resets_after_boundary(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=3)
        for _ in range(3):
            limiter.record_request()
        clock.now += 60.0
        assert limiter.can_make_request()
        assert limiter.state.requests_this_minute == 0
        assert limiter.state.requests_this_hour == 3

    def test_sixty_per_minute_boundary(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=60)
        for _ in range(59):
            limiter.record_request()
        assert limiter.can_make_request()
        limiter.record_request()
        assert not limiter.can_make_request()

        reset_at = limiter.state.minute_reset_at
        clock.now = reset_at - 0.001
        assert not limiter.can_make_request()
        clock.now = reset_at
        assert limiter.can_make_request()

    def test_hour_limit_blocks_past_minute_reset(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=100, hour_limit=5)
        for _ in range(5):
            limiter.record_request()
        clock.now += 61.0
        assert not limiter.can_make_request()
        assert limiter.required_delay() == pytest.approx(3600.0 - 61.0)

    @pytest.mark.asyncio
    async def test_wait_if_needed_sleeps_until_reset_plus_buffer(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=1, wait_buffer_seconds=0.1)
        limiter.record_request()
        await limiter.wait_if_needed()
        assert clock.sleeps == [pytest.approx(60.1)]
        assert limiter.can_make_request()

    @pytest.mark.asyncio
    async def test_wait_if_needed_no_sleep_when_room(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        await limiter.wait_if_needed()
        assert clock.sleeps == []


# ============================================================
# Header reconciliation
# ============================================================

class TestHeaderReconciliation:
    def test_small_limit_overrides_minute_counter(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.record_request({
            "x-ratelimit-used": "42",
            "x-ratelimit-limit": "60",
            "x-ratelimit-remaining": "18",
            "x-ratelimit-reset": "30",
        })
        assert limiter.state.requests_this_minute == 42
        assert limiter.state.requests_this_hour == 1
        assert limiter.state.minute_reset_at == pytest.approx(clock.now + 30)

    def test_large_limit_overrides_hour_counter(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        limiter.record_request({
            "X-RateLimit-Used": "1500",
            "X-RateLimit-Limit": "2000",
            "X-RateLimit-Reset": "1200",
        })
        assert limiter.state.requests_this_hour == 1500
        assert limiter.state.requests_this_minute == 1
        assert limiter.state.hour_reset_at == pytest.approx(clock.now + 1200)

    def test_unparseable_headers_are_ignored(self):
        limiter = make_limiter(FakeClock())
        limiter.record_request({"x-ratelimit-used": "lots", "x-ratelimit-limit": "60"})
        assert limiter.state.requests_this_minute == 1

    def test_reconciled_usage_can_block(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=60)
        limiter.record_request({"x-ratelimit-used": "60", "x-ratelimit-limit": "60",
                                "x-ratelimit-reset": "12"})
        assert not limiter.can_make_request()
        assert limiter.required_delay() == pytest.approx(12.0)


# ============================================================
# 429 handling and bounded retry
# ============================================================

class TestRetryPolicy:
    def test_backoff_uses_reset_header_plus_buffer(self):
        assert RetryPolicy().backoff_seconds({"x-ratelimit-reset": "10"}) == 15.0

    def test_backoff_defaults_without_header(self):
        assert RetryPolicy().backoff_seconds({}) == 60.0
        assert RetryPolicy().backoff_seconds(None) == 60.0

    def test_from_config(self):
        cfg = RateLimitConfig(default_backoff_seconds=30.0, reset_buffer_seconds=2.0, max_attempts=3)
        policy = RetryPolicy.from_config(cfg)
        assert policy.max_attempts == 3
        assert policy.backoff_seconds({}) == 30.0
        assert policy.backoff_seconds({"x-ratelimit-reset": "4"}) == 6.0


class TestSend:
    @pytest.mark.asyncio
    async def test_success_records_after_call(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        seen = []

        async def call():
            seen.append(limiter.state.requests_this_minute)
            return FakeResponse(200)

        resp = await limiter.send(call)
        assert resp.status_code == 200
        assert seen == [0]
        assert limiter.state.requests_this_minute == 1

    @pytest.mark.asyncio
    async def test_failed_call_is_still_recorded(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        seen = []

        async def call():
            seen.append(limiter.state.requests_this_minute)
            raise TimeoutError("read timed out")

        with pytest.raises(TimeoutError):
            await limiter.send(call)
        assert seen == [0]
        assert limiter.state.requests_this_minute == 1
        assert limiter.state.requests_this_hour == 1

    @pytest.mark.asyncio
    async def test_single_429_is_retried_after_backoff(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        responses = [FakeResponse(429, {"x-ratelimit-reset": "10"}), FakeResponse(200)]

        async def call():
            return responses.pop(0)

        resp = await limiter.send(call)
        assert resp.status_code == 200
        assert clock.sleeps == [15.0]
        assert limiter.state.requests_this_minute == 2

    @pytest.mark.asyncio
    async def test_429_without_reset_waits_default(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        responses = [FakeResponse(429), FakeResponse(200)]

        async def call():
            return responses.pop(0)

        await limiter.send(call)
        assert clock.sleeps == [60.0]

    @pytest.mark.asyncio
    async def test_second_429_raises(self):
        clock = FakeClock()
        limiter = make_limiter(clock)
        calls = []

        async def call():
            calls.append(1)
            return FakeResponse(429, {"x-ratelimit-reset": "1"})

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.send(call)
        assert len(calls) == 2
        assert exc_info.value.status_code == 429
        assert clock.sleeps == [6.0]


class TestStatus:
    def test_get_status_reports_usage(self):
        clock = FakeClock()
        limiter = make_limiter(clock, minute_limit=60, hour_limit=2000)
        limiter.record_request()
        status = limiter.get_status()
        assert status["minute_usage"] == {"used": 1, "limit": 60, "remaining": 59}
        assert status["hour_usage"]["remaining"] == 1999
        assert status["can_make_request"] is True
        assert status["seconds_until_reset"] == pytest.approx(60.0)

    def test_from_config(self):
        cfg = RateLimitConfig(minute_limit=10, hour_limit=100)
        limiter = RateLimiter.from_config(cfg, clock=FakeClock(), name="cfg")
        assert limiter.minute_limit == 10
        assert limiter.hour_limit == 100
        assert limiter.name == "cfg"
