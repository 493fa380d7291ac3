"""Tests for sliding-window rate limiting."""

import fakeredis
import pytest

from visionboard.config import DEFAULT_RATE_LIMITS
from visionboard.rate_limiter import (
    RateLimitConfig,
    RateLimiterRegistry,
    RedisSlidingWindowLimiter,
    SlidingWindowLimiter,
    tier_for,
)


class Clock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSlidingWindowLimiter:
    """Per-key sliding window."""

    def test_allows_up_to_limit(self):
        """Requests beyond the limit are refused with a reset time."""
        clock = Clock()
        limiter = SlidingWindowLimiter(RateLimitConfig(requests=3, window_seconds=60), clock=clock)

        results = [limiter.limit("user:1") for _ in range(4)]

        assert [r.success for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[-1].reset == 1_060.0

    def test_window_slides(self):
        """Capacity returns as old requests leave the window."""
        clock = Clock()
        limiter = SlidingWindowLimiter(RateLimitConfig(requests=2, window_seconds=60), clock=clock)
        limiter.limit("k")
        clock.now += 30
        limiter.limit("k")
        assert limiter.limit("k").success is False

        # The first request leaves the window at t+60.
        clock.now += 30
        assert limiter.limit("k").success is True
        assert limiter.limit("k").success is False

    def test_keys_are_independent(self):
        """Each identifier has its own budget."""
        limiter = SlidingWindowLimiter(RateLimitConfig(requests=1, window_seconds=60), clock=Clock())

        assert limiter.limit("a").success is True
        assert limiter.limit("b").success is True
        assert limiter.limit("a").success is False

    def test_reset(self):
        """Resetting an identifier clears its window."""
        limiter = SlidingWindowLimiter(RateLimitConfig(requests=1, window_seconds=60), clock=Clock())
        limiter.limit("a")
        limiter.reset("a")

        assert limiter.limit("a").success is True
        assert limiter.get_stats("a")["requests_in_window"] == 1

    def test_idle_keys_are_dropped(self):
        """Identifiers whose requests have all expired are forgotten."""
        clock = Clock()
        limiter = SlidingWindowLimiter(RateLimitConfig(requests=5, window_seconds=60), clock=clock)
        for i in range(100):
            limiter.limit(f"visitor:{i}")

        clock.now += 61
        for i in range(100):
            assert limiter.get_stats(f"visitor:{i}")["requests_in_window"] == 0

        assert limiter._requests == {}

    def test_stats_do_not_create_keys(self):
        """Reading stats for an unseen identifier stores nothing."""
        limiter = SlidingWindowLimiter(RateLimitConfig(requests=5, window_seconds=60), clock=Clock())

        assert limiter.get_stats("nobody")["remaining"] == 5
        assert limiter._requests == {}


class TestRedisSlidingWindowLimiter:
    """Sorted-set window shared through Redis."""

    @pytest.fixture
    def client(self):
        return fakeredis.FakeRedis()

    def test_allows_up_to_limit(self, client):
        """Requests beyond the limit are refused with a reset time."""
        limiter = RedisSlidingWindowLimiter(
            RateLimitConfig(requests=3, window_seconds=60), client, clock=Clock()
        )

        results = [limiter.limit("user:1") for _ in range(4)]

        assert [r.success for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[-1].reset == 1_060.0

    def test_rejected_requests_are_not_counted(self, client):
        """Refused requests do not extend the window."""
        limiter = RedisSlidingWindowLimiter(
            RateLimitConfig(requests=1, window_seconds=60), client, clock=Clock()
        )
        limiter.limit("k")
        limiter.limit("k")
        limiter.limit("k")

        assert client.zcard("visionboard:k") == 1

    def test_window_slides(self, client):
        """Capacity returns as old requests leave the window."""
        clock = Clock()
        limiter = RedisSlidingWindowLimiter(
            RateLimitConfig(requests=2, window_seconds=60), client, clock=clock
        )
        limiter.limit("k")
        clock.now += 30
        limiter.limit("k")
        assert limiter.limit("k").success is False

        clock.now += 30
        assert limiter.limit("k").success is True
        assert limiter.limit("k").success is False

    def test_shared_between_limiters(self, client):
        """Two limiters on one Redis see the same window, like two workers would."""
        config = RateLimitConfig(requests=2, window_seconds=60)
        first = RedisSlidingWindowLimiter(config, client, clock=Clock())
        second = RedisSlidingWindowLimiter(config, client, clock=Clock())

        assert first.limit("k").success is True
        assert second.limit("k").success is True
        assert first.limit("k").success is False

    def test_key_expires_with_window(self, client):
        """Keys carry a TTL of one window."""
        limiter = RedisSlidingWindowLimiter(
            RateLimitConfig(requests=2, window_seconds=60), client, clock=Clock()
        )
        limiter.limit("k")

        assert 0 < client.pttl("visionboard:k") <= 60_000

    def test_reset(self, client):
        """Reset clears one identifier or the whole prefix."""
        limiter = RedisSlidingWindowLimiter(
            RateLimitConfig(requests=1, window_seconds=60), client, prefix="visionboard:general:free", clock=Clock()
        )
        limiter.limit("a")
        limiter.limit("b")

        limiter.reset("a")
        assert limiter.limit("a").success is True

        limiter.reset()
        assert limiter.get_stats("b")["requests_in_window"] == 0


class TestRegistry:
    """Limiter lookup by operation class and tier."""

    def test_tiers_have_separate_budgets(self):
        """Free and paid budgets are tracked separately."""
        registry = RateLimiterRegistry(DEFAULT_RATE_LIMITS, clock=Clock())
        free_limit = DEFAULT_RATE_LIMITS["bg-removal"]["free"]["requests"]

        for _ in range(free_limit):
            assert registry.check_rate_limit("visitor:v1", "bg-removal", is_paid=False).success
        assert not registry.check_rate_limit("visitor:v1", "bg-removal", is_paid=False).success
        assert registry.check_rate_limit("visitor:v1", "bg-removal", is_paid=True).success

    def test_classes_have_separate_budgets(self):
        """Operation classes do not share a budget."""
        registry = RateLimiterRegistry(
            {
                "general": {"free": {"requests": 1, "window": 60}, "paid": {"requests": 1, "window": 60}},
                "upload": {"free": {"requests": 1, "window": 60}, "paid": {"requests": 1, "window": 60}},
            },
            clock=Clock(),
        )

        assert registry.check_rate_limit("user:u", "general", False).success
        assert registry.check_rate_limit("user:u", "upload", False).success
        assert not registry.check_rate_limit("user:u", "general", False).success

    def test_limiter_is_cached_and_keyed(self):
        """One limiter per class and tier, keyed under the visionboard prefix."""
        registry = RateLimiterRegistry()

        limiter = registry.get("image-gen", "paid")

        assert registry.get("image-gen", "paid") is limiter
        assert limiter.get_stats("user:1")["key"] == "visionboard:image-gen:paid:user:1"

    def test_redis_backed_registry(self):
        """With a Redis client the registry stores windows in Redis."""
        client = fakeredis.FakeRedis()
        registry = RateLimiterRegistry(DEFAULT_RATE_LIMITS, clock=Clock(), redis_client=client)

        result = registry.check_rate_limit("user:1", "image-gen", is_paid=True)

        assert result.success is True
        assert isinstance(registry.get("image-gen", "paid"), RedisSlidingWindowLimiter)
        assert client.zcard("visionboard:image-gen:paid:user:1") == 1

    def test_unknown_class(self):
        """Unknown operation classes are an error."""
        with pytest.raises(KeyError):
            RateLimiterRegistry().get("nope", "free")

    def test_reset_clears_all_limiters(self):
        """Registry reset clears every limiter."""
        registry = RateLimiterRegistry(
            {"general": {"free": {"requests": 1, "window": 60}, "paid": {"requests": 1, "window": 60}}},
            clock=Clock(),
        )
        registry.check_rate_limit("k", "general", False)
        registry.reset()

        assert registry.check_rate_limit("k", "general", False).success


def test_tier_for():
    """Paid status maps to the paid tier."""
    assert tier_for(True) == "paid"
    assert tier_for(False) == "free"
