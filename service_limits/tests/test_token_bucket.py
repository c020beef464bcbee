"""
Unit tests for the token bucket algorithm.
"""

import pytest

from service_limits.app.ratelimit.limiter import RateLimitAlgorithm, RateLimiter
from service_limits.app.ratelimit.modes import ConsumeMode
from service_limits.app.ratelimit.token_bucket import apply_token_bucket, state_keys


class TestApplyTokenBucket:
    """Test cases for the Python token bucket step."""

    def test_fresh_bucket_starts_full(self):
        """Test a bucket with no state is full and refill starts now."""
        step = apply_token_bucket(None, None, capacity=10, window_ms=60000, units=1, now_ms=5000)

        assert step.allowed is True
        assert step.tokens == 9
        assert step.last_refill_ms == 5000

    def test_refill_is_proportional_to_elapsed_time(self):
        """Test refill adds floor(elapsed * capacity / window) tokens."""
        step = apply_token_bucket(0, 0, capacity=10, window_ms=60000, units=1, now_ms=12500, consume=False)

        assert step.tokens == 2
        assert step.last_refill_ms == 12500

    def test_partial_refill_keeps_timestamp(self):
        """Test less than one token of elapsed time does not move last refill."""
        step = apply_token_bucket(0, 0, capacity=10, window_ms=60000, units=1, now_ms=5999, consume=False)

        assert step.tokens == 0
        assert step.last_refill_ms == 0
        assert step.allowed is False

    def test_refill_capped_at_capacity(self):
        """Test tokens never exceed capacity."""
        step = apply_token_bucket(5, 0, capacity=10, window_ms=60000, units=1, now_ms=600000, consume=False)

        assert step.tokens == 10

    def test_rejection_wait_time(self):
        """Test wait time is the time needed to refill the shortfall."""
        step = apply_token_bucket(2, 1000, capacity=10, window_ms=60000, units=5, now_ms=1000)

        assert step.allowed is False
        assert step.wait_time_ms == 18000
        assert step.tokens == 2

    def test_check_without_consume(self):
        """Test consume=False leaves tokens in place."""
        step = apply_token_bucket(4, 1000, capacity=10, window_ms=60000, units=3, now_ms=1000, consume=False)

        assert step.allowed is True
        assert step.tokens == 4

    def test_charge_overdraft_empties_bucket(self):
        """Test charging more than is left empties the bucket."""
        step = apply_token_bucket(400, 1000, capacity=1000, window_ms=60000, units=600, now_ms=1000,
                                  consume=ConsumeMode.CHARGE)

        assert step.allowed is False
        assert step.tokens == 0
        assert step.wait_time_ms == 12000

    def test_charge_within_budget(self):
        """Test charging usage that fits behaves like a consume."""
        step = apply_token_bucket(400, 1000, capacity=1000, window_ms=60000, units=300, now_ms=1000,
                                  consume=ConsumeMode.CHARGE)

        assert step.allowed is True
        assert step.tokens == 100


class TestTokenBucketRateLimiter:
    """Test cases for token bucket checks through the store."""

    @pytest.fixture
    def limiter(self, store, clock, metrics):
        """Create RateLimiter on the in-memory store."""
        return RateLimiter(store, algorithm=RateLimitAlgorithm.TOKEN_BUCKET, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_capacity_then_rejection(self, limiter):
        """Test capacity requests pass and the next one waits for one token."""
        for _ in range(10):
            result = await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000)
            assert result.allowed is True

        result = await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000)

        assert result.allowed is False
        assert result.wait_time_ms == 6000
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_refill_after_wait(self, limiter, clock):
        """Test one request passes again after waiting the reported time."""
        for _ in range(10):
            await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000)

        clock.advance(6000)
        result = await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000)

        assert result.allowed is True
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_rejection_does_not_drain_bucket(self, limiter):
        """Test a rejected request leaves the remaining tokens usable."""
        await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000, units=8)

        rejected = await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000, units=5)
        accepted = await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000, units=2)

        assert rejected.allowed is False
        assert rejected.wait_time_ms == 18000
        assert accepted.allowed is True
        assert accepted.remaining == 0

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        """Test exhausting one key does not affect another."""
        await limiter.check_rate_limit("k1", "API_KEY", capacity=1, window_ms=60000)

        other = await limiter.check_rate_limit("k2", "API_KEY", capacity=1, window_ms=60000)

        assert other.allowed is True

    @pytest.mark.asyncio
    async def test_state_expires_with_ttl(self, limiter, store, clock):
        """Test bucket state is written with a window times factor TTL."""
        await limiter.check_rate_limit("k1", "API_KEY", capacity=10, window_ms=60000)
        tokens_key, _ = state_keys("k1")

        assert await store.get(tokens_key) == "9"

        clock.advance(3 * 60000)
        assert await store.get(tokens_key) is None

    @pytest.mark.asyncio
    async def test_charge_blocks_until_refill(self, limiter, clock):
        """Test an overdrawn bucket rejects until the window refills it."""
        await limiter.charge_rate_limit("k1", "API_KEY", capacity=1000, window_ms=60000, units=600)
        overdrawn = await limiter.charge_rate_limit("k1", "API_KEY", capacity=1000, window_ms=60000, units=600)

        assert overdrawn.allowed is False
        assert overdrawn.remaining == 0

        blocked = await limiter.check_rate_limit("k1", "API_KEY", capacity=1000, window_ms=60000, consume=False)
        assert blocked.allowed is False

        clock.advance(60)
        refilled = await limiter.check_rate_limit("k1", "API_KEY", capacity=1000, window_ms=60000, consume=False)
        assert refilled.allowed is True
        assert refilled.remaining == 1
