"""
Unit tests for the sliding window rate limiter.
"""

import pytest

from shelfscout.ingress import SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:
    @pytest.fixture
    def limiter(self, clock):
        return SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(limit=0)

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter, clock):
        results = [await limiter.check("client") for _ in range(3)]

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]
        assert results[0].reset_at == clock.now + 60

    @pytest.mark.asyncio
    async def test_rejects_over_limit(self, limiter, clock):
        for _ in range(3):
            await limiter.check("client")
        clock.advance(30)

        result = await limiter.check("client")

        assert not result.allowed
        assert result.remaining == 0
        assert result.retry_after == 30
        assert result.reset_at == clock.now + 30

    @pytest.mark.asyncio
    async def test_rejected_request_not_recorded(self, limiter, clock):
        for _ in range(3):
            await limiter.check("client")
        for _ in range(5):
            await limiter.check("client")

        clock.advance(60)
        result = await limiter.check("client")
        assert result.allowed
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        await limiter.check("client")
        clock.advance(20)
        await limiter.check("client")
        await limiter.check("client")

        clock.advance(40)
        # The first request has aged out, the other two have not.
        result = await limiter.check("client")
        assert result.allowed
        assert result.remaining == 0
        assert not (await limiter.check("client")).allowed

    @pytest.mark.asyncio
    async def test_clients_are_isolated(self, limiter):
        for _ in range(3):
            await limiter.check("a")
        assert not (await limiter.check("a")).allowed
        assert (await limiter.check("b")).allowed

    @pytest.mark.asyncio
    async def test_compact_drops_idle_clients(self, limiter, clock):
        await limiter.check("idle")
        clock.advance(61)
        await limiter.check("busy")

        assert await limiter.compact() == 1
        assert limiter.tracked_clients() == 1

    @pytest.mark.asyncio
    async def test_reset(self, limiter):
        for _ in range(3):
            await limiter.check("client")
        await limiter.reset("client")
        assert (await limiter.check("client")).allowed

    @pytest.mark.asyncio
    async def test_to_dict(self, limiter, clock):
        result = await limiter.check("client")
        assert result.to_dict() == {"allowed": True, "remaining": 2, "resetAt": clock.now + 60}

    @pytest.mark.asyncio
    async def test_many_clients_do_not_grow_history_without_bound(self, clock):
        limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock, max_clients=5)

        for i in range(50):
            await limiter.check(f"client-{i}")
            assert limiter.tracked_clients() <= 6
            clock.advance(61)

    @pytest.mark.asyncio
    async def test_compaction_keeps_clients_inside_window(self, clock):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=clock, max_clients=2)

        for client in ("a", "b", "c"):
            await limiter.check(client)

        assert limiter.tracked_clients() == 3
        assert not (await limiter.check("a")).allowed
