"""
Unit tests for per-domain politeness pacing.
"""

import pytest
from structlog.testing import capture_logs

from shelfscout.crawler import PolitenessPacer


class TestPolitenessPacer:
    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def pacer(self, clock, sleeps):
        async def fake_sleep(seconds):
            sleeps.append(seconds)
            clock.advance(seconds)

        return PolitenessPacer(delay_seconds=1.0, clock=clock, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_first_request_not_delayed(self, pacer, sleeps):
        assert await pacer.wait("https://shop.test/a") == 0.0
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_second_request_waits_remaining_delay(self, pacer, sleeps, clock):
        await pacer.wait("https://shop.test/a")
        clock.advance(0.25)

        assert await pacer.wait("https://shop.test/b") == pytest.approx(0.75)
        assert sleeps == [pytest.approx(0.75)]

    @pytest.mark.asyncio
    async def test_pause_is_logged_per_domain(self, pacer, clock):
        await pacer.wait("https://Shop.test/a")
        clock.advance(0.5)

        with capture_logs() as logs:
            await pacer.wait("https://shop.test/b")

        assert logs == [{"event": "Pacing request", "log_level": "debug", "domain": "shop.test", "delay": 0.5}]

    @pytest.mark.asyncio
    async def test_no_wait_when_delay_already_elapsed(self, pacer, sleeps, clock):
        await pacer.wait("https://shop.test/a")
        clock.advance(2)

        assert await pacer.wait("https://shop.test/b") == 0.0
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_domains_paced_independently(self, pacer, sleeps):
        await pacer.wait("https://shop.test/a")
        await pacer.wait("https://other.test/a")
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_reset(self, pacer, sleeps):
        await pacer.wait("https://shop.test/a")
        pacer.reset()
        await pacer.wait("https://shop.test/b")
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_zero_delay_disables_pacing(self, clock):
        pacer = PolitenessPacer(delay_seconds=0.0, clock=clock)
        await pacer.wait("https://shop.test/a")
        assert await pacer.wait("https://shop.test/b") == 0.0
