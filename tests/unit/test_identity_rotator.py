"""
Unit tests for user agent rotation.
"""

import pytest

from shelfscout.antiblock import DEFAULT_USER_AGENTS, IdentityRotator
from shelfscout.exceptions import NoIdentitiesAvailable


class TestIdentityRotator:
    @pytest.mark.asyncio
    async def test_cycles_in_order(self):
        rotator = IdentityRotator(["a", "b", "c"])
        assert [await rotator.next() for _ in range(5)] == ["a", "b", "c", "a", "b"]

    @pytest.mark.asyncio
    async def test_empty_list_raises(self):
        rotator = IdentityRotator([])
        with pytest.raises(NoIdentitiesAvailable):
            await rotator.next()

    @pytest.mark.asyncio
    async def test_blank_entries_dropped(self):
        rotator = IdentityRotator(["", "  ", "real-agent"])
        assert len(rotator) == 1
        assert await rotator.next() == "real-agent"

    def test_with_defaults_falls_back(self):
        assert len(IdentityRotator.with_defaults()) == len(DEFAULT_USER_AGENTS)
        assert len(IdentityRotator.with_defaults(["only-one"])) == 1

    @pytest.mark.asyncio
    async def test_stats(self):
        rotator = IdentityRotator(["a", "b"])
        await rotator.next()
        assert rotator.get_stats() == {"total_user_agents": 2, "next_index": 1}
