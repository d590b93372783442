"""
Tests for the bounded poll helper.
"""
import asyncio

import pytest

from dope_auth.polling import wait_for


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_immediate_value(self):
        result = await wait_for(lambda: "w1", timeout=1.0, interval=0.1)
        assert result.ok
        assert result.value == "w1"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_value_appears_later(self):
        seen = []

        def probe():
            seen.append(1)
            return "w1" if len(seen) >= 3 else None

        result = await wait_for(probe, timeout=1.0, interval=0.01)
        assert result.value == "w1"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_async_probe(self):
        async def probe():
            await asyncio.sleep(0)
            return "w2"

        result = await wait_for(probe, timeout=0.5, interval=0.01)
        assert result.value == "w2"

    @pytest.mark.asyncio
    async def test_timeout_is_definite(self):
        result = await wait_for(lambda: None, timeout=0.05, interval=0.01)
        assert result.timed_out
        assert result.value is None
        assert result.attempts >= 2
        assert result.elapsed >= 0.05

    @pytest.mark.asyncio
    async def test_nothing_left_scheduled(self):
        before = len(asyncio.all_tasks())
        await wait_for(lambda: None, timeout=0.03, interval=0.01)
        assert len(asyncio.all_tasks()) == before
