"""
Tests for the cooperative cancellation token.
"""

import asyncio

import pytest

from agentgate.core.cancellation import CancellationToken


class TestCancellationToken:
    def test_cancel_is_sticky(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        assert await CancellationToken().wait(0.01) is False

    @pytest.mark.asyncio
    async def test_wait_zero_is_immediate(self):
        token = CancellationToken()
        assert await token.wait(0) is False
        token.cancel()
        assert await token.wait(0) is True

    @pytest.mark.asyncio
    async def test_wait_wakes_on_cancel(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait(10))
        await asyncio.sleep(0)
        token.cancel()
        assert await asyncio.wait_for(waiter, 1) is True

    @pytest.mark.asyncio
    async def test_run_returns_result(self):
        async def work():
            return 42

        assert await CancellationToken().run(work()) == 42

    @pytest.mark.asyncio
    async def test_run_propagates_errors(self):
        async def work():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await CancellationToken().run(work())

    @pytest.mark.asyncio
    async def test_run_abandons_on_cancel(self):
        finished = False

        async def slow():
            nonlocal finished
            await asyncio.sleep(10)
            finished = True

        token = CancellationToken()
        call = asyncio.create_task(token.run(slow(), default="aborted"))
        await asyncio.sleep(0.01)
        token.cancel()

        assert await asyncio.wait_for(call, 1) == "aborted"
        assert finished is False

    @pytest.mark.asyncio
    async def test_run_on_cancelled_token_skips_work(self):
        called = False

        async def work():
            nonlocal called
            called = True

        token = CancellationToken()
        token.cancel()
        assert await token.run(work()) is None
        assert called is False
