"""
Unit tests for the cancellation module.
"""
import asyncio
import inspect

import pytest

from cancellation import CancellationToken, guarded
from errors import CancellationError


class TestCancellationToken:
    def test_starts_not_cancelled(self):
        token = CancellationToken()
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel_keeps_first_reason(self):
        token = CancellationToken()
        token.cancel("shutdown")
        token.cancel("again")
        assert token.cancelled is True
        assert token.reason == "shutdown"
        with pytest.raises(CancellationError, match="shutdown"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        token = CancellationToken()

        async def work():
            return 42

        assert await token.guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_aborts_pending_work(self):
        token = CancellationToken()
        finished = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            finally:
                finished.set()

        async def cancel_soon():
            await asyncio.sleep(0.05)
            token.cancel("stop")

        asyncio.create_task(cancel_soon())
        with pytest.raises(CancellationError):
            await token.guard(slow())
        # The aborted coroutine was cancelled and cleaned up
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_guard_refuses_when_already_cancelled(self):
        token = CancellationToken()
        token.cancel()

        async def work():
            return 1

        coro = work()
        with pytest.raises(CancellationError):
            await token.guard(coro)
        # Closed rather than left unawaited
        assert inspect.getcoroutinestate(coro) == inspect.CORO_CLOSED

    @pytest.mark.asyncio
    async def test_guarded_without_token(self):
        async def work():
            return "ok"

        assert await guarded(work(), None) == "ok"
