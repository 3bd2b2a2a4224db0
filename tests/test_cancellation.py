"""Tests for CancellationToken."""

import asyncio
import threading

import pytest

from obrew_client.cancellation import TIMEOUT_REASON, CancellationToken
from obrew_client.errors import RequestCancelled


class TestSignal:
    """Signal-once semantics."""

    def test_cancel_fires_once(self):
        token = CancellationToken()

        assert token.cancel("first") is True
        assert token.cancel("second") is False
        assert token.cancelled
        assert token.reason == "first"

    def test_default_reason(self):
        token = CancellationToken()
        token.cancel()
        assert token.reason == "Request was cancelled"

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("stop")
        with pytest.raises(RequestCancelled, match="stop"):
            token.raise_if_cancelled()


class TestTimeout:
    """Timeout-derived tokens."""

    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        token = CancellationToken.with_timeout(0.01)

        await asyncio.wait_for(token.wait(), timeout=1.0)

        assert token.reason == TIMEOUT_REASON

    @pytest.mark.asyncio
    async def test_dispose_stops_timer(self):
        token = CancellationToken.with_timeout(0.01)
        token.dispose()

        await asyncio.sleep(0.05)

        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_manual_cancel_keeps_manual_reason(self):
        token = CancellationToken.with_timeout(0.01)
        token.cancel("user")

        await asyncio.sleep(0.05)

        assert token.reason == "user"


class TestRun:
    """Racing an awaitable against the token."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        token = CancellationToken()

        async def work():
            return 7

        assert await token.run(work()) == 7

    @pytest.mark.asyncio
    async def test_propagates_error(self):
        token = CancellationToken()

        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await token.run(work())

    @pytest.mark.asyncio
    async def test_abandons_pending_work(self):
        token = CancellationToken()
        started = asyncio.Event()
        abandoned = []

        async def stall():
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                abandoned.append(True)
                raise

        task = asyncio.create_task(token.run(stall()))
        await started.wait()
        token.cancel("enough")

        with pytest.raises(RequestCancelled, match="enough"):
            await asyncio.wait_for(task, timeout=1.0)
        assert abandoned == [True]

    @pytest.mark.asyncio
    async def test_already_cancelled_never_starts(self):
        token = CancellationToken()
        token.cancel()
        started = []

        async def work():
            started.append(True)

        with pytest.raises(RequestCancelled):
            await token.run(work())
        assert started == []


class TestCrossThread:
    """cancel() from another thread wakes the loop waiting on the token."""

    @pytest.mark.asyncio
    async def test_cancel_from_thread_wakes_waiter(self):
        token = CancellationToken()
        timer = threading.Timer(0.05, token.cancel, ("from thread",))
        timer.start()

        try:
            await asyncio.wait_for(token.wait(), timeout=2.0)
        finally:
            timer.cancel()

        assert token.reason == "from thread"

    @pytest.mark.asyncio
    async def test_cancel_from_thread_abandons_run(self):
        token = CancellationToken()
        timer = threading.Timer(0.05, token.cancel)
        timer.start()

        with pytest.raises(RequestCancelled):
            await asyncio.wait_for(token.run(asyncio.sleep(10)), timeout=2.0)
        timer.cancel()
