"""
CancellationToken - cooperative, signal-once cancellation.

A token is observed at defined check points (before each frame, while
waiting on I/O). Signalling it never interrupts a parse or callback that
is already running. Timeouts are tokens that fire themselves after a
delay, so manual and timed cancellation share the same signal.

cancel() may be called from any thread. The wake-up of waiters is
handed to the event loop the token is bound to.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Optional, TypeVar

from obrew_client.errors import RequestCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMEOUT_REASON = "Request timed out"


def _current_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class CancellationToken:
    """
    Can be signalled exactly once; later signals are ignored.

    Usage:
        token = CancellationToken()
        result = await token.run(some_coroutine())   # raises RequestCancelled
        token.cancel()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._lock = threading.Lock()
        self._fired = False
        self._loop: Optional[asyncio.AbstractEventLoop] = _current_loop()
        self._timer: Optional[asyncio.TimerHandle] = None
        self.reason: Optional[str] = None

    def __repr__(self) -> str:
        state = f"cancelled: {self.reason}" if self.cancelled else "live"
        return f"<CancellationToken {state}>"

    @property
    def cancelled(self) -> bool:
        return self._fired

    def _bind(self) -> None:
        """Remember the loop that waits on this token."""
        self._loop = asyncio.get_running_loop()

    def _wake(self) -> None:
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Signal the token.

        Returns True if this call fired it, False if it had already fired.
        """
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            self.reason = reason or "Request was cancelled"

        loop = self._loop
        if loop is not None and loop is not _current_loop() and not loop.is_closed():
            loop.call_soon_threadsafe(self._wake)
        else:
            self._wake()
        return True

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        """
        A token that fires by itself after `seconds`.

        Must be created from inside a running event loop.
        """
        token = cls()
        token._bind()
        token._timer = token._loop.call_later(seconds, token.cancel, TIMEOUT_REASON)
        return token

    def dispose(self) -> None:
        """Stop a pending timeout without signalling the token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled(self.reason or "Request was cancelled")

    async def wait(self) -> None:
        self._bind()
        if self.cancelled:
            return
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable`, abandoning it if the token fires first.

        The abandoned task is cancelled and RequestCancelled is raised.
        """
        self._bind()
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Abandoned operation raised after cancellation: {e}")
        self.raise_if_cancelled()
        raise RequestCancelled()
