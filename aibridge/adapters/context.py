from __future__ import annotations
"""Cooperative cancellation for adapter calls.

A :class:`CallContext` is created by the orchestrator per call and handed down
through the provider, the service handler and the transport.  Cancelling it
(explicitly or through a deadline) makes every suspended adapter await return
promptly with the cancellation cause.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Optional

from core.errors import CallCancelledError, DeadlineExceededError

__all__ = ["CallContext"]


class CallContext:
    def __init__(self) -> None:
        self._done = asyncio.Event()
        self._cause: Optional[BaseException] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CallContext":
        """Context cancelled with DeadlineExceededError after *seconds*.

        Must be called from inside a running event loop.
        """
        ctx = cls()
        loop = asyncio.get_running_loop()
        ctx._timer = loop.call_later(seconds, ctx.cancel, DeadlineExceededError())
        return ctx

    # ------------------------------------------------------------------
    def cancel(self, cause: Optional[BaseException] = None) -> None:
        """Cancel the context.  Only the first cause is kept."""
        if self._done.is_set():
            return
        self._cause = cause or CallCancelledError()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._done.set()

    def cancelled(self) -> bool:
        return self._done.is_set()

    @property
    def cause(self) -> Optional[BaseException]:
        return self._cause

    async def wait(self) -> BaseException:
        await self._done.wait()
        return self._cause

    async def guard(self, aw: Awaitable[Any]) -> Any:
        """Await *aw* unless the context is cancelled first.

        Cancellation wins a tie: if both complete in the same wake-up the
        awaitable's result is discarded and the cause is raised.
        """
        if self.cancelled():
            if inspect.iscoroutine(aw):
                aw.close()
            raise self._cause
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._done.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if not waiter.done():
                waiter.cancel()
        if self.cancelled():
            if not task.done():
                task.cancel()
            # result or exception of the losing task is discarded
            await asyncio.gather(task, return_exceptions=True)
            raise self._cause
        return task.result()
