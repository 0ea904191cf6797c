"""
Cooperative cancellation for one logical turn.

A single token is shared by everything a turn awaits: completion calls,
nested agent and evaluator calls, remote tool calls. Superseding a turn
means cancelling its token; every holder checks it at its own suspension
points and unwinds with a typed "aborted" outcome instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Shared abort signal for one turn."""

    def __init__(self, label: str = ""):
        self.label = label
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Token %s cancelled: %s", self.label or id(self), reason)

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Wait until cancelled or until ``timeout`` elapses.

        Returns:
            True if the token was cancelled.
        """
        if timeout is not None and timeout <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled

    async def run(self, awaitable: Awaitable[T], default: Any = None) -> T | Any:
        """
        Await ``awaitable`` unless the token fires first.

        When the token wins, the pending work is cancelled and ``default``
        is returned.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return default

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task.cancelled():
            return default
        if not task.done():
            # cancelled above; let it unwind before returning
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Abandoned call failed while unwinding: %s", e)
            return default
        return task.result()
