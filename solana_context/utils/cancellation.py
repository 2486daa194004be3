"""Cooperative cancellation for pending network calls."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

from solana_context.utils.errors import OperationCancelledError

T = TypeVar('T')

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    One-shot cancellation signal shared by the calls of a runtime.

    ``run`` races an awaitable against the token: when the token fires first
    the awaitable is cancelled and ``OperationCancelledError`` is raised.
    A fired token stays fired; owners install a fresh token afterwards.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[["CancellationToken"], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Fire the token. Calling it again has no effect."""
        if self.cancelled:
            return
        self.reason = reason or "operation cancelled"
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def on_cancel(self, callback: Callable[["CancellationToken"], None]) -> None:
        """Register a callback invoked once when the token fires."""
        if self.cancelled:
            callback(self)
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelledError: If the token fired before completion
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
        if work not in done:
            raise OperationCancelledError(self.reason)
        return work.result()
