from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from ..errors import TurnCancelled

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation shared by a turn and everything it awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason)

    async def run(self, aw: Awaitable[T], timeout: float | None = None) -> T:
        """Await ``aw`` unless the token fires or ``timeout`` elapses first.

        The losing operation is cancelled and awaited before returning.
        Raises TurnCancelled on cancellation and TimeoutError on timeout.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
            raise
        waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._event.is_set():
            raise TurnCancelled(self.reason)
        raise TimeoutError(f"timed out after {timeout:g}s")
