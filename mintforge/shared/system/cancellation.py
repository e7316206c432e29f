"""
Run-level cancellation token.

Threaded through every suspension point (poll loops, backoff waits).
Waiting goes through `sleep()` so a cancel wakes the waiter immediately
instead of after the remaining interval.
"""

import asyncio
from typing import Optional

from mintforge.shared.system.errors import Cancelled


class CancellationToken:
    """Cooperative cancellation flag backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Run cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "Run cancelled by caller")

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds` unless cancelled first (then raise Cancelled)."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def wait(self) -> None:
        """Block until cancelled."""
        await self._event.wait()
