"""
Cooperative cancellation for strategy loops.

A scope is observed at tick boundaries and raced against the inter-tick
sleep; it never interrupts a gateway call already in flight.
"""

from __future__ import annotations

import asyncio


class CancellationScope:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled before it elapsed."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True
