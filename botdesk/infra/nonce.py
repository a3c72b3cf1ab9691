"""
Account-level nonce coordinator.

Provides a single asyncio.Lock per account so every strategy loop trading
the same account serializes order-mutating venue calls.
"""

from __future__ import annotations

import asyncio
from typing import Dict


class NonceCoordinator:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def get_lock(self, account: str) -> asyncio.Lock:
        """Return the shared asyncio.Lock for the given account."""
        async with self._guard:
            lock = self._locks.get(account.lower())
            if lock is None:
                lock = asyncio.Lock()
                self._locks[account.lower()] = lock
            return lock
