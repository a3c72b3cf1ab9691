"""
In-memory status board for lightweight dashboards.

Holds pushed per-symbol payloads and pulls live sections (loops, account)
from registered providers at snapshot time.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict


class StatusBoard:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._providers: Dict[str, Callable[[], Any]] = {}
        self._lock = asyncio.Lock()

    def register(self, name: str, provider: Callable[[], Any]) -> None:
        self._providers[name] = provider

    async def update(self, symbol: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[symbol] = payload

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            snap: Dict[str, Any] = {"symbols": dict(self._data)}
        for name, provider in self._providers.items():
            snap[name] = provider()
        return snap
