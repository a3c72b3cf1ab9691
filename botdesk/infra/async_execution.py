"""
Async wrapper around the blocking Hyperliquid Exchange using a shared thread pool.

Order-creating calls are sent once; cancels are retried with jittered backoff
since repeating them cannot open new exposure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

log = logging.getLogger("botdesk")


class AsyncExchange:
    def __init__(self, exchange, timeout: float = 5.0, max_workers: int = 8, retries: int = 2) -> None:
        self._exchange = exchange
        self._timeout = timeout
        self._retries = retries
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hl-exec")

    async def order(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.order(*args, **kwargs), retries=0)

    async def modify_order(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.modify_order(*args, **kwargs), retries=0)

    async def market_open(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.market_open(*args, **kwargs), retries=0)

    async def market_close(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.market_close(*args, **kwargs), retries=0)

    async def cancel(self, coin: str, oid: int) -> Any:
        return await self._call(lambda: self._exchange.cancel(coin, oid))

    async def bulk_cancel(self, *args, **kwargs) -> Any:
        return await self._call(lambda: self._exchange.bulk_cancel(*args, **kwargs))

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    async def _call(self, fn: Callable[[], Any], retries: int | None = None) -> Any:
        loop = asyncio.get_running_loop()
        retries = self._retries if retries is None else retries
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
            except Exception as exc:
                if attempt >= retries:
                    raise
                log.warning(json.dumps({"event": "http_retry", "attempt": attempt + 1, "err": str(exc)}))
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2
