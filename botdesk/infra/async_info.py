"""
Minimal async HTTP client for Hyperliquid info endpoints using HTTP/2.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx


class AsyncInfo:
    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close().
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def meta(self, dex: Optional[str] = None) -> Any:
        """Perp universe of the native dex, or of a builder dex such as "xyz"."""
        return await self._post_info({"type": "meta"}, dex)

    async def user_state(self, account: str, dex: Optional[str] = None) -> Any:
        return await self._post_info({"type": "clearinghouseState", "user": account}, dex)

    async def frontend_open_orders(self, account: str, dex: Optional[str] = None) -> Any:
        return await self._post_info({"type": "frontendOpenOrders", "user": account}, dex)

    async def historical_orders(self, account: str) -> Any:
        """Most recent orders of the user with their final status."""
        return await self._post_info({"type": "historicalOrders", "user": account})

    async def candle_snapshot(self, coin: str, interval: str, start_ms: int, end_ms: int) -> Any:
        req = {"coin": coin, "interval": interval, "startTime": start_ms, "endTime": end_ms}
        return await self._post_info({"type": "candleSnapshot", "req": req})

    async def _post_info(self, payload: dict[str, Any], dex: Optional[str] = None) -> Any:
        if dex:
            payload["dex"] = dex
        resp = await self.client.post("/info", json=payload)
        resp.raise_for_status()
        data = resp.json()
        # unwrap {status:'ok', response:{data:{...}}} patterns
        if isinstance(data, dict):
            if isinstance(data.get("response"), dict):
                data = data["response"]
            if isinstance(data.get("data"), dict):
                data = data["data"]
        return data
