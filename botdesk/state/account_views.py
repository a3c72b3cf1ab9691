"""
Cached account, position and order views for presentation.

Each refresh reads the gateway, replaces its view and emits the matching
event on the bus. A failed read is logged and the previous view is kept.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from botdesk.core.errors import GatewayError
from botdesk.core.event_bus import EventBus, EventType
from botdesk.core.models import AccountSnapshot, OpenOrder, OrderResult, Position
from botdesk.gateway.base import Gateway

log = logging.getLogger("botdesk")


class AccountViews:
    def __init__(self, gateway: Gateway, bus: Optional[EventBus] = None, closed_orders_limit: int = 50) -> None:
        self.gateway = gateway
        self.bus = bus
        self.closed_orders_limit = closed_orders_limit
        self.account: Optional[AccountSnapshot] = None
        self.positions: List[Position] = []
        self.open_orders: List[OpenOrder] = []
        self.closed_orders: List[OrderResult] = []

    async def _fetch(self, view: str, fn: Callable[[], Awaitable[Any]]) -> Optional[Any]:
        try:
            return await fn()
        except GatewayError as exc:
            log.error(json.dumps({"event": "account_fetch_error", "view": view, "err": str(exc)}))
            return None

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self.bus is not None:
            await self.bus.emit(event_type, source="account_views", **data)

    async def refresh_account(self) -> None:
        account = await self._fetch("account", self.gateway.get_account)
        if account is None:
            return
        self.account = account
        await self._emit(EventType.ACCOUNT_UPDATED, equity=account.equity, buying_power=account.buying_power)

    async def refresh_positions(self) -> None:
        positions = await self._fetch("positions", self.gateway.list_positions)
        if positions is None:
            return
        self.positions = list(positions)
        await self._emit(EventType.POSITIONS_UPDATED, count=len(self.positions))

    async def refresh_open_orders(self) -> None:
        orders = await self._fetch("open_orders", self.gateway.list_open_orders)
        if orders is None:
            return
        self.open_orders = list(orders)
        await self._emit(EventType.OPEN_ORDERS_UPDATED, count=len(self.open_orders))

    async def refresh_closed_orders(self) -> None:
        orders = await self._fetch(
            "closed_orders", lambda: self.gateway.list_closed_orders(limit=self.closed_orders_limit),
        )
        if orders is None:
            return
        self.closed_orders = list(orders)[: self.closed_orders_limit]
        await self._emit(EventType.CLOSED_ORDERS_UPDATED, count=len(self.closed_orders))

    async def refresh_orders(self) -> None:
        await self.refresh_open_orders()
        await self.refresh_closed_orders()

    async def refresh_all(self) -> None:
        await self.refresh_account()
        await self.refresh_orders()
        await self.refresh_positions()

    def position_and_open_order_instruments(self) -> Set[str]:
        """Symbols that currently hold a position or a resting order."""
        symbols = {p.instrument.symbol for p in self.positions if not p.is_flat}
        symbols.update(o.symbol for o in self.open_orders if o.symbol)
        return symbols

    def snapshot(self) -> dict:
        return {
            "equity": self.account.equity if self.account else None,
            "buying_power": self.account.buying_power if self.account else None,
            "positions": {p.instrument.symbol: p.quantity for p in self.positions},
            "open_orders": len(self.open_orders),
            "closed_orders": len(self.closed_orders),
        }
