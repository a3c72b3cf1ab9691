"""
ReconciliationListener: applies venue trade updates to the instrument state.

Routing by status:
- FILLED / PARTIALLY_FILLED: position update, open order cleared on FILLED,
  then a full account view refresh.
- NEW / ACCEPTED: record or confirm the open order (adopting the new id of
  an in-flight replace), then refresh order views.
- CANCELED / EXPIRED / REJECTED: clear the open order unless it has already
  moved to another id, then refresh order views.
- REPLACED: move the open order to the replacing id.

Updates for symbols with no state yet (manual orders, positions opened
elsewhere) create state and subscribe market data, so such fills stay
visible. Duplicate deliveries are dropped by (order id, status, filled qty).
Terminal statuses are remembered per instrument so a loop whose submit
returns after the fill was applied does not record a dead order.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from typing import Optional

from botdesk.core.errors import GatewayError
from botdesk.core.event_bus import EventBus, EventType
from botdesk.core.models import OpenOrder, OrderStatus, Position, TradeUpdate
from botdesk.core.utils import BoundedSet
from botdesk.gateway.base import Gateway
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.state.account_views import AccountViews
from botdesk.state.instrument_state import InstrumentState, InstrumentStateCache

log = logging.getLogger("botdesk")

_CLEARING = (OrderStatus.CANCELED, OrderStatus.EXPIRED, OrderStatus.REJECTED)


def next_position(state: InstrumentState, update: TradeUpdate) -> Optional[Position]:
    """Position after a fill that reported the resulting quantity."""
    qty = update.position_qty
    if qty is None:
        return state.position
    if qty == 0:
        return None
    fill_px = update.avg_fill_price or update.limit_price or 0.0
    prev = state.position
    if prev is None or prev.quantity == 0 or (prev.quantity > 0) != (qty > 0):
        avg = fill_px
    elif abs(qty) > abs(prev.quantity):
        added = abs(qty) - abs(prev.quantity)
        avg = (abs(prev.quantity) * prev.avg_entry_price + added * fill_px) / abs(qty)
    else:
        avg = prev.avg_entry_price
    return Position(instrument=state.instrument, quantity=qty, avg_entry_price=avg, market_value=qty * fill_px)


class ReconciliationListener:
    def __init__(
        self,
        cache: InstrumentStateCache,
        gateway: Gateway,
        views: Optional[AccountViews] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[RichMetrics] = None,
        market_streams=None,
        dedup_size: int = 5000,
    ) -> None:
        self.cache = cache
        self.gateway = gateway
        self.views = views
        self.bus = bus
        self.metrics = metrics
        self.market_streams = market_streams
        self._seen = BoundedSet(maxlen=dedup_size)

    async def _state_for(self, update: TradeUpdate) -> Optional[InstrumentState]:
        state = self.cache.find(update.symbol)
        if state is not None:
            return state
        try:
            instrument = await self.gateway.resolve_instrument(update.symbol)
        except GatewayError as exc:
            log.error(json.dumps({"event": "instrument_resolve_error", "symbol": update.symbol, "err": str(exc)}))
            return None
        if instrument is None:
            log.warning(json.dumps({"event": "trade_update_unknown_instrument", "symbol": update.symbol}))
            return None
        state = self.cache.get_or_create(instrument)
        if self.market_streams is not None:
            await self.market_streams.subscribe(instrument)
        log.info(json.dumps({"event": "portfolio_instrument_tracked", "symbol": update.symbol}))
        return state

    async def handle(self, update: TradeUpdate) -> bool:
        """Apply one update. Returns False for duplicates and unknown symbols."""
        if not self._seen.add(update.dedup_key):
            return False
        state = await self._state_for(update)
        if state is None:
            return False
        state.last_update = update
        if update.status.is_terminal:
            state.mark_closed(update.order_id)
        if self.metrics:
            self.metrics.trade_updates_total.labels(symbol=update.symbol, status=update.status.value).inc()

        if update.status.is_fill:
            await self._on_fill(state, update)
        elif update.status in (OrderStatus.NEW, OrderStatus.ACCEPTED):
            self._on_open(state, update)
            await self._refresh_orders()
        elif update.status in _CLEARING:
            self._on_closed(state, update)
            await self._refresh_orders()
        elif update.status is OrderStatus.REPLACED:
            self._on_replaced(state, update)

        if self.bus is not None:
            await self.bus.emit(
                EventType.TRADE_UPDATE,
                source="reconciliation",
                symbol=update.symbol,
                order_id=update.order_id,
                status=update.status.value,
                filled_qty=update.filled_qty,
            )
        return True

    async def _on_fill(self, state: InstrumentState, update: TradeUpdate) -> None:
        if update.position_qty is not None:
            state.position = next_position(state, update)
        else:
            try:
                state.position = await self.gateway.get_position(state.instrument)
            except GatewayError as exc:
                log.error(json.dumps({"event": "position_fetch_error", "symbol": update.symbol, "err": str(exc)}))

        order = state.open_order
        if order is not None and order.order_id == update.order_id:
            if update.status is OrderStatus.FILLED:
                state.clear_order()
            else:
                state.open_order = dataclasses.replace(order, status=OrderStatus.PARTIALLY_FILLED)

        log.info(json.dumps({
            "event": "trade",
            "symbol": update.symbol,
            "status": update.status.value,
            "position_qty": state.position_qty,
            "filled_qty": update.filled_qty,
            "side": update.side.value,
            "fill_px": update.avg_fill_price,
            "order_id": update.order_id,
        }))
        if self.metrics:
            self.metrics.position.labels(symbol=update.symbol).set(state.position_qty)
        if self.views is not None:
            await self.views.refresh_all()

    def _on_open(self, state: InstrumentState, update: TradeUpdate) -> None:
        order = state.open_order
        if state.replacing_order_id is not None and (order is None or order.order_id != update.order_id):
            state.record_order(self._order_from(update))
            return
        if order is None or order.order_id == update.order_id:
            state.open_order = self._order_from(update)

    def _on_closed(self, state: InstrumentState, update: TradeUpdate) -> None:
        order = state.open_order
        if order is None or order.order_id != update.order_id:
            return
        if update.replaced_by and update.replaced_by != order.order_id:
            state.open_order = dataclasses.replace(order, order_id=update.replaced_by)
            return
        if state.replacing_order_id == update.order_id:
            # The venue cancels the old leg of a modify; the new id arrives separately.
            return
        state.clear_order()

    def _on_replaced(self, state: InstrumentState, update: TradeUpdate) -> None:
        order = state.open_order
        if order is None or order.order_id != update.order_id or not update.replaced_by:
            return
        state.record_order(dataclasses.replace(order, order_id=update.replaced_by))

    @staticmethod
    def _order_from(update: TradeUpdate) -> OpenOrder:
        return OpenOrder(
            order_id=update.order_id,
            side=update.side,
            quantity=update.quantity if update.quantity is not None else update.filled_qty,
            limit_price=update.limit_price,
            status=update.status,
            symbol=update.symbol,
        )

    async def _refresh_orders(self) -> None:
        if self.views is not None:
            await self.views.refresh_orders()
