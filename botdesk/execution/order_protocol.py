"""
OrderProtocol: submit / replace / cancel / liquidate on top of a Gateway.

Every call returns a result plus a human-readable message instead of
raising on venue faults; the message describes the attempted order and is
suffixed with ":<error>" when the venue call failed. Calls are
fire-and-forget with respect to fills: acknowledgement is the only thing
awaited, fills arrive later as trade updates.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from botdesk.core.errors import GatewayError
from botdesk.core.event_bus import EventBus, EventType
from botdesk.core.models import (
    Instrument,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderType,
    TimeInForce,
)
from botdesk.gateway.base import Gateway
from botdesk.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("botdesk")

_TYPE_LABEL = {
    OrderType.MARKET: "Market",
    OrderType.LIMIT: "Limit",
    OrderType.STOP: "Stop",
    OrderType.STOP_LIMIT: "StopLimit",
    OrderType.TRAILING_STOP: "TrailingStop",
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _qty(quantity: float) -> str:
    return f"{quantity:g}"


def describe_order(
    side: OrderSide,
    order_type: OrderType,
    time_in_force: TimeInForce,
    extended_hours: bool,
    quantity: float,
    stop_price: Optional[float] = None,
    limit_price: Optional[float] = None,
    trail_offset: Optional[float] = None,
) -> str:
    label = _TYPE_LABEL[order_type]
    if order_type is OrderType.LIMIT:
        price = f" @ {limit_price}"
    elif order_type is OrderType.STOP:
        price = f" @ stop price: {stop_price}"
    elif order_type is OrderType.STOP_LIMIT:
        price = f" @ stop price {stop_price} and limit price {limit_price}"
    elif order_type is OrderType.TRAILING_STOP:
        price = f" @ stop price: {stop_price} and trailing {trail_offset}"
    else:
        price = ""
    return (
        f"{label} {side.value} of {_qty(quantity)}{price} on {_timestamp()}, "
        f"TimeInForce: {time_in_force.value}, Extended Hours {extended_hours}"
    )


@dataclass
class FlattenResult:
    cancelled: int = 0
    closed: Optional[OrderResult] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class OrderProtocol:
    def __init__(
        self,
        gateway: Gateway,
        metrics: Optional[RichMetrics] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.gateway = gateway
        self.metrics = metrics
        self.bus = bus

    async def _emit(self, event_type: EventType, **data) -> None:
        if self.bus is not None:
            await self.bus.emit(event_type, source="order_protocol", **data)

    async def submit(
        self,
        side: OrderSide,
        order_type: OrderType,
        time_in_force: TimeInForce,
        extended_hours: bool,
        instrument: Instrument,
        quantity: float,
        stop_price: Optional[float] = None,
        limit_price: Optional[float] = None,
        trail_offset: Optional[float] = None,
    ) -> Tuple[Optional[OrderResult], str]:
        message = describe_order(
            side, order_type, time_in_force, extended_hours, quantity, stop_price, limit_price, trail_offset,
        )
        request = OrderRequest(
            instrument=instrument,
            side=side,
            order_type=order_type,
            time_in_force=time_in_force,
            quantity=quantity,
            limit_price=limit_price,
            stop_price=stop_price,
            trail_offset=trail_offset,
            extended_hours=extended_hours,
        )
        try:
            result = await self.gateway.submit_order(request)
        except GatewayError as exc:
            message = f"{message}:{exc}"
            log.error(json.dumps({"event": "order_submit_error", "symbol": instrument.symbol, "message": message}))
            if self.metrics:
                self.metrics.orders_rejected_total.labels(symbol=instrument.symbol, action="submit").inc()
            await self._emit(EventType.ORDER_REJECTED, symbol=instrument.symbol, message=message)
            return None, message

        log.info(json.dumps({
            "event": "order_submitted",
            "symbol": instrument.symbol,
            "order_id": result.order_id,
            "message": message,
        }))
        if self.metrics:
            self.metrics.orders_submitted_total.labels(symbol=instrument.symbol, side=side.value).inc()
        await self._emit(EventType.ORDER_SUBMITTED, symbol=instrument.symbol, order_id=result.order_id, message=message)
        return result, message

    async def replace(
        self,
        order_id: str,
        new_limit_price: Optional[float] = None,
        new_stop_price: Optional[float] = None,
        symbol: str = "",
    ) -> Tuple[Optional[OrderResult], str]:
        message = f"Replace order {order_id}"
        if new_limit_price is not None:
            message += f" limit price {new_limit_price}"
        if new_stop_price is not None:
            message += f" stop price {new_stop_price}"
        message += f" on {_timestamp()}"
        try:
            result = await self.gateway.replace_order(order_id, limit_price=new_limit_price, stop_price=new_stop_price)
        except GatewayError as exc:
            message = f"{message}:{exc}"
            log.error(json.dumps({"event": "order_replace_error", "symbol": symbol, "order_id": order_id, "message": message}))
            if self.metrics:
                self.metrics.orders_rejected_total.labels(symbol=symbol, action="replace").inc()
            await self._emit(EventType.ORDER_REJECTED, symbol=symbol, order_id=order_id, message=message)
            return None, message

        log.info(json.dumps({
            "event": "order_replaced",
            "symbol": symbol or result.symbol,
            "order_id": order_id,
            "new_order_id": result.order_id,
            "message": message,
        }))
        if self.metrics:
            self.metrics.orders_replaced_total.labels(symbol=symbol or result.symbol).inc()
        await self._emit(
            EventType.ORDER_REPLACED, symbol=symbol or result.symbol, order_id=order_id, new_order_id=result.order_id,
        )
        return result, message

    async def cancel_open_orders(self, instrument: Instrument) -> int:
        count, _ = await self._cancel(instrument)
        return count

    async def liquidate(self, instrument: Instrument) -> Optional[OrderResult]:
        """Close any position at market. None when flat or when the close failed."""
        result, _ = await self._liquidate(instrument)
        return result

    async def flatten(self, instrument: Instrument) -> FlattenResult:
        """Cancel resting orders, then close the position. Venue errors land in errors."""
        cancelled, cancel_err = await self._cancel(instrument)
        closed, close_err = await self._liquidate(instrument)
        return FlattenResult(cancelled, closed, [err for err in (cancel_err, close_err) if err])

    async def _cancel(self, instrument: Instrument) -> Tuple[int, Optional[str]]:
        try:
            count = await self.gateway.cancel_all_orders(instrument)
        except GatewayError as exc:
            log.error(json.dumps({"event": "cancel_error", "symbol": instrument.symbol, "err": str(exc)}))
            return 0, f"cancel failed: {exc}"
        if count:
            log.info(json.dumps({"event": "orders_cancelled", "symbol": instrument.symbol, "count": count}))
        return count, None

    async def _liquidate(self, instrument: Instrument) -> Tuple[Optional[OrderResult], Optional[str]]:
        try:
            result = await self.gateway.close_position(instrument)
        except GatewayError as exc:
            log.error(json.dumps({"event": "liquidate_error", "symbol": instrument.symbol, "err": str(exc)}))
            return None, f"close failed: {exc}"
        if result is not None:
            log.info(json.dumps({
                "event": "position_liquidated",
                "symbol": instrument.symbol,
                "order_id": result.order_id,
                "qty": result.quantity,
            }))
        return result, None
