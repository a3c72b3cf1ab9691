"""
Mean-reversion scalper.

Buys at the last price when flat and the entry is affordable, chases a
resting entry with the market while still flat, and sells the whole
position once unrealized profit clears the target percentage of its cost.

Any non-zero distance between the rolling average and the last price counts
as a signal; only an exact match holds back.
"""

from __future__ import annotations

from typing import Optional

from botdesk.core.models import IntentAction, OrderIntent, OrderSide, OrderType, TimeInForce
from botdesk.strategy.base import DecisionInputs


class ScalperStrategy:
    name = "scalper"

    def __init__(self, extended_hours: bool = False) -> None:
        self.extended_hours = extended_hours

    def decide(self, inputs: DecisionInputs) -> Optional[OrderIntent]:
        price = inputs.last_price
        avg = inputs.rolling_average
        if price is None or price <= 0 or avg is None:
            return None
        if avg - price == 0:
            return None

        flat = inputs.position_qty == 0

        if not inputs.has_open_order:
            if flat:
                if inputs.quantity_scale * price <= inputs.equity:
                    return self._limit(IntentAction.SUBMIT, OrderSide.BUY, inputs.quantity_scale, price)
                return None
            if inputs.position_qty > 0:
                cost = inputs.avg_entry_price * inputs.position_qty
                profit = (price - inputs.avg_entry_price) * inputs.position_qty
                if profit > cost * inputs.profit_pct / 100:
                    return self._limit(IntentAction.SUBMIT, OrderSide.SELL, inputs.position_qty, price)
            return None

        if flat and inputs.open_order_side is not OrderSide.SELL and inputs.open_order_id is not None:
            if inputs.open_order_limit == price:
                return None
            return OrderIntent(
                action=IntentAction.REPLACE,
                side=OrderSide.BUY,
                quantity=inputs.quantity_scale,
                limit_price=price,
                order_id=inputs.open_order_id,
                extended_hours=self.extended_hours,
            )
        return None

    def _limit(self, action: IntentAction, side: OrderSide, quantity: float, price: float) -> OrderIntent:
        return OrderIntent(
            action=action,
            side=side,
            quantity=quantity,
            order_type=OrderType.LIMIT,
            time_in_force=TimeInForce.GTC,
            limit_price=price,
            extended_hours=self.extended_hours,
        )
