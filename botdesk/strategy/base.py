"""
Decision-function interface shared by strategy implementations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from botdesk.core.models import OrderIntent, OrderSide
from botdesk.state.instrument_state import InstrumentState


@dataclass(frozen=True)
class DecisionInputs:
    """Everything a decision function may look at for one tick."""
    rolling_average: Optional[float]
    last_price: Optional[float]
    position_qty: float
    avg_entry_price: float
    profit_pct: float
    equity: float
    quantity_scale: float
    has_open_order: bool = False
    open_order_id: Optional[str] = None
    open_order_limit: Optional[float] = None
    open_order_side: Optional[OrderSide] = None

    @classmethod
    def from_state(
        cls,
        state: InstrumentState,
        equity: float,
        profit_pct: float,
        quantity_scale: float,
    ) -> "DecisionInputs":
        position = state.position
        order = state.open_order
        return cls(
            rolling_average=state.rolling_average,
            last_price=state.last_price,
            position_qty=position.quantity if position else 0.0,
            avg_entry_price=position.avg_entry_price if position else 0.0,
            profit_pct=profit_pct,
            equity=equity,
            quantity_scale=quantity_scale,
            has_open_order=order is not None,
            open_order_id=order.order_id if order else None,
            open_order_limit=order.limit_price if order else None,
            open_order_side=order.side if order else None,
        )


class Strategy(Protocol):
    name: str

    def decide(self, inputs: DecisionInputs) -> Optional[OrderIntent]:
        ...
