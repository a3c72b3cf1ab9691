"""
Core package.

Domain value types, timeframes, the exception taxonomy, the event bus and
common utilities.
"""

from botdesk.core.errors import BotdeskError, GatewayError, LoopConfigError, OrderRejectedError
from botdesk.core.event_bus import Event, EventBus, EventType, Subscription
from botdesk.core.models import (
    AccountSnapshot,
    AssetClass,
    Bar,
    Instrument,
    IntentAction,
    OpenOrder,
    OrderIntent,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Quote,
    TimeInForce,
    Trade,
    TradeUpdate,
)
from botdesk.core.rounding import round_price, round_size
from botdesk.core.timeframe import BarTimeFrame, TimeFrameUnit
from botdesk.core.utils import BoundedSet, now_ms

__all__ = [
    "AccountSnapshot",
    "AssetClass",
    "Bar",
    "BarTimeFrame",
    "BotdeskError",
    "BoundedSet",
    "Event",
    "EventBus",
    "EventType",
    "GatewayError",
    "Instrument",
    "IntentAction",
    "LoopConfigError",
    "OpenOrder",
    "OrderIntent",
    "OrderRejectedError",
    "OrderRequest",
    "OrderResult",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "Quote",
    "Subscription",
    "TimeFrameUnit",
    "TimeInForce",
    "Trade",
    "TradeUpdate",
    "now_ms",
    "round_price",
    "round_size",
]
