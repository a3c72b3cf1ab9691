"""
Domain value types shared by the gateway, state cache, strategy and loops.

Absence is modelled with Optional (``Position | None`` means flat,
``OpenOrder | None`` means no resting order) rather than zeroed fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional

from botdesk.core.utils import now_ms


class AssetClass(Enum):
    EQUITY = "equity"
    CRYPTO = "crypto"


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def is_buy(self) -> bool:
        return self is OrderSide.BUY


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"


class TimeInForce(Enum):
    DAY = "day"
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class OrderStatus(Enum):
    NEW = "new"
    ACCEPTED = "accepted"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    REPLACED = "replaced"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_fill(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED)

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrderStatus.FILLED,
            OrderStatus.CANCELED,
            OrderStatus.REPLACED,
            OrderStatus.REJECTED,
            OrderStatus.EXPIRED,
        )


class IntentAction(Enum):
    SUBMIT = auto()
    REPLACE = auto()


@dataclass(frozen=True)
class Instrument:
    """
    Immutable instrument identity, used as the key of every per-instrument map.

    Venue metadata (size decimals, tradable flag) rides along but does not
    take part in equality or hashing.
    """
    symbol: str
    asset_class: AssetClass
    shortable: bool = True
    sz_decimals: int = field(default=3, compare=False)
    tradable: bool = field(default=True, compare=False)

    def __str__(self) -> str:
        return self.symbol


@dataclass(frozen=True)
class Bar:
    timestamp_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Quote:
    bid_price: float
    bid_size: float
    ask_price: float
    ask_size: float
    timestamp_ms: int = field(default_factory=now_ms)

    @property
    def mid(self) -> Optional[float]:
        if self.bid_price > 0 and self.ask_price > 0:
            return (self.bid_price + self.ask_price) / 2
        return None


@dataclass(frozen=True)
class Trade:
    price: float
    size: float = 0.0
    timestamp_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class Position:
    instrument: Instrument
    quantity: float
    avg_entry_price: float
    market_value: float = 0.0

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.avg_entry_price

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0


@dataclass(frozen=True)
class AccountSnapshot:
    buying_power: float
    equity: float
    multiplier: float = 1.0


@dataclass(frozen=True)
class TradeUpdate:
    """Asynchronous order/trade event reported by the venue."""
    order_id: str
    status: OrderStatus
    side: OrderSide
    symbol: str
    filled_qty: float = 0.0
    avg_fill_price: Optional[float] = None
    timestamp_ms: int = field(default_factory=now_ms)
    quantity: Optional[float] = None
    limit_price: Optional[float] = None
    position_qty: Optional[float] = None
    replaced_by: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.order_id}:{self.status.value}:{self.filled_qty}"


@dataclass(frozen=True)
class OpenOrder:
    order_id: str
    side: OrderSide
    quantity: float
    limit_price: Optional[float] = None
    status: OrderStatus = OrderStatus.NEW
    symbol: Optional[str] = None


@dataclass(frozen=True)
class OrderRequest:
    """Fully specified order handed to the gateway."""
    instrument: Instrument
    side: OrderSide
    order_type: OrderType
    time_in_force: TimeInForce
    quantity: float
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    trail_offset: Optional[float] = None
    extended_hours: bool = False
    client_order_id: Optional[str] = None


@dataclass(frozen=True)
class OrderResult:
    """Venue acknowledgement of a submit or replace."""
    order_id: str
    symbol: str
    side: OrderSide
    quantity: float
    status: OrderStatus = OrderStatus.NEW
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    filled_qty: float = 0.0
    avg_fill_price: Optional[float] = None


@dataclass(frozen=True)
class OrderIntent:
    """Proposed action produced by a decision function and consumed at once."""
    action: IntentAction
    side: OrderSide
    quantity: float
    order_type: OrderType = OrderType.LIMIT
    time_in_force: TimeInForce = TimeInForce.GTC
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    order_id: Optional[str] = None
    extended_hours: bool = False
