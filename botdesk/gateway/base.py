"""
Market & Order Gateway capability surface consumed by the engine.

Implementations own transport concerns (signing, retries, reconnects,
timeouts). Every call may raise GatewayError; callers in the engine decide
whether that is recoverable.

Subscription sinks may be invoked from any thread; the engine hands them
to botdesk.gateway.streams which moves events onto the event loop.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol, Sequence, Union, runtime_checkable

from botdesk.core.models import (
    AccountSnapshot,
    Bar,
    Instrument,
    OpenOrder,
    OrderRequest,
    OrderResult,
    Position,
    Quote,
    Trade,
    TradeUpdate,
)
from botdesk.core.timeframe import BarTimeFrame

MarketEvent = Union[Trade, Quote, Bar]
MarketSink = Callable[[MarketEvent], None]
TradeUpdateSink = Callable[[TradeUpdate], None]


@runtime_checkable
class Gateway(Protocol):
    async def resolve_instrument(self, symbol: str) -> Optional[Instrument]:
        """Instrument metadata, or None when the venue does not list the symbol."""
        ...

    async def get_historical_bars(
        self,
        instrument: Instrument,
        timeframe: BarTimeFrame,
        count: int,
        as_of: datetime,
    ) -> Sequence[Bar]:
        ...

    async def get_account(self) -> AccountSnapshot:
        ...

    async def get_position(self, instrument: Instrument) -> Optional[Position]:
        ...

    async def list_positions(self) -> List[Position]:
        ...

    async def list_open_orders(self, instrument: Optional[Instrument] = None) -> List[OpenOrder]:
        ...

    async def list_closed_orders(self, limit: int = 50) -> List[OrderResult]:
        ...

    async def cancel_order(self, order_id: str) -> None:
        ...

    async def cancel_all_orders(self, instrument: Instrument) -> int:
        """Cancel every open order of the instrument; returns how many were sent."""
        ...

    async def submit_order(self, request: OrderRequest) -> OrderResult:
        ...

    async def replace_order(
        self,
        order_id: str,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
    ) -> OrderResult:
        ...

    async def close_position(self, instrument: Instrument) -> Optional[OrderResult]:
        """Close at market. None when there was nothing to close."""
        ...

    async def subscribe_trade_updates(self, sink: TradeUpdateSink) -> None:
        ...

    async def subscribe_market_data(self, instrument: Instrument, sink: MarketSink) -> None:
        ...

    async def unsubscribe_market_data(self, instrument: Instrument) -> None:
        ...

    async def close(self) -> None:
        ...
