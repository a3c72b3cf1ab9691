"""
Pytest configuration and shared fakes.

FakeGateway implements the Gateway protocol in memory: it records every call,
can be told to fail submits/replaces, and pushes stream events synchronously
to the registered sinks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytest

from botdesk.core.errors import GatewayError, OrderRejectedError
from botdesk.core.models import (
    AccountSnapshot,
    AssetClass,
    Bar,
    Instrument,
    OpenOrder,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    Position,
)
from botdesk.core.timeframe import BarTimeFrame


@pytest.fixture(autouse=True)
def _reset_instrument_loggers():
    """Detach per-instrument log handlers so process-global loggers don't leak between tests."""
    yield
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if name.startswith("botdesk.bots.") and isinstance(logger, logging.Logger):
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)


def make_bars(closes, start_ms: int = 1_700_000_000_000, step_ms: int = 60_000) -> List[Bar]:
    return [
        Bar(timestamp_ms=start_ms + i * step_ms, open=c, high=c, low=c, close=c, volume=1.0)
        for i, c in enumerate(closes)
    ]


@dataclass
class FakeGateway:
    instruments: Dict[str, Instrument] = field(default_factory=dict)
    bars: List[Bar] = field(default_factory=lambda: make_bars([100.0] * 20))
    account: AccountSnapshot = field(default_factory=lambda: AccountSnapshot(buying_power=10_000.0, equity=10_000.0))
    positions: Dict[str, Position] = field(default_factory=dict)
    open_orders: List[OpenOrder] = field(default_factory=list)
    closed_orders: List[OrderResult] = field(default_factory=list)
    fail_submit: Optional[str] = None
    fail_replace: Optional[str] = None
    fail_account: bool = False
    call_delay: float = 0.0
    calls: List[tuple] = field(default_factory=list)
    submitted: List[OrderRequest] = field(default_factory=list)
    replaced: List[tuple] = field(default_factory=list)
    market_sinks: Dict[Instrument, Callable] = field(default_factory=dict)
    trade_sinks: List[Callable] = field(default_factory=list)
    closed: bool = False
    _next_id: int = 1000

    def add_instrument(self, symbol: str, asset_class: AssetClass = AssetClass.CRYPTO, tradable: bool = True) -> Instrument:
        instrument = Instrument(symbol=symbol, asset_class=asset_class, tradable=tradable)
        self.instruments[symbol] = instrument
        return instrument

    def _oid(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    async def _pause(self) -> None:
        if self.call_delay:
            await asyncio.sleep(self.call_delay)

    async def resolve_instrument(self, symbol: str) -> Optional[Instrument]:
        self.calls.append(("resolve_instrument", symbol))
        return self.instruments.get(symbol)

    async def get_historical_bars(self, instrument: Instrument, timeframe: BarTimeFrame, count: int, as_of: datetime):
        self.calls.append(("get_historical_bars", instrument.symbol, count))
        timeframe.venue_interval  # unsupported intervals raise LoopConfigError
        return self.bars[-count:]

    async def get_account(self) -> AccountSnapshot:
        self.calls.append(("get_account",))
        await self._pause()
        if self.fail_account:
            raise GatewayError("account unavailable")
        return self.account

    async def get_position(self, instrument: Instrument) -> Optional[Position]:
        self.calls.append(("get_position", instrument.symbol))
        return self.positions.get(instrument.symbol)

    async def list_positions(self) -> List[Position]:
        return list(self.positions.values())

    async def list_open_orders(self, instrument: Optional[Instrument] = None) -> List[OpenOrder]:
        if instrument is None:
            return list(self.open_orders)
        return [o for o in self.open_orders if o.symbol == instrument.symbol]

    async def list_closed_orders(self, limit: int = 50) -> List[OrderResult]:
        return self.closed_orders[:limit]

    async def cancel_order(self, order_id: str) -> None:
        self.calls.append(("cancel_order", order_id))
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]

    async def cancel_all_orders(self, instrument: Instrument) -> int:
        self.calls.append(("cancel_all_orders", instrument.symbol))
        mine = [o for o in self.open_orders if o.symbol == instrument.symbol]
        self.open_orders = [o for o in self.open_orders if o.symbol != instrument.symbol]
        return len(mine)

    async def submit_order(self, request: OrderRequest) -> OrderResult:
        self.calls.append(("submit_order", request.instrument.symbol, request.side.value))
        await self._pause()
        if self.fail_submit:
            raise OrderRejectedError(self.fail_submit)
        self.submitted.append(request)
        oid = self._oid()
        self.open_orders.append(OpenOrder(
            order_id=oid, side=request.side, quantity=request.quantity,
            limit_price=request.limit_price, symbol=request.instrument.symbol,
        ))
        return OrderResult(
            order_id=oid,
            symbol=request.instrument.symbol,
            side=request.side,
            quantity=request.quantity,
            limit_price=request.limit_price,
        )

    async def replace_order(self, order_id: str, limit_price=None, stop_price=None) -> OrderResult:
        self.calls.append(("replace_order", order_id, limit_price))
        await self._pause()
        if self.fail_replace:
            raise GatewayError(self.fail_replace)
        current = next((o for o in self.open_orders if o.order_id == order_id), None)
        if current is None:
            raise GatewayError(f"order {order_id} is not open")
        new_id = self._oid()
        self.replaced.append((order_id, new_id, limit_price))
        self.open_orders = [o for o in self.open_orders if o.order_id != order_id]
        self.open_orders.append(OpenOrder(
            order_id=new_id, side=current.side, quantity=current.quantity,
            limit_price=limit_price, symbol=current.symbol,
        ))
        return OrderResult(
            order_id=new_id, symbol=current.symbol or "", side=current.side,
            quantity=current.quantity, limit_price=limit_price,
        )

    async def close_position(self, instrument: Instrument) -> Optional[OrderResult]:
        self.calls.append(("close_position", instrument.symbol))
        position = self.positions.pop(instrument.symbol, None)
        if position is None:
            return None
        return OrderResult(
            order_id=self._oid(),
            symbol=instrument.symbol,
            side=OrderSide.SELL if position.quantity > 0 else OrderSide.BUY,
            quantity=abs(position.quantity),
            status=OrderStatus.FILLED,
            filled_qty=abs(position.quantity),
        )

    async def subscribe_trade_updates(self, sink) -> None:
        self.trade_sinks.append(sink)

    async def subscribe_market_data(self, instrument: Instrument, sink) -> None:
        self.calls.append(("subscribe_market_data", instrument.symbol))
        self.market_sinks[instrument] = sink

    async def unsubscribe_market_data(self, instrument: Instrument) -> None:
        self.calls.append(("unsubscribe_market_data", instrument.symbol))
        self.market_sinks.pop(instrument, None)

    async def close(self) -> None:
        self.closed = True

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.add_instrument("BTC")
    gw.add_instrument("ETH")
    gw.add_instrument("xyz:TSLA", AssetClass.EQUITY)
    return gw


@pytest.fixture
def btc(gateway):
    return gateway.instruments["BTC"]


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true; fail the test after timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
