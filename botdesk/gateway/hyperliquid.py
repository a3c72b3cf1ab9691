"""
Hyperliquid implementation of the Gateway protocol.

Architecture:
    - REST reads go through AsyncInfo (httpx, HTTP/2).
    - Signed actions go through AsyncExchange (SDK Exchange in a thread pool),
      serialized per account by the nonce lock.
    - Streams use the SDK Info websocket; its callbacks run on the SDK's
      thread and only forward parsed events to the engine's sinks.

Environment: mainnet is "live", testnet is "paper"; the ConnectionContext
decides which one and which builder dex (e.g. "xyz" for equity perps).
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from hyperliquid.info import Info
from hyperliquid.utils.signing import CancelRequest
from hyperliquid.utils.types import Cloid

from botdesk.config.config import ConnectionContext
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
    OrderType,
    Position,
    Quote,
    TimeInForce,
    Trade,
    TradeUpdate,
)
from botdesk.core.rounding import round_price, round_size
from botdesk.core.timeframe import BarTimeFrame
from botdesk.core.utils import BoundedSet, now_ms, to_float_safe
from botdesk.gateway.base import MarketSink, TradeUpdateSink
from botdesk.gateway.responses import extract_error_message, extract_fill, extract_ids
from botdesk.infra.async_execution import AsyncExchange
from botdesk.infra.async_info import AsyncInfo

log = logging.getLogger("botdesk")

_TIF = {
    TimeInForce.GTC: "Gtc",
    TimeInForce.DAY: "Gtc",
    TimeInForce.IOC: "Ioc",
}

_CANCELED_STATUSES = {"canceled", "marginCanceled", "reduceOnlyCanceled", "selfTradeCanceled",
                      "siblingFilledCanceled", "delistedCanceled", "liquidatedCanceled",
                      "scheduledCancel", "openInterestCapCanceled", "vaultWithdrawalCanceled"}


def _side(raw: Any) -> OrderSide:
    return OrderSide.BUY if str(raw).upper() in ("B", "BUY") else OrderSide.SELL


def map_order_status(raw_status: str, sz: Optional[float] = None, orig_sz: Optional[float] = None) -> OrderStatus:
    """Translate a venue order status string to OrderStatus."""
    if raw_status == "open":
        if sz is not None and orig_sz is not None and 0 < sz < orig_sz:
            return OrderStatus.PARTIALLY_FILLED
        return OrderStatus.NEW
    if raw_status == "filled":
        return OrderStatus.FILLED
    if raw_status == "triggered":
        return OrderStatus.ACCEPTED
    if raw_status == "rejected":
        return OrderStatus.REJECTED
    if raw_status in _CANCELED_STATUSES or raw_status.endswith("Canceled"):
        return OrderStatus.CANCELED
    return OrderStatus.ACCEPTED


def parse_bar(raw: Dict[str, Any]) -> Bar:
    return Bar(
        timestamp_ms=int(raw.get("t", 0)),
        open=float(raw.get("o", 0.0)),
        high=float(raw.get("h", 0.0)),
        low=float(raw.get("l", 0.0)),
        close=float(raw.get("c", 0.0)),
        volume=float(raw.get("v", 0.0)),
    )


def asset_class_for(symbol: str) -> AssetClass:
    """Builder-dex listings ("xyz:TSLA") are equity perps; native perps are crypto."""
    return AssetClass.EQUITY if ":" in symbol else AssetClass.CRYPTO


class _FillBook:
    """Per-oid fill aggregation fed from the websocket thread.

    Fills for an oid that already reached a terminal status are reported but
    not aggregated, so late deliveries leave nothing behind.
    """

    def __init__(self, closed_kept: int = 5000) -> None:
        self._lock = threading.Lock()
        self._qty: Dict[int, float] = {}
        self._notional: Dict[int, float] = {}
        self._position: Dict[str, float] = {}
        self._closed = BoundedSet(maxlen=closed_kept)

    def add(self, oid: int, coin: str, px: float, sz: float, position_after: float) -> tuple[float, float]:
        with self._lock:
            self._position[coin] = position_after
            if oid in self._closed:
                return sz, px
            self._qty[oid] = self._qty.get(oid, 0.0) + sz
            self._notional[oid] = self._notional.get(oid, 0.0) + px * sz
            qty = self._qty[oid]
            return qty, self._notional[oid] / qty if qty else 0.0

    def get(self, oid: int, coin: str) -> tuple[float, Optional[float], Optional[float]]:
        with self._lock:
            qty = self._qty.get(oid, 0.0)
            avg = self._notional[oid] / qty if qty else None
            return qty, avg, self._position.get(coin)

    def forget(self, oid: int) -> None:
        with self._lock:
            self._closed.add(oid)
            self._qty.pop(oid, None)
            self._notional.pop(oid, None)


class HyperliquidGateway:
    def __init__(
        self,
        ctx: ConnectionContext,
        info: Info,
        async_info: AsyncInfo,
        exchange: AsyncExchange,
        nonce_lock: asyncio.Lock,
        leverage: float = 1.0,
        slippage: float = 0.05,
    ) -> None:
        self.ctx = ctx
        self.info = info
        self.async_info = async_info
        self.exchange = exchange
        self.nonce_lock = nonce_lock
        self.leverage = leverage
        self.slippage = slippage
        self._instruments: Dict[str, Instrument] = {}
        self._market_subs: Dict[Instrument, List[tuple[Dict[str, Any], int]]] = {}
        self._user_subs: List[tuple[Dict[str, Any], int]] = []
        self._fills = _FillBook()

    @property
    def _dex(self) -> Optional[str]:
        return self.ctx.dex or None

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def resolve_instrument(self, symbol: str) -> Optional[Instrument]:
        cached = self._instruments.get(symbol)
        if cached is not None:
            return cached
        try:
            meta = await self.async_info.meta(self._dex)
        except Exception as exc:
            raise GatewayError(f"meta lookup failed: {exc}") from exc
        universe = meta.get("universe", []) if isinstance(meta, dict) else []
        short = symbol.split(":")[-1]
        for asset in universe:
            name = asset.get("name", "")
            if name not in (symbol, short, f"{short}-PERP"):
                continue
            instrument = Instrument(
                symbol=symbol,
                asset_class=asset_class_for(symbol),
                shortable=True,
                sz_decimals=int(asset.get("szDecimals", 3)),
                tradable=not asset.get("isDelisted", False),
            )
            self._instruments[symbol] = instrument
            return instrument
        return None

    async def _instrument_for(self, symbol: str) -> Instrument:
        instrument = self._instruments.get(symbol) or await self.resolve_instrument(symbol)
        if instrument is None:
            raise GatewayError(f"unknown symbol {symbol}")
        return instrument

    # ------------------------------------------------------------------
    # Market data and account reads
    # ------------------------------------------------------------------

    async def get_historical_bars(
        self,
        instrument: Instrument,
        timeframe: BarTimeFrame,
        count: int,
        as_of: datetime,
    ) -> Sequence[Bar]:
        start = timeframe.lookback_start(as_of, count)
        interval = timeframe.venue_interval
        try:
            raw = await self.async_info.candle_snapshot(
                instrument.symbol,
                interval,
                int(start.timestamp() * 1000),
                int(as_of.timestamp() * 1000),
            )
        except Exception as exc:
            raise GatewayError(f"candle snapshot failed: {exc}") from exc
        bars = [parse_bar(c) for c in raw or [] if isinstance(c, dict)]
        bars.sort(key=lambda b: b.timestamp_ms)
        return bars[-count:]

    async def _user_state(self) -> Dict[str, Any]:
        try:
            state = await self.async_info.user_state(self.ctx.account_address, self._dex)
        except Exception as exc:
            raise GatewayError(f"user state failed: {exc}") from exc
        return state if isinstance(state, dict) else {}

    async def get_account(self) -> AccountSnapshot:
        state = await self._user_state()
        summary = state.get("marginSummary") or state.get("crossMarginSummary") or {}
        equity = to_float_safe(summary.get("accountValue"), 0.0) or 0.0
        withdrawable = to_float_safe(state.get("withdrawable"), 0.0) or 0.0
        return AccountSnapshot(
            buying_power=withdrawable * self.leverage,
            equity=equity,
            multiplier=self.leverage,
        )

    def _positions_from_state(self, state: Dict[str, Any]) -> List[Position]:
        positions: List[Position] = []
        for entry in state.get("assetPositions", []):
            pos = entry.get("position", {}) if isinstance(entry, dict) else {}
            qty = to_float_safe(pos.get("szi"), 0.0) or 0.0
            if qty == 0:
                continue
            coin = pos.get("coin", "")
            instrument = self._instruments.get(coin) or Instrument(symbol=coin, asset_class=asset_class_for(coin))
            positions.append(Position(
                instrument=instrument,
                quantity=qty,
                avg_entry_price=to_float_safe(pos.get("entryPx"), 0.0) or 0.0,
                market_value=to_float_safe(pos.get("positionValue"), 0.0) or 0.0,
            ))
        return positions

    async def get_position(self, instrument: Instrument) -> Optional[Position]:
        state = await self._user_state()
        for position in self._positions_from_state(state):
            if position.instrument.symbol == instrument.symbol:
                return position
        return None

    async def list_positions(self) -> List[Position]:
        return self._positions_from_state(await self._user_state())

    async def _raw_open_orders(self) -> List[Dict[str, Any]]:
        try:
            orders = await self.async_info.frontend_open_orders(self.ctx.account_address, self._dex)
        except Exception as exc:
            raise GatewayError(f"open orders failed: {exc}") from exc
        if isinstance(orders, dict):
            orders = orders.get("openOrders", [])
        return [o for o in orders or [] if isinstance(o, dict)]

    async def list_open_orders(self, instrument: Optional[Instrument] = None) -> List[OpenOrder]:
        result: List[OpenOrder] = []
        for o in await self._raw_open_orders():
            if instrument is not None and o.get("coin") != instrument.symbol:
                continue
            sz = to_float_safe(o.get("sz"), 0.0) or 0.0
            orig = to_float_safe(o.get("origSz"), sz)
            result.append(OpenOrder(
                order_id=str(o.get("oid")),
                side=_side(o.get("side")),
                quantity=sz,
                limit_price=to_float_safe(o.get("limitPx")),
                status=map_order_status("open", sz, orig),
                symbol=o.get("coin"),
            ))
        return result

    async def list_closed_orders(self, limit: int = 50) -> List[OrderResult]:
        try:
            raw = await self.async_info.historical_orders(self.ctx.account_address)
        except Exception as exc:
            raise GatewayError(f"historical orders failed: {exc}") from exc
        closed: List[tuple[int, OrderResult]] = []
        for entry in raw or []:
            if not isinstance(entry, dict) or entry.get("status") == "open":
                continue
            order = entry.get("order", {})
            orig = to_float_safe(order.get("origSz"), 0.0) or 0.0
            remaining = to_float_safe(order.get("sz"), 0.0) or 0.0
            closed.append((int(entry.get("statusTimestamp", 0)), OrderResult(
                order_id=str(order.get("oid")),
                symbol=order.get("coin", ""),
                side=_side(order.get("side")),
                quantity=orig,
                status=map_order_status(str(entry.get("status", ""))),
                limit_price=to_float_safe(order.get("limitPx")),
                filled_qty=max(0.0, orig - remaining),
            )))
        closed.sort(key=lambda item: item[0], reverse=True)
        return [r for _, r in closed[:limit]]

    # ------------------------------------------------------------------
    # Order actions
    # ------------------------------------------------------------------

    async def cancel_order(self, order_id: str) -> None:
        for o in await self._raw_open_orders():
            if str(o.get("oid")) == str(order_id):
                coin = o.get("coin")
                break
        else:
            raise GatewayError(f"order {order_id} is not open")
        async with self.nonce_lock:
            try:
                resp = await self.exchange.cancel(coin, int(order_id))
            except Exception as exc:
                raise GatewayError(f"cancel failed: {exc}") from exc
        err = extract_error_message(resp)
        if err:
            raise OrderRejectedError(err, resp)

    async def cancel_all_orders(self, instrument: Instrument) -> int:
        requests: List[CancelRequest] = [
            {"coin": instrument.symbol, "oid": int(o["oid"])}
            for o in await self._raw_open_orders()
            if o.get("coin") == instrument.symbol and o.get("oid") is not None
        ]
        if not requests:
            return 0
        async with self.nonce_lock:
            try:
                resp = await self.exchange.bulk_cancel(requests)
            except Exception as exc:
                raise GatewayError(f"bulk cancel failed: {exc}") from exc
        err = extract_error_message(resp)
        if err:
            raise OrderRejectedError(err, resp)
        return len(requests)

    def _order_type(self, request: OrderRequest) -> tuple[Dict[str, Any], float]:
        """Venue order type and the limit price to send with it."""
        instrument = request.instrument
        if request.order_type is OrderType.LIMIT:
            if request.limit_price is None:
                raise GatewayError("limit order needs a limit price")
            tif = _TIF.get(request.time_in_force)
            if tif is None:
                raise GatewayError(f"time in force {request.time_in_force.value} not supported")
            return {"limit": {"tif": tif}}, round_price(request.limit_price, instrument.sz_decimals)
        if request.order_type in (OrderType.STOP, OrderType.STOP_LIMIT):
            if request.stop_price is None:
                raise GatewayError("stop order needs a stop price")
            is_market = request.order_type is OrderType.STOP
            px = request.stop_price if is_market else request.limit_price
            if px is None:
                raise GatewayError("stop limit order needs a limit price")
            trigger = {
                "triggerPx": round_price(request.stop_price, instrument.sz_decimals),
                "isMarket": is_market,
                "tpsl": "sl",
            }
            return {"trigger": trigger}, round_price(px, instrument.sz_decimals)
        raise GatewayError(f"order type {request.order_type.value} not supported")

    def _result_from(self, resp: Any, request_side: OrderSide, symbol: str, qty: float,
                     limit_price: Optional[float], stop_price: Optional[float] = None) -> OrderResult:
        err = extract_error_message(resp)
        if err:
            raise OrderRejectedError(err, resp)
        oid, cloid = extract_ids(resp)
        order_id = str(oid) if oid is not None else cloid
        if order_id is None:
            raise GatewayError("venue response carried no order id", resp)
        fill = extract_fill(resp)
        return OrderResult(
            order_id=order_id,
            symbol=symbol,
            side=request_side,
            quantity=qty,
            status=OrderStatus.FILLED if fill else OrderStatus.NEW,
            limit_price=limit_price,
            stop_price=stop_price,
            filled_qty=fill[0] if fill else 0.0,
            avg_fill_price=fill[1] if fill else None,
        )

    async def submit_order(self, request: OrderRequest) -> OrderResult:
        instrument = request.instrument
        sz = round_size(request.quantity, instrument.sz_decimals)
        if sz <= 0:
            raise GatewayError(f"size {request.quantity} rounds to zero")
        cloid = Cloid(request.client_order_id or f"0x{secrets.token_hex(16)}")
        async with self.nonce_lock:
            try:
                if request.order_type is OrderType.MARKET:
                    px = None
                    resp = await self.exchange.market_open(
                        instrument.symbol, request.side.is_buy, sz, None, self.slippage, cloid=cloid,
                    )
                else:
                    order_type, px = self._order_type(request)
                    resp = await self.exchange.order(
                        instrument.symbol, request.side.is_buy, sz, px, order_type, False, cloid=cloid,
                    )
            except GatewayError:
                raise
            except Exception as exc:
                raise GatewayError(f"order failed: {exc}") from exc
        return self._result_from(resp, request.side, instrument.symbol, sz, px, request.stop_price)

    async def replace_order(
        self,
        order_id: str,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
    ) -> OrderResult:
        for o in await self._raw_open_orders():
            if str(o.get("oid")) == str(order_id):
                break
        else:
            raise GatewayError(f"order {order_id} is not open")
        instrument = await self._instrument_for(o.get("coin", ""))
        side = _side(o.get("side"))
        sz = to_float_safe(o.get("sz"), 0.0) or 0.0
        new_limit = limit_price if limit_price is not None else to_float_safe(o.get("limitPx"), 0.0)
        px = round_price(new_limit or 0.0, instrument.sz_decimals)
        if stop_price is not None or o.get("isTrigger"):
            trigger_px = stop_price if stop_price is not None else to_float_safe(o.get("triggerPx"), px)
            order_type: Dict[str, Any] = {"trigger": {
                "triggerPx": round_price(trigger_px or px, instrument.sz_decimals),
                "isMarket": "Market" in str(o.get("orderType", "")),
                "tpsl": "sl",
            }}
        else:
            order_type = {"limit": {"tif": o.get("tif") or "Gtc"}}
        async with self.nonce_lock:
            try:
                resp = await self.exchange.modify_order(
                    int(order_id), instrument.symbol, side.is_buy, sz, px, order_type, bool(o.get("reduceOnly", False)),
                )
            except Exception as exc:
                raise GatewayError(f"modify failed: {exc}") from exc
        err = extract_error_message(resp)
        if err:
            raise OrderRejectedError(err, resp)
        oid, _ = extract_ids(resp)
        return OrderResult(
            order_id=str(oid) if oid is not None else str(order_id),
            symbol=instrument.symbol,
            side=side,
            quantity=sz,
            status=OrderStatus.NEW,
            limit_price=px,
            stop_price=stop_price,
        )

    async def close_position(self, instrument: Instrument) -> Optional[OrderResult]:
        position = await self.get_position(instrument)
        if position is None:
            return None
        async with self.nonce_lock:
            try:
                resp = await self.exchange.market_close(instrument.symbol, None, None, self.slippage)
            except Exception as exc:
                raise GatewayError(f"market close failed: {exc}") from exc
        if resp is None:
            return None
        side = OrderSide.SELL if position.quantity > 0 else OrderSide.BUY
        return self._result_from(resp, side, instrument.symbol, abs(position.quantity), None)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def subscribe_trade_updates(self, sink: TradeUpdateSink) -> None:
        account = self.ctx.account_address.lower()

        def _on_order_updates(msg: Any) -> None:
            data = msg.get("data") if isinstance(msg, dict) else None
            for update in data if isinstance(data, list) else [data] if data else []:
                try:
                    trade_update = self._parse_order_update(update)
                except (KeyError, TypeError, ValueError) as exc:
                    log.warning(json.dumps({"event": "order_update_parse_error", "err": str(exc)}))
                    continue
                if trade_update is not None:
                    sink(trade_update)

        def _on_user_fills(msg: Any) -> None:
            data = msg.get("data", {}) if isinstance(msg, dict) else {}
            if data.get("isSnapshot") or str(data.get("user", "")).lower() != account:
                return
            for fill in data.get("fills") or []:
                try:
                    trade_update = self._parse_fill(fill)
                except (KeyError, TypeError, ValueError) as exc:
                    log.warning(json.dumps({"event": "fill_parse_error", "err": str(exc)}))
                    continue
                sink(trade_update)

        for sub, cb in (
            ({"type": "orderUpdates", "user": self.ctx.account_address}, _on_order_updates),
            ({"type": "userFills", "user": self.ctx.account_address}, _on_user_fills),
        ):
            sub_id = self.info.subscribe(sub, cb)
            self._user_subs.append((sub, sub_id))
        log.info(json.dumps({"event": "trade_updates_subscribed", "environment": self.ctx.environment}))

    def _parse_fill(self, fill: Dict[str, Any]) -> TradeUpdate:
        oid = int(fill["oid"])
        coin = fill["coin"]
        side = _side(fill.get("side"))
        px = float(fill["px"])
        sz = float(fill["sz"])
        start = to_float_safe(fill.get("startPosition"), 0.0) or 0.0
        position_after = start + sz if side.is_buy else start - sz
        total, avg = self._fills.add(oid, coin, px, sz, position_after)
        return TradeUpdate(
            order_id=str(oid),
            status=OrderStatus.PARTIALLY_FILLED,
            side=side,
            symbol=coin,
            filled_qty=total,
            avg_fill_price=avg,
            timestamp_ms=int(fill.get("time", now_ms())),
            limit_price=px,
            position_qty=position_after,
        )

    def _parse_order_update(self, update: Dict[str, Any]) -> Optional[TradeUpdate]:
        order = update.get("order") or {}
        if not order:
            return None
        oid = int(order["oid"])
        coin = order["coin"]
        sz = to_float_safe(order.get("sz"), 0.0) or 0.0
        orig = to_float_safe(order.get("origSz"), sz) or sz
        status = map_order_status(str(update.get("status", "")), sz, orig)
        filled, avg, position_qty = self._fills.get(oid, coin)
        if status is OrderStatus.FILLED:
            filled = filled or orig
            self._fills.forget(oid)
        elif status in (OrderStatus.CANCELED, OrderStatus.REJECTED):
            self._fills.forget(oid)
        return TradeUpdate(
            order_id=str(oid),
            status=status,
            side=_side(order.get("side")),
            symbol=coin,
            filled_qty=filled or max(0.0, orig - sz),
            avg_fill_price=avg,
            timestamp_ms=int(update.get("statusTimestamp", now_ms())),
            quantity=orig,
            limit_price=to_float_safe(order.get("limitPx")),
            position_qty=position_qty if status.is_fill else None,
        )

    async def subscribe_market_data(self, instrument: Instrument, sink: MarketSink) -> None:
        if instrument in self._market_subs:
            return
        coin = instrument.symbol
        last_candle: Dict[str, Any] = {}

        def _on_trades(msg: Any) -> None:
            trades = msg.get("data") if isinstance(msg, dict) else None
            if not trades:
                return
            last = trades[-1]
            if last.get("coin") != coin:
                return
            sink(Trade(price=float(last["px"]), size=float(last.get("sz", 0.0)), timestamp_ms=int(last.get("time", now_ms()))))

        def _on_book(msg: Any) -> None:
            data = msg.get("data", {}) if isinstance(msg, dict) else {}
            levels = data.get("levels")
            if data.get("coin") != coin or not levels or len(levels) < 2:
                return
            bids, asks = levels[0], levels[1]
            if not bids or not asks:
                return
            sink(Quote(
                bid_price=float(bids[0]["px"]),
                bid_size=float(bids[0]["sz"]),
                ask_price=float(asks[0]["px"]),
                ask_size=float(asks[0]["sz"]),
                timestamp_ms=int(data.get("time", now_ms())),
            ))

        def _on_candle(msg: Any) -> None:
            data = msg.get("data", {}) if isinstance(msg, dict) else {}
            if data.get("s") != coin:
                return
            # The stream repeats the forming candle; emit the previous one once a new one starts.
            previous = last_candle.get("candle")
            if previous is not None and previous.get("t") != data.get("t"):
                sink(parse_bar(previous))
            last_candle["candle"] = data

        subs = [
            ({"type": "trades", "coin": coin}, _on_trades),
            ({"type": "l2Book", "coin": coin}, _on_book),
            ({"type": "candle", "coin": coin, "interval": "1m"}, _on_candle),
        ]
        self._market_subs[instrument] = [(sub, self.info.subscribe(sub, cb)) for sub, cb in subs]
        log.info(json.dumps({"event": "market_data_subscribed", "symbol": coin}))

    async def unsubscribe_market_data(self, instrument: Instrument) -> None:
        for sub, sub_id in self._market_subs.pop(instrument, []):
            try:
                self.info.unsubscribe(sub, sub_id)
            except Exception as exc:
                log.warning(json.dumps({"event": "unsubscribe_error", "symbol": instrument.symbol, "err": str(exc)}))

    async def close(self) -> None:
        for instrument in list(self._market_subs):
            await self.unsubscribe_market_data(instrument)
        try:
            self.info.disconnect_websocket()
        except Exception as exc:
            log.warning(json.dumps({"event": "ws_disconnect_error", "err": str(exc)}))
        await self.async_info.close()
        await self.exchange.close()
