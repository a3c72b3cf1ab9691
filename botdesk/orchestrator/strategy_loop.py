"""
StrategyLoop: one cancellable decision loop per instrument.

States:
    INITIALIZING -> WARMING_UP -> TICKING -> DRAINING -> STOPPED

INITIALIZING resolves the instrument, seeds the close window from history,
cancels resting orders and flattens any position so every run starts flat,
then subscribes market data. Configuration faults found there stop the loop
before its first tick.

Each tick reads the instrument state, fetches a fresh account snapshot, asks
the decision function for at most one intent, executes it through the order
protocol, appends the observed close to the window and sleeps one bar
interval (or until cancelled). Ticks never overlap. An in-flight gateway
call always completes; cancellation is observed at tick start and during the
sleep. Any other exception stops this loop only.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.errors import GatewayError, LoopConfigError
from botdesk.core.models import (
    Instrument,
    IntentAction,
    OpenOrder,
    OrderIntent,
    OrderStatus,
)
from botdesk.execution.order_protocol import OrderProtocol
from botdesk.gateway.base import Gateway
from botdesk.gateway.streams import MarketStreams
from botdesk.infra.bot_logger import BotLogger
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.orchestrator.cancellation import CancellationScope
from botdesk.state.instrument_state import InstrumentState, InstrumentStateCache
from botdesk.strategy.base import DecisionInputs, Strategy


class LoopState(Enum):
    INITIALIZING = "initializing"
    WARMING_UP = "warming_up"
    TICKING = "ticking"
    DRAINING = "draining"
    STOPPED = "stopped"


STOP_CANCELLED = "cancelled"
STOP_FAULT = "fault"
STOP_CONFIG_FAULT = "config_fault"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StrategyLoop:
    def __init__(
        self,
        instrument: Instrument,
        config: StrategyConfig,
        gateway: Gateway,
        cache: InstrumentStateCache,
        orders: OrderProtocol,
        strategy: Strategy,
        scope: Optional[CancellationScope] = None,
        market_streams: Optional[MarketStreams] = None,
        metrics: Optional[RichMetrics] = None,
        logger: Optional[BotLogger] = None,
        tick_interval: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.instrument = instrument
        self.config = config
        self.gateway = gateway
        self.cache = cache
        self.orders = orders
        self.strategy = strategy
        self.scope = scope or CancellationScope()
        self.market_streams = market_streams
        self.metrics = metrics
        self.logger = logger or BotLogger(instrument.symbol)
        self.tick_interval = tick_interval if tick_interval is not None else config.timeframe.seconds
        self.clock = clock
        self.state = LoopState.INITIALIZING
        self.stop_reason: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.tick_count = 0
        self._in_tick = False

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    @property
    def instrument_state(self) -> Optional[InstrumentState]:
        return self.cache.get(self.instrument)

    async def run(self) -> str:
        """Run until cancelled or faulted. Returns the stop reason."""
        try:
            await self._initialize()
            if self.scope.cancelled:
                self._finish(STOP_CANCELLED)
                return self.stop_reason
            self.state = LoopState.TICKING
            self.logger.log("loop_ticking", interval_sec=self.tick_interval, window=len(self._state().closes))
            while not self.scope.cancelled:
                await self.tick()
                if await self.scope.sleep(self.tick_interval):
                    break
            self._finish(STOP_CANCELLED)
        except LoopConfigError as exc:
            self.error = exc
            self.logger.log("loop_config_fault", err=str(exc))
            self._finish(STOP_CONFIG_FAULT)
        except asyncio.CancelledError:
            self._finish(STOP_CANCELLED)
            raise
        except Exception as exc:
            self.error = exc
            self.logger.log("loop_fault", err=str(exc), error_type=type(exc).__name__)
            self._finish(STOP_FAULT)
        finally:
            await self._release()
        return self.stop_reason

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _state(self) -> InstrumentState:
        return self.cache.get_or_create(self.instrument, self.config.window_bars)

    async def _initialize(self) -> None:
        self.state = LoopState.INITIALIZING
        resolved = await self.gateway.resolve_instrument(self.instrument.symbol)
        if resolved is None:
            raise LoopConfigError(f"cannot resolve instrument {self.instrument.symbol}")
        if not resolved.tradable:
            raise LoopConfigError(f"instrument {resolved.symbol} is not tradable")
        if resolved.asset_class not in self.config.asset_classes:
            raise LoopConfigError(
                f"asset class {resolved.asset_class.value} not enabled for {self.config.strategy}"
            )
        self.instrument = resolved
        state = self._state()
        state.owner = self

        bars = await self.gateway.get_historical_bars(
            resolved, self.config.timeframe, self.config.average_bars, self.clock(),
        )

        cancelled = await self.orders.cancel_open_orders(resolved)
        state.clear_order()
        closed = await self.orders.liquidate(resolved)
        try:
            state.position = await self.gateway.get_position(resolved)
        except GatewayError as exc:
            self.logger.log("position_fetch_error", err=str(exc))
        self.logger.log(
            "loop_baseline",
            cancelled=cancelled,
            liquidated=closed.order_id if closed else None,
            position=state.position_qty,
        )

        self.state = LoopState.WARMING_UP
        state.seed(bar.close for bar in bars)
        if bars and state.last_bar is None:
            state.last_bar = bars[-1]
        self.logger.log("loop_seeded", bars=len(bars), window=len(state.closes), average=state.rolling_average)

        if self.market_streams is not None:
            await self.market_streams.subscribe(resolved, owner=self)

    def _finish(self, reason: str) -> None:
        if self.state is not LoopState.STOPPED:
            self.state = LoopState.DRAINING
        self.stop_reason = reason

    async def _release(self) -> None:
        if self.stop_reason is None:
            self.stop_reason = STOP_CANCELLED
        if self.market_streams is not None and self.stop_reason != STOP_CONFIG_FAULT:
            try:
                await self.market_streams.unsubscribe(self.instrument, owner=self)
            except GatewayError as exc:
                self.logger.log("unsubscribe_error", err=str(exc))
        self.cache.discard_if_idle(self.instrument, owner=self)
        self.state = LoopState.STOPPED
        if self.metrics:
            self.metrics.loop_stopped_total.labels(symbol=self.symbol, reason=self.stop_reason).inc()
        self.logger.log("loop_stopped", reason=self.stop_reason, ticks=self.tick_count)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> Optional[OrderIntent]:
        if self._in_tick:
            raise RuntimeError(f"overlapping tick on {self.symbol}")
        self._in_tick = True
        started = time.perf_counter()
        try:
            state = self._state()
            self.logger.log("tick_start", tick=self.tick_count + 1)

            equity = 0.0
            try:
                account = await self.gateway.get_account()
                equity = account.equity
            except GatewayError as exc:
                self.logger.log("account_fetch_error", err=str(exc))

            inputs = DecisionInputs.from_state(
                state,
                equity=equity,
                profit_pct=self.config.profit_pct,
                quantity_scale=self.config.quantity_scale,
            )
            intent = self.strategy.decide(inputs)
            if intent is None:
                self.logger.log("decision_none", price=inputs.last_price, average=inputs.rolling_average)
            else:
                await self._execute(intent, state)

            close = state.observed_close
            if close is None:
                self.logger.log("no_close_observed")
            else:
                state.append_close(close)
                self.logger.log("window_update", close=close, window=len(state.closes))

            self.tick_count += 1
            if self.metrics:
                self.metrics.ticks_total.labels(symbol=self.symbol).inc()
                self.metrics.tick_duration_ms.labels(symbol=self.symbol).observe(
                    (time.perf_counter() - started) * 1000
                )
            self.logger.log("tick_end", tick=self.tick_count)
            return intent
        finally:
            self._in_tick = False

    async def _execute(self, intent: OrderIntent, state: InstrumentState) -> None:
        if intent.action is IntentAction.SUBMIT:
            result, message = await self.orders.submit(
                side=intent.side,
                order_type=intent.order_type,
                time_in_force=intent.time_in_force,
                extended_hours=intent.extended_hours,
                instrument=self.instrument,
                quantity=intent.quantity,
                stop_price=intent.stop_price,
                limit_price=intent.limit_price,
            )
            if result is None:
                self.logger.log("order_submit_error", message=message)
                return
            self.logger.log("order_submitted", order_id=result.order_id, message=message)
            if result.status is OrderStatus.FILLED or state.is_closed(result.order_id):
                self.logger.log("order_already_closed", order_id=result.order_id, status=result.status.value)
            else:
                state.record_order(OpenOrder(
                    order_id=result.order_id,
                    side=intent.side,
                    quantity=result.quantity,
                    limit_price=result.limit_price if result.limit_price is not None else intent.limit_price,
                    status=result.status,
                    symbol=self.symbol,
                ))
            return

        if intent.order_id is None:
            self.logger.log("replace_target_missing")
            return
        state.replacing_order_id = intent.order_id
        result, message = await self.orders.replace(
            intent.order_id, new_limit_price=intent.limit_price, new_stop_price=intent.stop_price, symbol=self.symbol,
        )
        if result is None:
            if state.replacing_order_id == intent.order_id:
                state.replacing_order_id = None
            self.logger.log("order_replace_error", order_id=intent.order_id, message=message)
            return
        previous = state.open_order
        if state.is_closed(result.order_id):
            if previous is None or previous.order_id in (intent.order_id, result.order_id):
                state.clear_order()
            else:
                state.replacing_order_id = None
            self.logger.log("order_already_closed", order_id=result.order_id)
        elif previous is not None:
            state.record_order(dataclasses.replace(
                previous,
                order_id=result.order_id,
                limit_price=result.limit_price if result.limit_price is not None else intent.limit_price,
            ))
        else:
            state.replacing_order_id = None
        self.logger.log("order_replaced", order_id=intent.order_id, new_order_id=result.order_id, message=message)
