"""
ActiveLoopRegistry: instrument -> running strategy loop.

At most one loop runs per instrument; a second start returns the existing
handle. Start and stop are serialized by one asyncio.Lock, the only piece of
engine state under mutual exclusion. Stopping signals the loop's
cancellation scope and returns at once; it never cancels orders or closes
positions (flatten() does that, explicitly).

Every change to the tracked set, and every fill on a tracked instrument,
publishes BOT_LIST_UPDATED so a presentation layer can refresh bot_list().
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Set, Union

from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.errors import GatewayError, LoopConfigError
from botdesk.core.event_bus import Event, EventBus, EventType
from botdesk.core.models import Instrument, OrderStatus, Position
from botdesk.core.utils import now_ms
from botdesk.execution.order_protocol import FlattenResult, OrderProtocol
from botdesk.gateway.base import Gateway
from botdesk.gateway.streams import MarketStreams
from botdesk.infra.bot_logger import BotLogger, BotLoggerConfig
from botdesk.infra.logging_cfg import build_instrument_logger
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.orchestrator.cancellation import CancellationScope
from botdesk.orchestrator.strategy_loop import StrategyLoop
from botdesk.state.instrument_state import InstrumentStateCache
from botdesk.strategy.strategy_factory import StrategyFactory

log = logging.getLogger("botdesk")

_FILL_STATUSES = {OrderStatus.FILLED.value, OrderStatus.PARTIALLY_FILLED.value}


@dataclass
class LoopHandle:
    loop: StrategyLoop
    scope: CancellationScope
    task: asyncio.Task
    started_ms: int = field(default_factory=now_ms)

    @property
    def instrument(self) -> Instrument:
        return self.loop.instrument

    @property
    def running(self) -> bool:
        return not self.task.done()


class ActiveLoopRegistry:
    def __init__(
        self,
        gateway: Gateway,
        cache: InstrumentStateCache,
        orders: OrderProtocol,
        default_config: Optional[StrategyConfig] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[RichMetrics] = None,
        market_streams: Optional[MarketStreams] = None,
        overrides: Optional[Mapping[str, Mapping]] = None,
        log_dir: Optional[str] = "logs",
        logger_config: Optional[BotLoggerConfig] = None,
        tick_interval: Optional[float] = None,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.orders = orders
        self.default_config = default_config or StrategyConfig()
        self.bus = bus
        self.metrics = metrics
        self.market_streams = market_streams
        self.overrides = dict(overrides or {})
        self.log_dir = log_dir
        self.logger_config = logger_config
        self.tick_interval = tick_interval
        self._loops: Dict[str, LoopHandle] = {}
        self._lock = asyncio.Lock()
        self._notifications: Set[asyncio.Task] = set()
        self._draining: Set[asyncio.Task] = set()
        if bus is not None:
            bus.subscribe(
                EventType.TRADE_UPDATE,
                self._on_trade_update,
                filter_fn=lambda e: e.data.get("status") in _FILL_STATUSES,
                name="registry_fills",
            )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def _resolve(self, instrument_or_symbol: Union[Instrument, str]) -> Instrument:
        if isinstance(instrument_or_symbol, Instrument):
            return instrument_or_symbol
        instrument = await self.gateway.resolve_instrument(instrument_or_symbol)
        if instrument is None:
            log.error(json.dumps({"event": "loop_config_fault", "symbol": instrument_or_symbol, "err": "unknown symbol"}))
            raise LoopConfigError(f"cannot resolve instrument {instrument_or_symbol}")
        return instrument

    def config_for(self, symbol: str) -> StrategyConfig:
        overrides = self.overrides.get(symbol)
        return self.default_config.with_overrides(overrides) if overrides else self.default_config

    async def start(
        self,
        instrument_or_symbol: Union[Instrument, str],
        strategy_config: Optional[StrategyConfig] = None,
    ) -> LoopHandle:
        symbol = str(instrument_or_symbol)
        async with self._lock:
            existing = self._loops.get(symbol)
            if existing is not None and existing.running:
                return existing
            instrument = await self._resolve(instrument_or_symbol)
            cfg = strategy_config or self.config_for(symbol)
            strategy = StrategyFactory.create(cfg)
            scope = CancellationScope()
            stream = build_instrument_logger(cfg.strategy, symbol, self.log_dir)
            loop = StrategyLoop(
                instrument=instrument,
                config=cfg,
                gateway=self.gateway,
                cache=self.cache,
                orders=self.orders,
                strategy=strategy,
                scope=scope,
                market_streams=self.market_streams,
                metrics=self.metrics,
                logger=BotLogger(symbol, stream=stream, config=self.logger_config),
                tick_interval=self.tick_interval,
            )
            task = asyncio.create_task(loop.run(), name=f"loop:{symbol}")
            handle = LoopHandle(loop=loop, scope=scope, task=task)
            self._loops[symbol] = handle
            task.add_done_callback(lambda _t, s=symbol, h=handle: self._on_loop_exit(s, h))

        log.info(json.dumps({"event": "loop_started", "symbol": symbol, "strategy": cfg.strategy, "timeframe": str(cfg.timeframe)}))
        if self.metrics:
            self.metrics.loop_started_total.labels(symbol=symbol).inc()
            self.metrics.loops_active.set(len(self._loops))
        await self._emit(EventType.LOOP_STARTED, symbol=symbol)
        await self._notify()
        return handle

    async def stop(self, instrument: Union[Instrument, str]) -> bool:
        """Signal cancellation and forget the loop. Does not wait for it."""
        symbol = str(instrument)
        async with self._lock:
            handle = self._loops.pop(symbol, None)
        if handle is None:
            return False
        handle.scope.cancel()
        self._track_draining(handle)
        log.info(json.dumps({"event": "loop_stop_requested", "symbol": symbol}))
        if self.metrics:
            self.metrics.loops_active.set(len(self._loops))
        await self._notify()
        return True

    async def flatten(self, instrument: Union[Instrument, str]) -> FlattenResult:
        """Cancel resting orders and close the position. Independent of whether a loop runs."""
        resolved = await self._resolve(instrument)
        result = await self.orders.flatten(resolved)
        state = self.cache.get(resolved)
        if state is not None:
            state.clear_order()
            try:
                state.position = await self.gateway.get_position(resolved)
            except GatewayError as exc:
                log.error(json.dumps({"event": "position_fetch_error", "symbol": resolved.symbol, "err": str(exc)}))
        await self._notify()
        return result

    async def stop_all(self) -> int:
        async with self._lock:
            handles = list(self._loops.values())
            self._loops.clear()
        for handle in handles:
            handle.scope.cancel()
            self._track_draining(handle)
        if self.metrics:
            self.metrics.loops_active.set(0)
        if handles:
            await self._notify()
        return len(handles)

    async def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Wait for every known loop task to finish. False on timeout."""
        tasks = [h.task for h in self._loops.values() if not h.task.done()]
        tasks += [t for t in self._draining if not t.done()]
        if not tasks:
            return True
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        return not pending

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> Set[Instrument]:
        return {h.instrument for h in self._loops.values()}

    def get(self, instrument: Union[Instrument, str]) -> Optional[LoopHandle]:
        return self._loops.get(str(instrument))

    def bot_list(self) -> Dict[Instrument, Optional[Position]]:
        """Tracked instruments with their last known position."""
        result: Dict[Instrument, Optional[Position]] = {}
        for handle in self._loops.values():
            state = self.cache.get(handle.instrument)
            result[handle.instrument] = state.position if state is not None else None
        return result

    def snapshot(self) -> Dict[str, dict]:
        out: Dict[str, dict] = {}
        for symbol, handle in self._loops.items():
            state = self.cache.get(handle.instrument)
            out[symbol] = {
                "state": handle.loop.state.value,
                "ticks": handle.loop.tick_count,
                "started_ms": handle.started_ms,
                **(state.snapshot() if state is not None else {}),
            }
        return out

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _track_draining(self, handle: LoopHandle) -> None:
        if not handle.task.done():
            self._draining.add(handle.task)
            handle.task.add_done_callback(self._draining.discard)

    def _on_loop_exit(self, symbol: str, handle: LoopHandle) -> None:
        if self._loops.get(symbol) is handle:
            del self._loops[symbol]
            if self.metrics:
                self.metrics.loops_active.set(len(self._loops))
        log.info(json.dumps({"event": "loop_exited", "symbol": symbol, "reason": handle.loop.stop_reason}))
        self._schedule(self._after_exit(symbol, handle.loop.stop_reason))

    async def _after_exit(self, symbol: str, reason: Optional[str]) -> None:
        await self._emit(EventType.LOOP_STOPPED, symbol=symbol, reason=reason)
        await self._notify()

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _on_trade_update(self, event: Event) -> None:
        if event.data.get("symbol") in self._loops:
            await self._notify()

    async def _emit(self, event_type: EventType, **data) -> None:
        if self.bus is not None:
            await self.bus.emit(event_type, source="registry", **data)

    async def _notify(self) -> None:
        await self._emit(EventType.BOT_LIST_UPDATED, symbols=sorted(self._loops))
