"""
Engine wiring: one shared cache, listener, streams and registry per process.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from botdesk.config.config import Settings
from botdesk.config.per_instrument_config import load_instrument_overrides
from botdesk.core.errors import LoopConfigError
from botdesk.core.event_bus import EventBus
from botdesk.execution.order_protocol import OrderProtocol
from botdesk.execution.reconciliation_listener import ReconciliationListener
from botdesk.gateway.base import Gateway
from botdesk.gateway.streams import MarketStreams, TradeUpdateStream
from botdesk.infra.bot_logger import BotLoggerConfig
from botdesk.monitoring.metrics import HealthChecker
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.monitoring.status import StatusBoard
from botdesk.orchestrator.registry import ActiveLoopRegistry
from botdesk.state.account_views import AccountViews
from botdesk.state.instrument_state import InstrumentStateCache

log = logging.getLogger("botdesk")


@dataclass
class Engine:
    gateway: Gateway
    bus: EventBus
    metrics: RichMetrics
    cache: InstrumentStateCache
    views: AccountViews
    orders: OrderProtocol
    market_streams: MarketStreams
    listener: ReconciliationListener
    trade_updates: TradeUpdateStream
    registry: ActiveLoopRegistry
    status_board: StatusBoard
    health: HealthChecker


def build_engine(
    cfg: Settings,
    gateway: Gateway,
    metrics: Optional[RichMetrics] = None,
    log_dir: Optional[str] = None,
) -> Engine:
    metrics = metrics or RichMetrics()
    bus = EventBus()
    cache = InstrumentStateCache(window_bars=cfg.window_bars)
    views = AccountViews(gateway, bus=bus, closed_orders_limit=cfg.closed_orders_limit)
    orders = OrderProtocol(gateway, metrics=metrics, bus=bus)
    market_streams = MarketStreams(gateway, cache, queue_size=cfg.stream_queue_size, metrics=metrics)
    listener = ReconciliationListener(
        cache, gateway, views=views, bus=bus, metrics=metrics, market_streams=market_streams,
    )
    trade_updates = TradeUpdateStream(gateway, listener, queue_size=cfg.stream_queue_size, metrics=metrics)
    registry = ActiveLoopRegistry(
        gateway,
        cache,
        orders,
        default_config=cfg.strategy_config(),
        bus=bus,
        metrics=metrics,
        market_streams=market_streams,
        overrides=load_instrument_overrides(cfg.instrument_config),
        log_dir=log_dir if log_dir is not None else cfg.log_dir,
        logger_config=BotLoggerConfig(debug_enabled=cfg.log_level == "DEBUG"),
    )
    status_board = StatusBoard()
    status_board.register("loops", registry.snapshot)
    status_board.register("account", views.snapshot)
    status_board.register("event_bus", bus.get_stats)
    return Engine(
        gateway=gateway,
        bus=bus,
        metrics=metrics,
        cache=cache,
        views=views,
        orders=orders,
        market_streams=market_streams,
        listener=listener,
        trade_updates=trade_updates,
        registry=registry,
        status_board=status_board,
        health=HealthChecker(),
    )


async def start_loops(engine: Engine, symbols: Iterable[str]) -> List[str]:
    """Start one loop per symbol; returns the symbols that started."""
    started: List[str] = []
    for symbol in symbols:
        try:
            await engine.registry.start(symbol)
        except LoopConfigError as exc:
            log.error(json.dumps({"event": "loop_config_fault", "symbol": symbol, "err": str(exc)}))
            continue
        started.append(symbol)
    return started


async def run_all(engine: Engine, symbols: Iterable[str], stop: asyncio.Event, drain_timeout: float = 30.0) -> None:
    """Run the engine until ``stop`` is set, then stop every loop and let it drain."""
    bus_task = asyncio.create_task(engine.bus.start(), name="event_bus")
    try:
        await engine.trade_updates.start()
        engine.health.set_component_health("trade_updates", True)
        await engine.views.refresh_all()
        started = await start_loops(engine, symbols)
        engine.health.set_component_health("registry", bool(started), f"{len(started)} loops")
        engine.health.set_ready(bool(started))
        log.info(json.dumps({"event": "startup", "symbols": started}))
        await stop.wait()
    finally:
        engine.health.set_ready(False)
        await engine.registry.stop_all()
        if not await engine.registry.wait_closed(timeout=drain_timeout):
            log.warning(json.dumps({"event": "loops_drain_timeout", "timeout_sec": drain_timeout}))
        await engine.trade_updates.close()
        await engine.market_streams.close()
        await engine.bus.drain()
        engine.bus.stop()
        await asyncio.gather(bus_task, return_exceptions=True)
