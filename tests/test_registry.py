"""ActiveLoopRegistry: at-most-one loop per instrument, stop without flatten."""

import asyncio

import pytest

from conftest import eventually
from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.errors import LoopConfigError
from botdesk.core.event_bus import EventBus, EventType
from botdesk.core.models import OpenOrder, OrderSide, Position
from botdesk.execution.order_protocol import OrderProtocol
from botdesk.gateway.streams import MarketStreams
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.orchestrator.registry import ActiveLoopRegistry
from botdesk.orchestrator.strategy_loop import STOP_CONFIG_FAULT, STOP_FAULT, LoopState
from botdesk.state.instrument_state import InstrumentStateCache


@pytest.fixture
def registry(gateway):
    return ActiveLoopRegistry(
        gateway,
        InstrumentStateCache(),
        OrderProtocol(gateway),
        bus=EventBus(),
        metrics=RichMetrics(),
        log_dir=None,
        tick_interval=0.01,
    )


async def stop_everything(registry):
    await registry.stop_all()
    assert await registry.wait_closed(timeout=2.0)


class TestStart:
    @pytest.mark.asyncio
    async def test_second_start_returns_existing_handle(self, registry, btc):
        first = await registry.start("BTC")
        second = await registry.start(btc)

        assert first is second
        assert registry.list() == {btc}
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_one_loop(self, registry, gateway):
        handles = await asyncio.gather(*(registry.start("BTC") for _ in range(5)))

        assert len({id(h) for h in handles}) == 1
        await eventually(lambda: handles[0].loop.tick_count >= 1)
        assert gateway.call_names().count("get_historical_bars") == 1
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_unknown_symbol_raises(self, registry):
        with pytest.raises(LoopConfigError):
            await registry.start("NOPE")
        assert registry.list() == set()

    @pytest.mark.asyncio
    async def test_unknown_strategy_raises(self, registry):
        with pytest.raises(LoopConfigError):
            await registry.start("BTC", StrategyConfig(strategy="martingale"))
        assert registry.list() == set()

    @pytest.mark.asyncio
    async def test_per_instrument_overrides(self, gateway):
        registry = ActiveLoopRegistry(
            gateway, InstrumentStateCache(), OrderProtocol(gateway),
            overrides={"ETH": {"quantity_scale": 0.5, "window_bars": 5}},
            log_dir=None, tick_interval=0.01,
        )

        assert registry.config_for("ETH").quantity_scale == 0.5
        assert registry.config_for("ETH").window_bars == 5
        assert registry.config_for("BTC") is registry.default_config

        handle = await registry.start("ETH")
        assert handle.loop.config.window_bars == 5
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_independent_instruments(self, registry, btc):
        await registry.start("BTC")
        await registry.start("ETH")

        assert {i.symbol for i in registry.list()} == {"BTC", "ETH"}
        await eventually(lambda: all(h.loop.tick_count >= 2 for h in registry._loops.values()))
        await stop_everything(registry)


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_does_not_wait_or_flatten(self, registry, gateway, btc):
        handle = await registry.start("BTC")
        await eventually(lambda: handle.loop.tick_count >= 1)
        gateway.open_orders.append(OpenOrder("9", OrderSide.BUY, 1.0, 50.0, symbol="BTC"))
        gateway.positions["BTC"] = Position(btc, 1.0, 100.0)
        calls_before = gateway.call_names().count("cancel_all_orders")

        assert await registry.stop("BTC") is True

        assert registry.list() == set()
        assert handle.scope.cancelled
        await asyncio.wait_for(handle.task, 1.0)
        assert gateway.call_names().count("cancel_all_orders") == calls_before
        assert "BTC" in gateway.positions
        assert len(gateway.open_orders) == 1

    @pytest.mark.asyncio
    async def test_stop_unknown_is_false(self, registry):
        assert await registry.stop("ETH") is False

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, registry):
        first = await registry.start("BTC")
        await registry.stop("BTC")

        second = await registry.start("BTC")

        assert second is not first
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_restart_during_in_flight_tick_keeps_subscription(self, gateway, btc):
        cache = InstrumentStateCache()
        streams = MarketStreams(gateway, cache)
        registry = ActiveLoopRegistry(
            gateway, cache, OrderProtocol(gateway), market_streams=streams, log_dir=None, tick_interval=0.01,
        )
        first = await registry.start("BTC")
        await eventually(lambda: first.loop.tick_count >= 1)
        gateway.call_delay = 0.3
        await eventually(lambda: first.loop._in_tick)

        await registry.stop("BTC")
        second = await registry.start("BTC")
        await eventually(lambda: second.loop.state is LoopState.TICKING)
        await asyncio.wait_for(first.task, 2.0)

        assert streams.subscribed(btc)
        assert btc in gateway.market_sinks
        assert cache.get(btc) is not None
        assert cache.get(btc).owner is second.loop
        gateway.call_delay = 0.0
        await stop_everything(registry)
        assert not streams.subscribed(btc)
        await streams.close()

    @pytest.mark.asyncio
    async def test_explicit_flatten(self, registry, gateway, btc):
        gateway.open_orders.append(OpenOrder("9", OrderSide.BUY, 1.0, 50.0, symbol="BTC"))
        gateway.positions["BTC"] = Position(btc, 1.0, 100.0)

        result = await registry.flatten("BTC")

        assert result.cancelled == 1
        assert result.closed is not None
        assert result.ok
        assert gateway.open_orders == []
        assert "BTC" not in gateway.positions


class TestLoopExit:
    @pytest.mark.asyncio
    async def test_faulted_loop_is_removed(self, registry, gateway, monkeypatch):
        handle = await registry.start("BTC")

        def explode(inputs):
            raise ValueError("boom")

        monkeypatch.setattr(handle.loop.strategy, "decide", explode)
        await asyncio.wait_for(handle.task, 1.0)
        await eventually(lambda: registry.get("BTC") is None)

        assert handle.loop.stop_reason == STOP_FAULT
        assert registry.list() == set()

    @pytest.mark.asyncio
    async def test_config_fault_is_removed(self, registry, gateway):
        gateway.add_instrument("LUNA", tradable=False)

        handle = await registry.start("LUNA")
        await asyncio.wait_for(handle.task, 1.0)
        await eventually(lambda: registry.get("LUNA") is None)

        assert handle.loop.stop_reason == STOP_CONFIG_FAULT

    @pytest.mark.asyncio
    async def test_old_handle_exit_does_not_remove_new_loop(self, registry):
        first = await registry.start("BTC")
        await registry.stop("BTC")
        second = await registry.start("BTC")

        await asyncio.wait_for(first.task, 1.0)

        assert registry.get("BTC") is second
        await stop_everything(registry)


class TestQueries:
    @pytest.mark.asyncio
    async def test_bot_list_reports_positions(self, registry, gateway, btc):
        handle = await registry.start("BTC")
        await eventually(lambda: handle.loop.tick_count >= 1)
        registry.cache.get(btc).position = Position(btc, 3.0, 100.0)

        bots = registry.bot_list()

        assert bots[btc].quantity == 3.0
        snap = registry.snapshot()
        assert snap["BTC"]["state"] == "ticking"
        assert snap["BTC"]["position"] == 3.0
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_metrics_track_active_loops(self, registry):
        await registry.start("BTC")
        await registry.start("ETH")
        reg = registry.metrics.get_registry()
        assert reg.get_sample_value("loops_active", {}) == 2

        await registry.stop("ETH")
        assert reg.get_sample_value("loops_active", {}) == 1
        await stop_everything(registry)
        assert reg.get_sample_value("loops_active", {}) == 0


class TestNotifications:
    @pytest.mark.asyncio
    async def test_bot_list_updated_on_start_and_stop(self, registry):
        seen = []
        registry.bus.subscribe(EventType.BOT_LIST_UPDATED, lambda e: seen.append(e.data["symbols"]))

        await registry.start("BTC")
        await registry.stop("BTC")
        await registry.bus.drain()

        assert seen[0] == ["BTC"]
        assert seen[1] == []
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_fill_on_tracked_instrument_notifies(self, registry):
        await registry.start("BTC")
        await registry.bus.drain()
        seen = []
        registry.bus.subscribe(EventType.BOT_LIST_UPDATED, lambda e: seen.append(e.data["symbols"]))

        await registry.bus.emit(EventType.TRADE_UPDATE, symbol="BTC", status="filled")
        await registry.bus.emit(EventType.TRADE_UPDATE, symbol="BTC", status="new")
        await registry.bus.emit(EventType.TRADE_UPDATE, symbol="SOL", status="filled")
        await registry.bus.drain()
        await registry.bus.drain()

        assert seen == [["BTC"]]
        await stop_everything(registry)

    @pytest.mark.asyncio
    async def test_loop_stopped_event(self, registry, gateway):
        gateway.add_instrument("LUNA", tradable=False)
        handle = await registry.start("LUNA")
        await asyncio.wait_for(handle.task, 1.0)
        await eventually(lambda: registry.get("LUNA") is None)
        await eventually(lambda: not registry._notifications)
        await registry.bus.drain()

        stopped = registry.bus.get_history(EventType.LOOP_STOPPED)
        assert stopped[-1].data == {"symbol": "LUNA", "reason": STOP_CONFIG_FAULT}
