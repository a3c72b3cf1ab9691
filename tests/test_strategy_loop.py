"""
StrategyLoop lifecycle and tick tests against the in-memory gateway.

Covers:
- Known-flat baseline before the first tick
- Sequential ticks, cancellation at boundaries, in-flight calls completing
- Submit/replace outcomes applied to the instrument state
- Faults and configuration faults stopping only the affected loop
"""

import asyncio

import pytest

from conftest import eventually, make_bars
from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.errors import LoopConfigError
from botdesk.core.models import (
    AssetClass,
    Instrument,
    IntentAction,
    OpenOrder,
    OrderSide,
    OrderStatus,
    Position,
    Trade,
    TradeUpdate,
)
from botdesk.core.timeframe import BarTimeFrame, TimeFrameUnit
from botdesk.execution.order_protocol import OrderProtocol
from botdesk.execution.reconciliation_listener import ReconciliationListener
from botdesk.gateway.streams import MarketStreams
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.orchestrator.cancellation import CancellationScope
from botdesk.orchestrator.strategy_loop import (
    STOP_CANCELLED,
    STOP_CONFIG_FAULT,
    STOP_FAULT,
    LoopState,
    StrategyLoop,
)
from botdesk.state.instrument_state import InstrumentStateCache
from botdesk.strategy.scalper import ScalperStrategy

DIPPED = [100.0] * 19 + [99.0]


class ExplodingStrategy:
    name = "exploding"

    def decide(self, inputs):
        raise ZeroDivisionError("bad arithmetic")


@pytest.fixture
def cache():
    return InstrumentStateCache()


def make_loop(gateway, cache, instrument, config=None, strategy=None, interval=0.01, **kw):
    return StrategyLoop(
        instrument=instrument,
        config=config or StrategyConfig(),
        gateway=gateway,
        cache=cache,
        orders=OrderProtocol(gateway),
        strategy=strategy or ScalperStrategy(),
        tick_interval=interval,
        **kw,
    )


async def run_ticks(loop, ticks: int) -> str:
    task = asyncio.create_task(loop.run())
    await eventually(lambda: loop.tick_count >= ticks or task.done())
    loop.scope.cancel()
    return await asyncio.wait_for(task, 1.0)


def filled_first(gateway, cache, method):
    """Make the venue report the fill before the acknowledgement returns."""
    original = getattr(gateway, method)
    listener = ReconciliationListener(cache, gateway)

    async def acknowledged_after_fill(*args, **kwargs):
        result = await original(*args, **kwargs)
        await listener.handle(TradeUpdate(
            order_id=result.order_id, status=OrderStatus.FILLED, side=OrderSide.BUY, symbol=result.symbol,
            filled_qty=1.0, avg_fill_price=result.limit_price, position_qty=1.0,
        ))
        return result

    setattr(gateway, method, acknowledged_after_fill)


class TestInitialization:
    @pytest.mark.asyncio
    async def test_baseline_runs_before_first_tick(self, gateway, cache, btc):
        gateway.open_orders.append(OpenOrder("1", OrderSide.BUY, 1.0, 90.0, symbol="BTC"))
        gateway.positions["BTC"] = Position(btc, 2.0, 95.0)
        streams = MarketStreams(gateway, cache)
        loop = make_loop(gateway, cache, btc, market_streams=streams)

        await run_ticks(loop, 1)

        names = gateway.call_names()
        assert names[:6] == [
            "resolve_instrument",
            "get_historical_bars",
            "cancel_all_orders",
            "close_position",
            "get_position",
            "subscribe_market_data",
        ]
        assert names.index("close_position") < names.index("get_account")
        assert gateway.open_orders == []
        assert "BTC" not in gateway.positions

    @pytest.mark.asyncio
    async def test_seed_uses_average_bars_window_uses_window_bars(self, gateway, cache, btc):
        gateway.bars = make_bars([float(i) for i in range(1, 31)])
        config = StrategyConfig(average_bars=10, window_bars=4)
        loop = make_loop(gateway, cache, btc, config=config)
        loop.scope.cancel()

        await loop.run()

        assert ("get_historical_bars", "BTC", 10) in gateway.calls

    @pytest.mark.asyncio
    async def test_window_stays_bounded_while_ticking(self, gateway, cache, btc):
        gateway.bars = make_bars([float(i) for i in range(1, 31)])
        config = StrategyConfig(average_bars=10, window_bars=4)
        loop = make_loop(gateway, cache, btc, config=config)
        task = asyncio.create_task(loop.run())

        await eventually(lambda: loop.tick_count >= 2)
        state = cache.get(btc)
        assert len(state.closes) == 4
        assert list(state.closes)[-1] == 30.0

        loop.scope.cancel()
        await task

    @pytest.mark.asyncio
    async def test_cancelled_before_first_tick(self, gateway, cache, btc):
        streams = MarketStreams(gateway, cache)
        loop = make_loop(gateway, cache, btc, market_streams=streams)
        loop.scope.cancel()

        reason = await loop.run()

        assert reason == STOP_CANCELLED
        assert loop.tick_count == 0
        assert "get_account" not in gateway.call_names()
        assert "cancel_all_orders" in gateway.call_names()
        assert "unsubscribe_market_data" in gateway.call_names()
        assert loop.state is LoopState.STOPPED


class TestConfigFaults:
    @pytest.mark.asyncio
    async def test_unknown_symbol(self, gateway, cache):
        loop = make_loop(gateway, cache, Instrument("NOPE", AssetClass.CRYPTO))

        assert await loop.run() == STOP_CONFIG_FAULT
        assert "get_historical_bars" not in gateway.call_names()
        assert loop.tick_count == 0

    @pytest.mark.asyncio
    async def test_not_tradable(self, gateway, cache):
        delisted = gateway.add_instrument("LUNA", tradable=False)

        assert await make_loop(gateway, cache, delisted).run() == STOP_CONFIG_FAULT

    @pytest.mark.asyncio
    async def test_asset_class_not_enabled(self, gateway, cache):
        tsla = gateway.instruments["xyz:TSLA"]
        config = StrategyConfig(asset_classes=frozenset({AssetClass.CRYPTO}))
        loop = make_loop(gateway, cache, tsla, config=config)

        assert await loop.run() == STOP_CONFIG_FAULT
        assert "cancel_all_orders" not in gateway.call_names()
        assert "equity" in str(loop.error)

    @pytest.mark.asyncio
    async def test_unsupported_timeframe(self, gateway, cache, btc):
        config = StrategyConfig(timeframe=BarTimeFrame(7, TimeFrameUnit.MINUTE))
        loop = make_loop(gateway, cache, btc, config=config)

        assert await loop.run() == STOP_CONFIG_FAULT
        assert isinstance(loop.error, LoopConfigError)
        assert "cancel_all_orders" not in gateway.call_names()
        assert loop.tick_count == 0


class TestTick:
    def _ready(self, gateway, cache, btc, closes=DIPPED, **kw):
        loop = make_loop(gateway, cache, btc, **kw)
        state = cache.get_or_create(btc)
        state.seed(closes)
        state.last_bar = make_bars(closes)[-1]
        return loop, state

    @pytest.mark.asyncio
    async def test_buy_records_open_order(self, gateway, cache, btc):
        loop, state = self._ready(gateway, cache, btc)

        intent = await loop.tick()

        assert intent.action is IntentAction.SUBMIT
        assert state.open_order is not None
        assert state.open_order.limit_price == 99.0
        assert state.open_order.side is OrderSide.BUY
        assert list(state.closes)[-1] == 99.0
        assert len(state.closes) == 20

    @pytest.mark.asyncio
    async def test_submit_failure_leaves_state_unchanged(self, gateway, cache, btc):
        gateway.fail_submit = "insufficient margin"
        loop, state = self._ready(gateway, cache, btc)

        intent = await loop.tick()

        assert intent is not None
        assert state.open_order is None
        assert state.position is None
        assert loop.tick_count == 1

    @pytest.mark.asyncio
    async def test_resting_entry_is_chased(self, gateway, cache, btc):
        loop, state = self._ready(gateway, cache, btc)
        await loop.tick()
        first = state.open_order.order_id

        state.last_trade = Trade(price=98.0)
        intent = await loop.tick()

        assert intent.action is IntentAction.REPLACE
        assert gateway.replaced[-1][0] == first
        assert state.open_order.order_id != first
        assert state.open_order.limit_price == 98.0
        assert state.replacing_order_id is None

    @pytest.mark.asyncio
    async def test_replace_failure_keeps_order(self, gateway, cache, btc):
        loop, state = self._ready(gateway, cache, btc)
        await loop.tick()
        first = state.open_order.order_id
        gateway.fail_replace = "order already filled"

        state.last_trade = Trade(price=98.0)
        await loop.tick()

        assert state.open_order.order_id == first
        assert state.replacing_order_id is None

    @pytest.mark.asyncio
    async def test_fill_applied_before_submit_returns(self, gateway, cache, btc):
        loop, state = self._ready(gateway, cache, btc)
        filled_first(gateway, cache, "submit_order")

        await loop.tick()

        assert state.open_order is None
        assert state.position_qty == 1.0
        del gateway.submit_order
        state.last_trade = Trade(price=101.0)
        intent = await loop.tick()

        assert intent.action is IntentAction.SUBMIT
        assert intent.side is OrderSide.SELL
        assert gateway.submitted[-1].side is OrderSide.SELL

    @pytest.mark.asyncio
    async def test_fill_applied_before_replace_returns(self, gateway, cache, btc):
        loop, state = self._ready(gateway, cache, btc)
        await loop.tick()
        filled_first(gateway, cache, "replace_order")

        state.last_trade = Trade(price=98.0)
        intent = await loop.tick()

        assert intent.action is IntentAction.REPLACE
        assert state.open_order is None
        assert state.replacing_order_id is None
        assert state.position_qty == 1.0

    @pytest.mark.asyncio
    async def test_account_failure_means_no_entry(self, gateway, cache, btc):
        gateway.fail_account = True
        loop, state = self._ready(gateway, cache, btc)

        assert await loop.tick() is None
        assert "submit_order" not in gateway.call_names()

    @pytest.mark.asyncio
    async def test_ticks_never_overlap(self, gateway, cache, btc):
        gateway.call_delay = 0.02
        loop, _ = self._ready(gateway, cache, btc)

        results = await asyncio.gather(loop.tick(), loop.tick(), return_exceptions=True)

        assert sum(isinstance(r, RuntimeError) for r in results) == 1
        assert loop.tick_count == 1

    @pytest.mark.asyncio
    async def test_metrics(self, gateway, cache, btc):
        metrics = RichMetrics()
        loop, _ = self._ready(gateway, cache, btc, metrics=metrics)

        await loop.tick()

        reg = metrics.get_registry()
        assert reg.get_sample_value("ticks_total", {"symbol": "BTC"}) == 1
        assert reg.get_sample_value("tick_duration_ms_count", {"symbol": "BTC"}) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_sleep_returns_promptly(self, gateway, cache, btc):
        loop = make_loop(gateway, cache, btc, interval=60.0)
        task = asyncio.create_task(loop.run())
        await eventually(lambda: loop.tick_count == 1)

        loop.scope.cancel()
        reason = await asyncio.wait_for(task, 1.0)

        assert reason == STOP_CANCELLED
        assert loop.tick_count == 1

    @pytest.mark.asyncio
    async def test_in_flight_call_completes(self, gateway, cache, btc):
        gateway.bars = make_bars(DIPPED)
        gateway.call_delay = 0.05
        loop = make_loop(gateway, cache, btc, interval=60.0)
        task = asyncio.create_task(loop.run())
        await eventually(lambda: "get_account" in gateway.call_names())

        loop.scope.cancel()
        assert await asyncio.wait_for(task, 2.0) == STOP_CANCELLED

        # The tick that was running finished, including its order submit.
        assert loop.tick_count == 1
        assert "submit_order" in gateway.call_names()
        assert cache.get(btc).open_order is not None

    @pytest.mark.asyncio
    async def test_task_cancellation_is_propagated(self, gateway, cache, btc):
        loop = make_loop(gateway, cache, btc, interval=60.0)
        task = asyncio.create_task(loop.run())
        await eventually(lambda: loop.tick_count == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert loop.stop_reason == STOP_CANCELLED
        assert loop.state is LoopState.STOPPED

    @pytest.mark.asyncio
    async def test_scope_sleep(self):
        scope = CancellationScope()
        assert await scope.sleep(0.001) is False
        scope.cancel()
        assert await scope.sleep(10) is True
        assert scope.cancelled


class TestFaults:
    @pytest.mark.asyncio
    async def test_fault_stops_only_that_loop(self, gateway, cache, btc):
        eth = gateway.instruments["ETH"]
        bad = make_loop(gateway, cache, btc, strategy=ExplodingStrategy(), scope=CancellationScope())
        good = make_loop(gateway, cache, eth, scope=CancellationScope())
        bad_task = asyncio.create_task(bad.run())
        good_task = asyncio.create_task(good.run())

        assert await asyncio.wait_for(bad_task, 1.0) == STOP_FAULT
        assert isinstance(bad.error, ZeroDivisionError)
        ticks = good.tick_count
        await eventually(lambda: good.tick_count > ticks + 1)
        assert not good_task.done()

        good.scope.cancel()
        assert await good_task == STOP_CANCELLED

    @pytest.mark.asyncio
    async def test_idle_state_released_on_stop(self, gateway, cache, btc):
        gateway.bars = make_bars([100.0] * 20)
        loop = make_loop(gateway, cache, btc)

        await run_ticks(loop, 1)

        assert btc not in cache
