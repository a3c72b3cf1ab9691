"""
Bridges gateway stream callbacks onto the event loop.

Gateway sinks may fire on the SDK websocket thread. Each event is handed to
the loop with call_soon_threadsafe and queued per instrument in a bounded
asyncio.Queue; when a queue is full the oldest event is dropped and counted.
One consumer task per instrument drains its queue, so a slow instrument never
stalls another.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from botdesk.core.models import Bar, Instrument, Quote, Trade, TradeUpdate
from botdesk.gateway.base import Gateway, MarketEvent
from botdesk.state.instrument_state import InstrumentStateCache

log = logging.getLogger("botdesk")


class BoundedChannel:
    """asyncio.Queue wrapper that drops the oldest item when full."""

    def __init__(self, maxsize: int) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put_nowait(self, item: Any) -> bool:
        """Returns False when an older item had to be dropped."""
        dropped = False
        while True:
            try:
                self.queue.put_nowait(item)
                return not dropped
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.queue.task_done()
                except asyncio.QueueEmpty:
                    pass
                self.dropped += 1
                dropped = True

    async def get(self) -> Any:
        return await self.queue.get()

    def task_done(self) -> None:
        self.queue.task_done()

    async def join(self) -> None:
        await self.queue.join()


class _KeyedConsumers:
    """One channel and one consumer task per key."""

    def __init__(self, queue_size: int, handler: Callable[[Any, Any], Awaitable[None]],
                 name: str, metrics: Any = None) -> None:
        self.queue_size = queue_size
        self.handler = handler
        self.name = name
        self.metrics = metrics
        self.channels: Dict[Any, BoundedChannel] = {}
        self.tasks: Dict[Any, asyncio.Task] = {}

    def put(self, key: Any, item: Any) -> None:
        channel = self.channels.get(key)
        if channel is None:
            channel = BoundedChannel(self.queue_size)
            self.channels[key] = channel
            self.tasks[key] = asyncio.create_task(self._consume(key, channel), name=f"{self.name}:{key}")
        if not channel.put_nowait(item):
            log.warning(json.dumps({"event": "stream_queue_full", "stream": self.name, "symbol": str(key)}))
            if self.metrics is not None:
                self.metrics.stream_dropped_total.labels(stream=self.name).inc()

    async def _consume(self, key: Any, channel: BoundedChannel) -> None:
        while True:
            item = await channel.get()
            try:
                await self.handler(key, item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error(json.dumps({"event": "stream_handler_error", "stream": self.name, "symbol": str(key), "err": str(exc)}))
            finally:
                channel.task_done()

    async def drain(self) -> None:
        for channel in list(self.channels.values()):
            await channel.join()

    async def stop(self, key: Any) -> None:
        self.channels.pop(key, None)
        task = self.tasks.pop(key, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        for key in list(self.tasks):
            await self.stop(key)


class MarketStreams:
    """Market-data subscriptions keyed by instrument, written into the state cache."""

    def __init__(self, gateway: Gateway, cache: InstrumentStateCache, queue_size: int = 1000,
                 metrics: Any = None, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.gateway = gateway
        self.cache = cache
        self.loop = loop
        self._subscribed: set[Instrument] = set()
        self._owners: Dict[Instrument, object] = {}
        self._consumers = _KeyedConsumers(queue_size, self._apply, "market", metrics)

    def _sink_for(self, instrument: Instrument) -> Callable[[MarketEvent], None]:
        loop = self.loop or asyncio.get_running_loop()

        def _sink(event: MarketEvent) -> None:
            loop.call_soon_threadsafe(self._consumers.put, instrument, event)

        return _sink

    async def _apply(self, instrument: Instrument, event: MarketEvent) -> None:
        if isinstance(event, Trade):
            self.cache.apply_trade(instrument, event)
        elif isinstance(event, Quote):
            self.cache.apply_quote(instrument, event)
        elif isinstance(event, Bar):
            self.cache.apply_bar(instrument, event)

    def subscribed(self, instrument: Instrument) -> bool:
        return instrument in self._subscribed

    async def subscribe(self, instrument: Instrument, owner: Optional[object] = None) -> None:
        """Idempotent. A subscribing owner takes over the instrument from any earlier one."""
        if owner is not None:
            self._owners[instrument] = owner
        if instrument in self._subscribed:
            return
        await self.gateway.subscribe_market_data(instrument, self._sink_for(instrument))
        self._subscribed.add(instrument)

    async def unsubscribe(self, instrument: Instrument, owner: Optional[object] = None) -> None:
        if instrument not in self._subscribed:
            return
        if owner is not None and self._owners.get(instrument, owner) is not owner:
            return
        self._subscribed.discard(instrument)
        self._owners.pop(instrument, None)
        await self.gateway.unsubscribe_market_data(instrument)
        await self._consumers.stop(instrument)

    async def drain(self) -> None:
        await self._consumers.drain()

    async def close(self) -> None:
        for instrument in list(self._subscribed):
            await self.unsubscribe(instrument)
        await self._consumers.close()


class TradeUpdateStream:
    """Account-wide trade updates, fanned out to per-symbol queues and the listener."""

    def __init__(self, gateway: Gateway, listener: Any, queue_size: int = 1000,
                 metrics: Any = None, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.gateway = gateway
        self.listener = listener
        self.loop = loop
        self.started = False
        self._consumers = _KeyedConsumers(queue_size, self._deliver, "trade_updates", metrics)

    async def _deliver(self, symbol: str, update: TradeUpdate) -> None:
        await self.listener.handle(update)

    def _sink(self, update: TradeUpdate) -> None:
        self.loop.call_soon_threadsafe(self._consumers.put, update.symbol, update)

    async def start(self) -> None:
        if self.started:
            return
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        await self.gateway.subscribe_trade_updates(self._sink)
        self.started = True

    async def drain(self) -> None:
        await self._consumers.drain()

    async def close(self) -> None:
        await self._consumers.close()
        self.started = False
