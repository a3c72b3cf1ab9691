"""
Event Bus: pub/sub distribution of engine notifications.

Components publish what changed (tracked bot list, account views, order
outcomes) and consumers such as the status board or a UI subscribe without
reaching into the registry or cache.

Handlers may be sync or async. They run in priority order, global
subscribers first, and a failing handler is logged and counted without
affecting the others. A bounded history is kept for inspection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Union

log = logging.getLogger("botdesk")


class EventType(Enum):
    # Presentation
    BOT_LIST_UPDATED = auto()      # tracked instruments or their positions changed

    # Loop lifecycle
    LOOP_STARTED = auto()
    LOOP_STOPPED = auto()

    # Orders
    ORDER_SUBMITTED = auto()
    ORDER_REJECTED = auto()
    ORDER_REPLACED = auto()
    TRADE_UPDATE = auto()          # venue order/trade update applied to the cache

    # Account views
    ACCOUNT_UPDATED = auto()
    POSITIONS_UPDATED = auto()
    OPEN_ORDERS_UPDATED = auto()
    CLOSED_ORDERS_UPDATED = auto()


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, source={self.source}, keys={sorted(self.data)})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # higher runs first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or getattr(self.handler, "__name__", "handler")

    def wants(self, event: Event) -> bool:
        return self.filter_fn is None or self.filter_fn(event)


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.BOT_LIST_UPDATED, refresh_view)
        asyncio.create_task(bus.start())
        await bus.emit(EventType.BOT_LIST_UPDATED, source="registry", symbols=[...])
        bus.stop()

    emit()/publish() only enqueue; dispatch happens in the start() task or in
    drain(), which tests and shutdown paths call to flush the queue inline.
    """

    DEFAULT_HISTORY_SIZE = 500
    DEFAULT_QUEUE_SIZE = 10000

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._typed: Dict[EventType, List[Subscription]] = {}
        self._global: List[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(0, queue_size))
        self._running = False
        self._history: Deque[Event] = deque(maxlen=max(0, history_size))
        self._stats = dict.fromkeys(
            ("events_published", "events_processed", "events_dropped", "handler_errors"), 0
        )

    # -- subscriptions -----------------------------------------------------

    @staticmethod
    def _add(subs: List[Subscription], sub: Subscription) -> Subscription:
        # Stable: equal priorities keep subscription order.
        idx = next((i for i, s in enumerate(subs) if s.priority < sub.priority), len(subs))
        subs.insert(idx, sub)
        return sub

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """
        Register ``handler`` for one event type.

        The returned Subscription is the token for unsubscribe().
        """
        sub = self._add(self._typed.setdefault(event_type, []), Subscription(handler, priority, filter_fn, name))
        log.debug(json.dumps({"event": "event_bus_subscribe", "event_type": event_type.name,
                              "handler": sub.label, "priority": priority}))
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        return self._add(self._global, Subscription(handler, priority, filter_fn, name))

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        subs = self._global if event_type is None else self._typed.get(event_type, [])
        if subscription not in subs:
            return False
        subs.remove(subscription)
        return True

    # -- publishing --------------------------------------------------------

    async def publish(self, event: Event) -> bool:
        """Enqueue ``event``; False when the queue is full and it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            log.warning(json.dumps({"event": "event_bus_queue_full", "event_type": event.type.name}))
            return False
        self._stats["events_published"] += 1
        return True

    async def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return await self.publish(Event(type=event_type, data=data, source=source))

    # -- dispatch ----------------------------------------------------------

    async def start(self) -> None:
        """Dispatch until stop(); run as a background task."""
        self._running = True
        log.debug(json.dumps({"event": "event_bus_started"}))
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            await self._dispatch(event)
        log.debug(json.dumps({"event": "event_bus_stopped"}))

    def stop(self) -> None:
        self._running = False

    async def drain(self) -> int:
        """Dispatch whatever is queued right now and return how many events that was."""
        count = 0
        while not self._queue.empty():
            await self._dispatch(self._queue.get_nowait())
            count += 1
        return count

    async def _dispatch(self, event: Event) -> None:
        self._history.append(event)
        for sub in self._global + self._typed.get(event.type, []):
            if not sub.wants(event):
                continue
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._stats["handler_errors"] += 1
                log.error(json.dumps({
                    "event": "event_bus_handler_error",
                    "event_type": event.type.name,
                    "handler": sub.label,
                    "err": str(exc),
                    "err_type": type(exc).__name__,
                }))
        self._stats["events_processed"] += 1

    # -- queries -----------------------------------------------------------

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = [e for e in self._history if event_type is None or e.type is event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._typed.values()) + len(self._global),
            "running": self._running,
        }
