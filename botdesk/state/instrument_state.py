"""
InstrumentState: the per-instrument view read by strategy loops.

Merges what the market streams, the loop's own polling and the
reconciliation listener observe:
- latest trade, quote and bar (stream writes)
- bounded close window for the rolling average (loop writes)
- position, open entry order, latest trade update (listener and loop writes)

Writers are all on the event loop; fields are last-writer-wins and are not
locked. At most one open order is tracked per instrument.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional

from botdesk.core.models import Bar, Instrument, OpenOrder, Position, Quote, Trade, TradeUpdate
from botdesk.core.utils import BoundedSet

CLOSED_IDS_KEPT = 256


@dataclass
class InstrumentState:
    instrument: Instrument
    window_bars: int = 20
    last_trade: Optional[Trade] = None
    last_quote: Optional[Quote] = None
    last_bar: Optional[Bar] = None
    position: Optional[Position] = None
    last_update: Optional[TradeUpdate] = None
    open_order: Optional[OpenOrder] = None
    replacing_order_id: Optional[str] = None
    owner: Optional[object] = field(default=None, repr=False, compare=False)
    closes: Deque[float] = field(init=False)
    closed_order_ids: BoundedSet = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.closes = deque(maxlen=self.window_bars)
        self.closed_order_ids = BoundedSet(maxlen=CLOSED_IDS_KEPT)

    def seed(self, closes: Iterable[float]) -> None:
        """Replace the window with historical closes, oldest first."""
        self.closes.clear()
        self.closes.extend(closes)

    def append_close(self, price: float) -> None:
        """FIFO append; the oldest close falls out once the window is full."""
        self.closes.append(price)

    @property
    def rolling_average(self) -> Optional[float]:
        if not self.closes:
            return None
        return sum(self.closes) / len(self.closes)

    @property
    def last_price(self) -> Optional[float]:
        if self.last_trade is not None and self.last_trade.price > 0:
            return self.last_trade.price
        if self.last_bar is not None and self.last_bar.close > 0:
            return self.last_bar.close
        return None

    @property
    def observed_close(self) -> Optional[float]:
        """Close appended to the window at the end of a tick: bar close, else last trade."""
        if self.last_bar is not None and self.last_bar.close > 0:
            return self.last_bar.close
        if self.last_trade is not None and self.last_trade.price > 0:
            return self.last_trade.price
        return None

    @property
    def has_open_order(self) -> bool:
        return self.open_order is not None

    @property
    def position_qty(self) -> float:
        return self.position.quantity if self.position is not None else 0.0

    @property
    def is_idle(self) -> bool:
        return (self.position is None or self.position.is_flat) and self.open_order is None

    def record_order(self, order: OpenOrder) -> None:
        self.open_order = order
        self.replacing_order_id = None

    def clear_order(self) -> None:
        self.open_order = None
        self.replacing_order_id = None

    def mark_closed(self, order_id: str) -> None:
        """Remember that the venue reported a terminal status for order_id."""
        self.closed_order_ids.add(order_id)

    def is_closed(self, order_id: str) -> bool:
        return order_id in self.closed_order_ids

    def snapshot(self) -> Dict[str, object]:
        return {
            "symbol": self.instrument.symbol,
            "last_price": self.last_price,
            "rolling_average": self.rolling_average,
            "window": len(self.closes),
            "position": self.position_qty,
            "avg_entry_price": self.position.avg_entry_price if self.position else None,
            "open_order": self.open_order.order_id if self.open_order else None,
            "last_status": self.last_update.status.value if self.last_update else None,
        }


class InstrumentStateCache:
    """Instrument -> InstrumentState. Single source of truth read by the loops."""

    def __init__(self, window_bars: int = 20) -> None:
        self.window_bars = window_bars
        self._states: Dict[Instrument, InstrumentState] = {}

    def get_or_create(self, instrument: Instrument, window_bars: Optional[int] = None) -> InstrumentState:
        state = self._states.get(instrument)
        if state is None:
            state = InstrumentState(instrument=instrument, window_bars=window_bars or self.window_bars)
            self._states[instrument] = state
        elif window_bars is not None and state.closes.maxlen != window_bars:
            state.closes = deque(state.closes, maxlen=window_bars)
            state.window_bars = window_bars
        return state

    def get(self, instrument: Instrument) -> Optional[InstrumentState]:
        return self._states.get(instrument)

    def find(self, symbol: str) -> Optional[InstrumentState]:
        for instrument, state in self._states.items():
            if instrument.symbol == symbol:
                return state
        return None

    def discard_if_idle(self, instrument: Instrument, owner: Optional[object] = None) -> bool:
        """Drop an idle state. With an owner, only when that owner still holds it."""
        state = self._states.get(instrument)
        if state is None or (owner is not None and state.owner is not owner):
            return False
        if state.is_idle:
            del self._states[instrument]
            return True
        return False

    def instruments(self) -> List[Instrument]:
        return list(self._states)

    def apply_trade(self, instrument: Instrument, trade: Trade) -> None:
        self.get_or_create(instrument).last_trade = trade

    def apply_quote(self, instrument: Instrument, quote: Quote) -> None:
        self.get_or_create(instrument).last_quote = quote

    def apply_bar(self, instrument: Instrument, bar: Bar) -> None:
        self.get_or_create(instrument).last_bar = bar

    def __contains__(self, instrument: Instrument) -> bool:
        return instrument in self._states

    def __len__(self) -> int:
        return len(self._states)
