"""
BotLogger: event logging for one strategy loop.

Every event is written as a JSON line to the process logger ("botdesk")
and to the loop's own instrument stream, which is what an operator or a
presentation layer reads to see why a particular bot did what it did.

Usage:
    logger = BotLogger(symbol="BTC", stream=build_instrument_logger("scalper", "BTC"))
    logger.log("order_submitted", side="buy", px=99.0, qty=1)
    logger.log("order_submit_error", message="Limit buy of 1 @ 99.0 ...: rejected")
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

log = logging.getLogger("botdesk")


@dataclass
class BotLoggerConfig:
    throttle_window_sec: float = 60.0
    debug_enabled: bool = False


class BotLogger:
    """
    Event -> level categorization:
    - CRITICAL: loop faults
    - ERROR: venue failures
    - WARNING: recoverable oddities
    - INFO: lifecycle and order outcomes
    - DEBUG: per-tick detail
    """

    CRITICAL_EVENTS: Set[str] = {
        "loop_fault",
    }

    ERROR_EVENTS: Set[str] = {
        "order_submit_error", "order_replace_error", "cancel_error",
        "liquidate_error", "account_fetch_error", "position_fetch_error",
        "loop_config_fault", "unsubscribe_error",
    }

    WARNING_EVENTS: Set[str] = {
        "trade_update_unknown_instrument", "replace_target_missing",
        "stream_queue_full", "no_close_observed",
    }

    DEBUG_EVENTS: Set[str] = {
        "tick_start", "tick_end", "decision_none", "window_update",
        "market_trade", "market_quote",
    }

    THROTTLE_EVENTS: Set[str] = {
        "stream_queue_full", "no_close_observed",
    }

    def __init__(
        self,
        symbol: str,
        stream: Optional[logging.Logger] = None,
        config: Optional[BotLoggerConfig] = None,
    ) -> None:
        self.symbol = symbol
        self.stream = stream
        self.config = config or BotLoggerConfig()
        self._throttle_times: Dict[str, float] = {}

    def level_for(self, event: str) -> int:
        if event in self.CRITICAL_EVENTS:
            return logging.CRITICAL
        if event in self.ERROR_EVENTS:
            return logging.ERROR
        if event in self.WARNING_EVENTS:
            return logging.WARNING
        if event in self.DEBUG_EVENTS:
            return logging.DEBUG
        return logging.INFO

    def log(self, event: str, **data: Any) -> None:
        level = self.level_for(event)

        if event in self.THROTTLE_EVENTS:
            now = time.time()
            if now - self._throttle_times.get(event, 0.0) < self.config.throttle_window_sec:
                return
            self._throttle_times[event] = now

        if level == logging.DEBUG and not self.config.debug_enabled:
            return

        line = json.dumps({"event": event, "symbol": self.symbol, **data}, default=str)
        log.log(level, line)
        if self.stream is not None:
            self.stream.log(level, line)

    def get_callback(self) -> Callable[..., None]:
        return self.log
