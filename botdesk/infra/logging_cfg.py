"""
Structured logging setup.

- Rich console handler for the process log
- JSON lines on disk, written by a background thread so the event loop never blocks on I/O
- Throttling for repetitive venue warnings
- One daily-rotated stream per (strategy, instrument) pair
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Set

from rich.logging import RichHandler

DEFAULT_THROTTLED_EVENTS = frozenset({
    "stream_queue_full",
    "http_retry",
    "account_fetch_error",
    "position_fetch_error",
    "order_update_parse_error",
    "fill_parse_error",
})


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    Messages that are themselves JSON event objects are merged into the
    line instead of being nested as an escaped string.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        message = record.getMessage()
        try:
            parsed = json.loads(message)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            payload.update(parsed)
        else:
            payload["msg"] = message
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """Hands records to a writer thread; drops (and counts) them when the queue is full."""

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._records: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._closing = threading.Event()
        self.dropped = 0
        self._writer = threading.Thread(target=self._drain, daemon=True, name="log-writer")
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._closing.is_set():
            return
        try:
            self._records.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def _drain(self) -> None:
        while not (self._closing.is_set() and self._records.empty()):
            try:
                record = self._records.get(timeout=0.1)
            except queue.Empty:
                continue
            self._target.handle(record)

    def close(self) -> None:
        if self._closing.is_set():
            return
        self._closing.set()
        self._writer.join(timeout=2.0)
        if self.dropped:
            sys.stderr.write(f"[logging] dropped {self.dropped} records for {self._target}\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """Pass the first (event, symbol) occurrence, then mute repeats for cooldown_sec."""

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)
        self._last_seen: Dict[tuple, float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = json.loads(record.getMessage())
        except (ValueError, TypeError):
            return True
        if not isinstance(data, dict) or data.get("event") not in self.throttled_events:
            return True
        key = (data["event"], data.get("symbol", ""))
        now = time.monotonic()
        if key in self._last_seen and now - self._last_seen[key] < self.cooldown_sec:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "botdesk",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "logs/botdesk.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the process logger once; later calls only adjust the level.

    Args:
        name: logger name
        level: minimum level for the logger and all its handlers
        file_path: JSON log file, or None for console only
        async_file: write the file from a background thread
        throttle_warnings: mute repeats of noisy venue warnings on the console
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_time=True, show_level=True, show_path=False, markup=False, rich_tracebacks=False)
    console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(level)
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        file_handler: logging.Handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setFormatter(JsonFormatter())
        if async_file:
            file_handler = AsyncQueueHandler(file_handler)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def build_instrument_logger(
    strategy: str,
    symbol: str,
    log_dir: Optional[str] = "logs",
    level: int | str = logging.INFO,
) -> logging.Logger:
    """
    Per-instrument log stream: ``<log_dir>/<Strategy>_<symbol>.log`` rotated daily.

    The logger is a child of "botdesk.bots" and does not propagate, so its
    records stay out of the process log. Pass log_dir=None for a logger
    without handlers (tests).
    """
    stem = f"{strategy.capitalize()}_{symbol.replace(':', '_').replace('/', '_')}"
    logger = logging.getLogger(f"botdesk.bots.{stem}")
    logger.setLevel(level)
    logger.propagate = False
    if log_dir is None or logger.handlers:
        return logger

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    rotating = logging.handlers.TimedRotatingFileHandler(
        Path(log_dir) / f"{stem}.log", when="midnight", backupCount=14, encoding="utf-8",
    )
    rotating.setFormatter(JsonFormatter())
    handler = AsyncQueueHandler(rotating, max_queue_size=5000)
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger
