"""
Bar timeframes: sleep-interval normalization and history lookback windows.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from botdesk.core.errors import LoopConfigError


class TimeFrameUnit(Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @classmethod
    def parse(cls, raw: str) -> "TimeFrameUnit":
        key = raw.strip().lower().rstrip("s")
        for unit in cls:
            if unit.value == key:
                return unit
        raise ValueError(f"unknown bar unit: {raw!r}")


# Minutes per unit; a month is normalized to 30 days for sleeping only.
_UNIT_MINUTES = {
    TimeFrameUnit.MINUTE: 1,
    TimeFrameUnit.HOUR: 60,
    TimeFrameUnit.DAY: 1440,
    TimeFrameUnit.WEEK: 7 * 1440,
    TimeFrameUnit.MONTH: 30 * 1440,
}

_INTERVAL_SUFFIX = {
    TimeFrameUnit.MINUTE: "m",
    TimeFrameUnit.HOUR: "h",
    TimeFrameUnit.DAY: "d",
    TimeFrameUnit.WEEK: "w",
    TimeFrameUnit.MONTH: "M",
}

# Candle intervals the venue serves.
SUPPORTED_INTERVALS = frozenset({
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "8h", "12h",
    "1d", "3d", "1w", "1M",
})


def _subtract_months(ts: datetime, months: int) -> datetime:
    month_index = ts.month - 1 - months
    year = ts.year + month_index // 12
    month = month_index % 12 + 1
    day = min(ts.day, calendar.monthrange(year, month)[1])
    return ts.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class BarTimeFrame:
    count: int = 1
    unit: TimeFrameUnit = TimeFrameUnit.MINUTE

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise ValueError("bar timeframe count must be > 0")

    @property
    def minutes(self) -> int:
        return self.count * _UNIT_MINUTES[self.unit]

    @property
    def seconds(self) -> float:
        return self.minutes * 60.0

    def lookback_start(self, as_of: datetime, bars: int) -> datetime:
        """Start of a request window that covers ``bars`` bars ending at ``as_of``."""
        span = self.count * bars
        if self.unit is TimeFrameUnit.MONTH:
            return _subtract_months(as_of, span)
        return as_of - timedelta(minutes=span * _UNIT_MINUTES[self.unit])

    @property
    def venue_interval(self) -> str:
        interval = f"{self.count}{_INTERVAL_SUFFIX[self.unit]}"
        if interval not in SUPPORTED_INTERVALS:
            raise LoopConfigError(f"unsupported bar timeframe {interval}")
        return interval

    def __str__(self) -> str:
        return f"{self.count}{self.unit.value}"
