"""
Per-loop strategy configuration.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping

from botdesk.core.models import AssetClass
from botdesk.core.timeframe import BarTimeFrame, TimeFrameUnit

log = logging.getLogger("botdesk")


@dataclass(frozen=True)
class StrategyConfig:
    strategy: str = "scalper"
    timeframe: BarTimeFrame = field(default_factory=BarTimeFrame)
    # Bars fetched to seed the close window at startup.
    average_bars: int = 20
    # Bound of the rolling close window while ticking; independent of average_bars.
    window_bars: int = 20
    quantity_scale: float = 1.0
    profit_pct: float = 0.5
    extended_hours: bool = False
    asset_classes: FrozenSet[AssetClass] = frozenset({AssetClass.EQUITY, AssetClass.CRYPTO})

    def __post_init__(self) -> None:
        if self.average_bars <= 0:
            raise ValueError("average_bars must be > 0")
        if self.window_bars <= 0:
            raise ValueError("window_bars must be > 0")
        if self.quantity_scale <= 0:
            raise ValueError("quantity_scale must be > 0")
        if self.profit_pct < 0:
            raise ValueError("profit_pct must be >= 0")

    def with_overrides(self, overrides: Mapping[str, Any]) -> "StrategyConfig":
        """
        Return a copy with per-instrument overrides applied.

        Accepts the plain YAML keys (``bar_unit``/``bar_count`` for the
        timeframe, a list of names for ``asset_classes``); unknown keys are
        logged and ignored.
        """
        changes: Dict[str, Any] = {}
        unit = overrides.get("bar_unit")
        count = overrides.get("bar_count")
        if unit is not None or count is not None:
            changes["timeframe"] = BarTimeFrame(
                count=int(count) if count is not None else self.timeframe.count,
                unit=TimeFrameUnit.parse(unit) if unit is not None else self.timeframe.unit,
            )
        known = {f.name for f in dataclasses.fields(self)}
        for key, value in overrides.items():
            if key in ("bar_unit", "bar_count"):
                continue
            if key not in known or key == "timeframe":
                log.warning(json.dumps({"event": "strategy_override_ignored", "key": key}))
                continue
            if key == "asset_classes":
                value = frozenset(AssetClass(v) for v in value)
            elif key in ("average_bars", "window_bars"):
                value = int(value)
            elif key in ("quantity_scale", "profit_pct"):
                value = float(value)
            elif key == "extended_hours":
                value = bool(value)
            changes[key] = value
        return dataclasses.replace(self, **changes) if changes else self
