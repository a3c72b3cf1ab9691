"""StrategyFactory to create pluggable decision functions by name."""

from __future__ import annotations

from typing import Any

from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.errors import LoopConfigError
from botdesk.strategy.scalper import ScalperStrategy


class StrategyFactory:
    _registry: dict[str, Any] = {
        "scalper": ScalperStrategy,
    }

    @classmethod
    def create(cls, cfg: StrategyConfig, **kwargs):
        ctor = cls._registry.get(cfg.strategy)
        if ctor is None:
            raise LoopConfigError(f"unknown strategy: {cfg.strategy}")
        return ctor(extended_hours=cfg.extended_hours, **kwargs)

    @classmethod
    def names(cls) -> list[str]:
        return sorted(cls._registry)
