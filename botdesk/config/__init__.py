"""
Configuration package.

This package contains environment settings, the per-loop strategy config
and per-instrument YAML overrides.
"""

from botdesk.config.config import ConnectionContext, Settings
from botdesk.config.per_instrument_config import load_instrument_overrides
from botdesk.config.strategy_config import StrategyConfig

__all__ = [
    "ConnectionContext",
    "Settings",
    "StrategyConfig",
    "load_instrument_overrides",
]
