"""
Strategy package - decision functions.

A decision function maps one tick's DecisionInputs to at most one
OrderIntent. The mean-reversion scalper is the shipped implementation.
"""

from botdesk.strategy.base import DecisionInputs, Strategy
from botdesk.strategy.scalper import ScalperStrategy
from botdesk.strategy.strategy_factory import StrategyFactory

__all__ = [
    "DecisionInputs",
    "ScalperStrategy",
    "Strategy",
    "StrategyFactory",
]
