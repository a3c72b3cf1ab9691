"""
Orchestrator package.

Per-instrument strategy loops, their cancellation scopes and the registry
that starts, stops and lists them.
"""

from botdesk.orchestrator.cancellation import CancellationScope
from botdesk.orchestrator.registry import ActiveLoopRegistry, LoopHandle
from botdesk.orchestrator.strategy_loop import (
    STOP_CANCELLED,
    STOP_CONFIG_FAULT,
    STOP_FAULT,
    LoopState,
    StrategyLoop,
)

__all__ = [
    "ActiveLoopRegistry",
    "CancellationScope",
    "LoopHandle",
    "LoopState",
    "STOP_CANCELLED",
    "STOP_CONFIG_FAULT",
    "STOP_FAULT",
    "StrategyLoop",
]
