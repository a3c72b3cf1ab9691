"""
Infrastructure package.

Async venue clients, logging configuration, per-loop event logging and
nonce management.
"""

from botdesk.infra.async_execution import AsyncExchange
from botdesk.infra.async_info import AsyncInfo
from botdesk.infra.bot_logger import BotLogger, BotLoggerConfig
from botdesk.infra.logging_cfg import build_instrument_logger, build_logger
from botdesk.infra.nonce import NonceCoordinator

__all__ = [
    "AsyncExchange",
    "AsyncInfo",
    "BotLogger",
    "BotLoggerConfig",
    "build_instrument_logger",
    "build_logger",
    "NonceCoordinator",
]
