"""
Exception taxonomy for the engine.

- GatewayError: any venue/transport failure (network, rejection, auth).
  Caught at the call site and turned into a result; never fatal to a loop.
- LoopConfigError: configuration faults found while a loop initializes
  (unknown symbol, asset class not allowed, unsupported timeframe).
  Prevents the loop from ever ticking.

Anything else raised inside a tick is a strategy fault and stops that
instrument's loop only.
"""

from __future__ import annotations

from typing import Any, Optional


class BotdeskError(Exception):
    """Base class for engine errors."""


class GatewayError(BotdeskError):
    """Venue or transport failure."""

    def __init__(self, message: str, response: Optional[Any] = None) -> None:
        super().__init__(message)
        self.response = response


class OrderRejectedError(GatewayError):
    """Venue accepted the request but rejected the order."""


class LoopConfigError(BotdeskError):
    """Instrument or strategy configuration cannot be used."""
