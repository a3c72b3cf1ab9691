"""
Gateway package.

The Gateway protocol consumed by the engine, the Hyperliquid implementation,
response parsing and the stream bridges onto the event loop.
"""

from botdesk.gateway.base import Gateway, MarketEvent, MarketSink, TradeUpdateSink
from botdesk.gateway.hyperliquid import HyperliquidGateway
from botdesk.gateway.streams import BoundedChannel, MarketStreams, TradeUpdateStream

__all__ = [
    "BoundedChannel",
    "Gateway",
    "HyperliquidGateway",
    "MarketEvent",
    "MarketSink",
    "MarketStreams",
    "TradeUpdateSink",
    "TradeUpdateStream",
]
