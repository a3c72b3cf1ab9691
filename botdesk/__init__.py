"""
botdesk - per-instrument strategy loop engine for Hyperliquid perps.
"""

__version__ = "0.1.0"
