"""
Venue rounding helpers for order prices and sizes.
"""

from __future__ import annotations

import math


def round_price(px: float, sz_decimals: int, is_perp: bool = True) -> float:
    """
    Prices can have up to 5 significant figures, and at most
    (6 - szDecimals) decimals for perps, (8 - szDecimals) for spot.
    If px > 100_000, round to int.
    """
    if px > 100_000:
        return round(px)
    max_decimals = (6 - sz_decimals) if is_perp else (8 - sz_decimals)
    max_decimals = max(0, max_decimals)
    sig5 = float(f"{px:.5g}")
    return round(sig5, max_decimals)


def round_size(sz: float, sz_decimals: int) -> float:
    """Truncate toward zero so a rounded size never exceeds the requested one."""
    factor = 10 ** max(0, sz_decimals)
    return math.floor(abs(sz) * factor) / factor * (1 if sz >= 0 else -1)
