"""
State package.

The per-instrument state cache read by strategy loops and the account views
refreshed after reconciliation.
"""

from botdesk.state.instrument_state import InstrumentState, InstrumentStateCache


def __getattr__(name: str):
    """Lazy import: account views depend on the gateway package, which imports this one."""
    if name == "AccountViews":
        from botdesk.state.account_views import AccountViews
        return AccountViews
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AccountViews",
    "InstrumentState",
    "InstrumentStateCache",
]
