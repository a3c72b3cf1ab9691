"""
Execution package.

Order submit/replace/cancel wrapper and the trade-update reconciliation
listener.
"""

from botdesk.execution.order_protocol import OrderProtocol, describe_order
from botdesk.execution.reconciliation_listener import ReconciliationListener, next_position

__all__ = [
    "OrderProtocol",
    "ReconciliationListener",
    "describe_order",
    "next_position",
]
