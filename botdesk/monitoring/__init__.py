"""
Monitoring and observability package.

Prometheus metrics, the metrics/status/health HTTP server and the status
board.
"""

from botdesk.monitoring.metrics import HealthChecker, HealthStatus, start_metrics_server
from botdesk.monitoring.metrics_rich import RichMetrics
from botdesk.monitoring.status import StatusBoard

__all__ = [
    "HealthChecker",
    "HealthStatus",
    "RichMetrics",
    "StatusBoard",
    "start_metrics_server",
]
