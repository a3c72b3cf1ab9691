"""
Prometheus metrics for the strategy loop engine.

Organized into: loops, orders, reconciliation, streams.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class RichMetrics:
    """Engine metrics on a dedicated registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Loop Metrics ===
        self.loops_active = Gauge(
            'loops_active',
            'Strategy loops currently tracked by the registry',
            registry=reg
        )
        self.loop_started_total = Counter(
            'loop_started_total',
            'Strategy loops started',
            labelnames=['symbol'],
            registry=reg
        )
        self.loop_stopped_total = Counter(
            'loop_stopped_total',
            'Strategy loops stopped',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.ticks_total = Counter(
            'ticks_total',
            'Strategy loop ticks executed',
            labelnames=['symbol'],
            registry=reg
        )
        self.tick_duration_ms = Histogram(
            'tick_duration_ms',
            'Tick duration excluding the inter-tick sleep (milliseconds)',
            labelnames=['symbol'],
            buckets=[5, 10, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )

        # === Order Metrics ===
        self.orders_submitted_total = Counter(
            'orders_submitted_total',
            'Orders accepted by the venue',
            labelnames=['symbol', 'side'],
            registry=reg
        )
        self.orders_rejected_total = Counter(
            'orders_rejected_total',
            'Order submits or replaces that failed',
            labelnames=['symbol', 'action'],
            registry=reg
        )
        self.orders_replaced_total = Counter(
            'orders_replaced_total',
            'Orders replaced',
            labelnames=['symbol'],
            registry=reg
        )

        # === Reconciliation Metrics ===
        self.trade_updates_total = Counter(
            'trade_updates_total',
            'Trade updates applied by the reconciliation listener',
            labelnames=['symbol', 'status'],
            registry=reg
        )
        self.position = Gauge(
            'position',
            'Last known position (signed quantity)',
            labelnames=['symbol'],
            registry=reg
        )

        # === Stream Metrics ===
        self.stream_dropped_total = Counter(
            'stream_dropped_total',
            'Stream events dropped because a per-instrument queue was full',
            labelnames=['stream'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
