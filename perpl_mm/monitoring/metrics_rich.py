"""
Prometheus metrics for the market making bot.

Organized into: execution, submission, pipeline.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class BotMetrics:
    """Counters and gauges exported on /metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Execution Metrics ===
        self.executions = Counter(
            'executions_total',
            'Strategy executions run',
            labelnames=['strategy', 'wake'],
            registry=reg
        )
        self.executions_skipped = Counter(
            'executions_skipped_total',
            'Wakes dropped because the execution permit was busy',
            labelnames=['strategy', 'wake'],
            registry=reg
        )
        self.permit_in_flight = Gauge(
            'permit_in_flight',
            'Execution permit checked out (1=busy, 0=free)',
            labelnames=['strategy'],
            registry=reg
        )
        self.pending_event_batches = Gauge(
            'pending_event_batches',
            'Event batches waiting for the next permit',
            labelnames=['strategy'],
            registry=reg
        )
        self.mark_price = Gauge(
            'mark_price',
            'Mark price of the traded perpetual',
            labelnames=['perpetual'],
            registry=reg
        )

        # === Submission Metrics ===
        self.order_batches_submitted = Counter(
            'order_batches_submitted_total',
            'Order batches sent to the exchange',
            labelnames=['strategy'],
            registry=reg
        )
        self.orders_submitted = Counter(
            'orders_submitted_total',
            'Order descriptions sent to the exchange',
            labelnames=['strategy'],
            registry=reg
        )
        self.submission_failures = Counter(
            'submission_failures_total',
            'Order batches that failed to send or confirm',
            labelnames=['strategy', 'stage'],
            registry=reg
        )
        self.batch_confirm_seconds = Histogram(
            'batch_confirm_seconds',
            'Time from send to receipt (seconds)',
            labelnames=['strategy'],
            buckets=[0.25, 0.5, 1, 2, 5, 10, 30, 60],
            registry=reg
        )

        # === Pipeline Metrics ===
        self.pipeline_restarts = Counter(
            'pipeline_restarts_total',
            'Snapshot/stream rebuilds',
            labelnames=['reason'],
            registry=reg
        )
        self.stream_events = Counter(
            'stream_events_total',
            'Raw block batches received from the event stream',
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry
