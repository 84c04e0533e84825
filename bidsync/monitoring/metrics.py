"""
Prometheus metrics for the bid engine.

Organized into: signals, operations, bids, stream.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class BidMetrics:
    """All engine metrics on one registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Signal Metrics ===
        self.signals_observed = Counter(
            'signals_observed_total',
            'Price signals fetched from marketplaces',
            labelnames=['marketplace'],
            registry=reg
        )
        self.change_events = Counter(
            'change_events_total',
            'Price signal changes forwarded to the controller',
            labelnames=['marketplace'],
            registry=reg
        )
        self.signal_validation_errors = Counter(
            'signal_validation_errors_total',
            'Malformed or out-of-range price signals skipped',
            labelnames=['marketplace'],
            registry=reg
        )
        self.fetch_errors = Counter(
            'fetch_errors_total',
            'Failed or timed out best-offer fetches',
            labelnames=['marketplace'],
            registry=reg
        )
        self.invalidations = Counter(
            'invalidations_total',
            'Push invalidation events by outcome',
            labelnames=['marketplace', 'outcome'],
            registry=reg
        )

        # === Operation Metrics ===
        self.operations = Counter(
            'operations_total',
            'Queued operations by type and outcome',
            labelnames=['op', 'outcome'],
            registry=reg
        )
        self.queue_depth = Gauge(
            'operation_queue_depth',
            'Operations waiting for the execution slot',
            registry=reg
        )

        # === Bid Metrics ===
        self.bids_submitted = Counter(
            'bids_submitted_total',
            'Bids accepted by a marketplace',
            labelnames=['marketplace'],
            registry=reg
        )
        self.bids_cancelled = Counter(
            'bids_cancelled_total',
            'Bids retired from the ledger',
            labelnames=['marketplace', 'reason'],
            registry=reg
        )
        self.submission_errors = Counter(
            'submission_errors_total',
            'Format/sign/submit/cancel failures',
            labelnames=['marketplace', 'step'],
            registry=reg
        )
        self.invariant_violations = Counter(
            'invariant_violations_total',
            'Submits dropped because a live bid already existed',
            labelnames=['marketplace'],
            registry=reg
        )
        self.active_bid_amount = Gauge(
            'active_bid_amount_eth',
            'Current ledger bid amount',
            labelnames=['collection', 'marketplace'],
            registry=reg
        )

        # === Stream Metrics ===
        self.stream_reconnects = Counter(
            'stream_reconnects_total',
            'Push stream reconnect attempts',
            labelnames=['marketplace'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self) -> CollectorRegistry:
        return self.registry


def start_metrics_server(metrics: BidMetrics, port: int) -> None:
    """Expose /metrics on port; port <= 0 disables the endpoint."""
    if port > 0:
        start_http_server(port, registry=metrics.registry)
