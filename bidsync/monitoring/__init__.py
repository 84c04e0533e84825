"""
Monitoring: Prometheus metrics.
"""

from bidsync.monitoring.metrics import BidMetrics, start_metrics_server

__all__ = ["BidMetrics", "start_metrics_server"]
