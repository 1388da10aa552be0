"""
Prometheus metrics for the settlement reconciliation system.
Tracks business and technical metrics for monitoring and alerting.
"""

from prometheus_client import Counter, Histogram, start_http_server
import time
from functools import wraps
from typing import Dict
import logging

logger = logging.getLogger(__name__)

# Business Metrics
RECONCILIATION_RUNS_TOTAL = Counter(
    'reconciliation_runs_total',
    'Total number of reconciliation runs',
    ['status']
)

ORDER_LINES_RECONCILED_TOTAL = Counter(
    'order_lines_reconciled_total',
    'Order lines reconciled by lifecycle status and verdict',
    ['item_status', 'reconciliation_status']
)

ROWS_UPLOADED_TOTAL = Counter(
    'rows_uploaded_total',
    'Rows upserted from CSV uploads',
    ['dataset']
)

# Technical Metrics
RECONCILIATION_DURATION_SECONDS = Histogram(
    'reconciliation_duration_seconds',
    'Time spent on reconciliation',
    buckets=[1, 5, 10, 30, 60, 300, 600, 1800]
)

DATABASE_OPERATIONS_TOTAL = Counter(
    'database_operations_total',
    'Total database operations',
    ['operation', 'status']
)

DATABASE_OPERATION_DURATION_SECONDS = Histogram(
    'database_operation_duration_seconds',
    'Database operation duration',
    ['operation'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10]
)

SUMMARY_READ_RETRIES_TOTAL = Counter(
    'summary_read_retries_total',
    'Transient summary read failures that were retried'
)


class MetricsCollector:
    """Centralized metrics collection for the reconciliation system."""

    def __init__(self, port: int = 8000):
        self.port = port
        self.server_started = False

    def start_metrics_server(self):
        """Start Prometheus metrics server."""
        if not self.server_started:
            try:
                if not (8000 <= self.port <= 9999):
                    raise ValueError(f"Invalid port {self.port}. Must be between 8000-9999")

                start_http_server(self.port)
                self.server_started = True
                logger.info(f"Metrics server started on port {self.port}")
            except (OSError, ValueError) as e:
                logger.error(f"Failed to start metrics server: {e}")

    def record_reconciliation_run(self, status: str, duration: float):
        RECONCILIATION_RUNS_TOTAL.labels(status=status).inc()
        RECONCILIATION_DURATION_SECONDS.observe(duration)

    def record_order_lines(self, status_counts: Dict[tuple, int]):
        """Record reconciled lines keyed by (item_status, reconciliation_status)."""
        for (item_status, recon_status), count in status_counts.items():
            ORDER_LINES_RECONCILED_TOTAL.labels(
                item_status=item_status, reconciliation_status=recon_status
            ).inc(count)

    def record_rows_uploaded(self, dataset: str, count: int):
        ROWS_UPLOADED_TOTAL.labels(dataset=dataset).inc(count)

    def record_database_operation(self, operation: str, status: str, duration: float):
        """Record database operation metrics."""
        DATABASE_OPERATIONS_TOTAL.labels(operation=operation, status=status).inc()
        DATABASE_OPERATION_DURATION_SECONDS.labels(operation=operation).observe(duration)

    def record_summary_retry(self):
        SUMMARY_READ_RETRIES_TOTAL.inc()


# Global metrics collector instance
metrics = MetricsCollector()


def track_duration(operation: str):
    """Decorator to track database operation duration and outcome."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception:
                metrics.record_database_operation(operation, 'error', time.time() - start_time)
                raise
            metrics.record_database_operation(operation, 'success', time.time() - start_time)
            return result
        return wrapper
    return decorator
