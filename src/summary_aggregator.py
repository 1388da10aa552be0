"""
Summary aggregation over reconciliation results.

Reduces result rows to lifecycle counts, verdict counts and monetary totals.
Transient read failures are retried with linear backoff before the error is
surfaced.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from exceptions import StorageError, TransientReadError
from field_mapper import parse_amount
from metrics import MetricsCollector, metrics
from models import ItemStatus, ReconciliationStatus, ReconciliationSummary

logger = structlog.get_logger()

_ITEM_STATUS_FIELDS = {
    ItemStatus.DELIVERED.value: "delivered",
    ItemStatus.CANCELLED.value: "cancelled",
    ItemStatus.RETURNED.value: "returned",
    ItemStatus.RTO.value: "rto",
    ItemStatus.IN_TRANSIT.value: "in_transit",
    ItemStatus.MISCELLANEOUS.value: "miscellaneous",
}

_VERDICT_FIELDS = {
    ReconciliationStatus.MATCHED.value: "matched",
    ReconciliationStatus.UNDER_SETTLED.value: "under_settled",
    ReconciliationStatus.OVER_SETTLED.value: "over_settled",
    ReconciliationStatus.PENDING.value: "pending",
}


def _status_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def aggregate_rows(
    rows: Iterable[Dict[str, Any]], period: Optional[str] = None
) -> ReconciliationSummary:
    """Fold result rows into a summary; absent or non-numeric amounts count as 0."""
    counts: Dict[str, int] = {}
    total_orders = 0
    total_customer_paid = Decimal("0")
    total_settled = Decimal("0")
    total_difference = Decimal("0")

    for row in rows:
        total_orders += 1
        for key, fields in (
            (row.get("item_status"), _ITEM_STATUS_FIELDS),
            (row.get("reconciliation_status"), _VERDICT_FIELDS),
        ):
            field = fields.get(_status_key(key))
            if field:
                counts[field] = counts.get(field, 0) + 1

        total_customer_paid += parse_amount(row.get("customer_paid_amount"))
        total_settled += parse_amount(row.get("net_settlement"))
        total_difference += parse_amount(row.get("difference"))

    return ReconciliationSummary(
        period=period,
        total_orders=total_orders,
        total_customer_paid=total_customer_paid,
        total_settled=total_settled,
        total_difference=total_difference,
        **counts,
    )


class SummaryAggregator:
    """Builds reconciliation summaries from the dataset store."""

    def __init__(
        self,
        store,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        metrics_collector: MetricsCollector = metrics,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.metrics = metrics_collector

    def _read_rows(self, period: Optional[str]) -> List[Dict[str, Any]]:
        """
        Read summary rows, retrying transient failures.

        The n-th retry waits n * backoff_seconds (1s, 2s, 3s by default).
        Non-transient storage errors are raised immediately.
        """
        attempt = 0
        while True:
            try:
                return self.store.fetch_summary_rows(period)
            except TransientReadError as exc:
                if attempt >= self.max_retries:
                    logger.error(
                        "Summary read failed after retries",
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                    raise StorageError(str(exc)) from exc
                attempt += 1
                wait_time = attempt * self.backoff_seconds
                logger.warning(
                    "Transient summary read failure, retrying",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    wait_seconds=wait_time,
                    error=str(exc),
                )
                self.metrics.record_summary_retry()
                self.sleep(wait_time)

    def summarize(self, period: Optional[str] = None) -> ReconciliationSummary:
        """Lifecycle counts and totals, over one period or all results."""
        rows = self._read_rows(period)
        summary = aggregate_rows(rows, period)
        logger.info(
            "Summary computed",
            period=period,
            total_orders=summary.total_orders,
        )
        return summary
