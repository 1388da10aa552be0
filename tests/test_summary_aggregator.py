# tests/test_summary_aggregator.py

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from exceptions import StorageError, TransientReadError
from summary_aggregator import SummaryAggregator, aggregate_rows


def make_aggregator(store, sleeps=None, metrics_collector=None):
    sleeps = [] if sleeps is None else sleeps
    return SummaryAggregator(
        store,
        sleep=sleeps.append,
        metrics_collector=metrics_collector or MagicMock(),
    )


# -------------------------------
# aggregate_rows
# -------------------------------
def test_one_delivered_one_cancelled():
    rows = [
        {
            "item_status": "Delivered",
            "reconciliation_status": "Matched",
            "customer_paid_amount": Decimal("500"),
            "net_settlement": Decimal("450"),
            "difference": Decimal("0"),
        },
        {
            "item_status": "Cancelled",
            "reconciliation_status": "Pending",
            "customer_paid_amount": None,
            "net_settlement": "0",
            "difference": "",
        },
    ]

    summary = aggregate_rows(rows).model_dump(by_alias=True)

    assert summary["totalOrders"] == 2
    assert summary["delivered"] == 1
    assert summary["cancelled"] == 1
    assert summary["returned"] == 0
    assert summary["inTransit"] == 0
    assert summary["matched"] == 1
    assert summary["pending"] == 1
    assert summary["totalCustomerPaid"] == Decimal("500")
    assert summary["totalSettled"] == Decimal("450")
    assert summary["totalDifference"] == Decimal("0")


def test_empty_results_give_zero_summary():
    summary = aggregate_rows([], period="2025-03")
    assert summary.period == "2025-03"
    assert summary.total_orders == 0
    assert summary.total_settled == Decimal("0")


def test_unknown_statuses_only_count_towards_total():
    summary = aggregate_rows([{"item_status": "Lost", "reconciliation_status": None}])
    assert summary.total_orders == 1
    assert summary.miscellaneous == 0
    assert summary.pending == 0


# -------------------------------
# SummaryAggregator
# -------------------------------
def test_summarize_reads_requested_period(store):
    aggregator = make_aggregator(store)
    store.results = [
        {"item_status": "RTO", "reconciliation_status": "Pending", "period": "2025-01"},
        {"item_status": "RTO", "reconciliation_status": "Pending", "period": "2025-02"},
    ]

    assert aggregator.summarize("2025-01").rto == 1
    assert aggregator.summarize().rto == 2


def test_transient_failures_are_retried_with_linear_backoff():
    store = MagicMock()
    store.fetch_summary_rows.side_effect = [
        TransientReadError("server closed the connection unexpectedly"),
        TransientReadError("server closed the connection unexpectedly"),
        [{"item_status": "Delivered", "reconciliation_status": "Matched"}],
    ]
    sleeps = []
    metrics_collector = MagicMock()

    summary = make_aggregator(store, sleeps, metrics_collector).summarize("2025-01")

    assert summary.delivered == 1
    assert sleeps == [1.0, 2.0]
    assert metrics_collector.record_summary_retry.call_count == 2


def test_gives_up_after_three_retries():
    store = MagicMock()
    store.fetch_summary_rows.side_effect = TransientReadError("timeout expired")
    sleeps = []

    with pytest.raises(StorageError, match="timeout expired") as exc_info:
        make_aggregator(store, sleeps).summarize()

    assert sleeps == [1.0, 2.0, 3.0]
    assert store.fetch_summary_rows.call_count == 4
    assert isinstance(exc_info.value.__cause__, TransientReadError)


def test_non_transient_errors_are_not_retried():
    store = MagicMock()
    store.fetch_summary_rows.side_effect = StorageError('column "difference" does not exist')
    sleeps = []

    with pytest.raises(StorageError, match='column "difference" does not exist'):
        make_aggregator(store, sleeps).summarize()

    assert sleeps == []
    assert store.fetch_summary_rows.call_count == 1
