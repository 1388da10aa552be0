"""
Unit tests for ReconciliationEngine

Covers lifecycle classification through the full join, settlement
computations, verdict thresholds, period scoping and failure handling.
"""

import gc
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import order_row
from exceptions import StorageError
from field_mapper import DatasetType
from models import ItemStatus, MiscType, Payment, ReconciliationStatus
import reconciliation_engine
from reconciliation_engine import ReconciliationEngine, _period_lock, settlement_verdict

PERIOD = "2025-01"


# -------------------------------
# TEST SUITE
# -------------------------------
class TestReconciliationEngine:
    """Test suite for ReconciliationEngine class"""

    # ---------------------------
    # Fixtures
    # ---------------------------
    @pytest.fixture
    def engine(self, store, metrics_collector):
        """Return a ReconciliationEngine over the in-memory store."""
        return ReconciliationEngine(store, metrics_collector=metrics_collector)

    @staticmethod
    def load(store, dataset, *rows):
        store.upsert_rows(dataset, list(rows))

    def result_for(self, store, order_line_id):
        return next(row for row in store.results if row["order_line_id"] == order_line_id)

    # ---------------------------
    # Scenarios
    # ---------------------------
    def test_delivered_without_settlement_is_miscellaneous(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("A1", order_status="C"))

        engine.reconcile(PERIOD)

        result = self.result_for(store, "A1")
        assert result["item_status"] == "Miscellaneous"
        assert result["misc_type"] == "Delivered"
        assert result["reconciliation_status"] == "Pending"

    def test_fully_settled_order_is_matched(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("A2", order_status="C"))
        self.load(
            store,
            DatasetType.PAYMENTS,
            {
                "order_line_id": "A2",
                "customer_paid_amount": Decimal("500"),
                "expected_settlement": Decimal("450"),
                "actual_settlement": Decimal("450"),
            },
        )

        engine.reconcile(PERIOD)

        result = self.result_for(store, "A2")
        assert result["item_status"] == "Delivered"
        assert Decimal(result["difference"]) == Decimal("0")
        assert result["reconciliation_status"] == "Matched"

    def test_returned_order_settlement_figures(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("A3", order_status="C"))
        self.load(store, DatasetType.RETURNS, {"order_line_id": "A3"})
        self.load(
            store,
            DatasetType.RETURN_CHARGES,
            {"order_line_id": "A3", "actual_settlement": Decimal("-100")},
        )
        self.load(
            store,
            DatasetType.PAYMENTS,
            {
                "order_line_id": "A3",
                "customer_paid_amount": Decimal("500"),
                "actual_settlement": Decimal("400"),
            },
        )

        engine.reconcile(PERIOD)

        result = self.result_for(store, "A3")
        assert result["item_status"] == "Returned"
        assert Decimal(result["return_charge"]) == Decimal("-100")
        assert Decimal(result["net_settlement"]) == Decimal("300")
        assert Decimal(result["difference"]) == Decimal("-300")
        assert Decimal(result["customer_difference"]) == Decimal("400")
        assert result["reconciliation_status"] == "Over Settled"

    def test_cancellation_overrides_everything(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("C1", order_status="RTO"))
        self.load(store, DatasetType.CANCELLATIONS, {"order_line_id": "C1"})
        self.load(store, DatasetType.RETURNS, {"order_line_id": "C1"})

        engine.reconcile(PERIOD)

        assert self.result_for(store, "C1")["item_status"] == "Cancelled"

    def test_rto_status_overrides_return_entry(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("R1", order_status=" rto "))
        self.load(store, DatasetType.RETURNS, {"order_line_id": "R1"})
        self.load(
            store,
            DatasetType.RETURN_CHARGES,
            {"order_line_id": "R1", "actual_settlement": Decimal("-40")},
        )

        engine.reconcile(PERIOD)

        assert self.result_for(store, "R1")["item_status"] == "RTO"

    def test_in_transit_is_always_pending(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("T1", order_status="SHIPPED"))
        self.load(
            store,
            DatasetType.PAYMENTS,
            {"order_line_id": "T1", "expected_settlement": Decimal("10")},
        )

        engine.reconcile(PERIOD)

        result = self.result_for(store, "T1")
        assert result["item_status"] == "In Transit"
        assert result["reconciliation_status"] == "Pending"

    def test_net_settlement_is_exact(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("N1", order_status="DELIVERED"))
        self.load(
            store,
            DatasetType.PAYMENTS,
            {
                "order_line_id": "N1",
                "expected_settlement": Decimal("0.30"),
                "actual_settlement": Decimal("0.10"),
            },
        )
        self.load(
            store,
            DatasetType.RETURN_CHARGES,
            {"order_line_id": "N1", "actual_settlement": Decimal("0.20")},
        )

        engine.reconcile(PERIOD)

        result = self.result_for(store, "N1")
        assert Decimal(result["net_settlement"]) == Decimal("0.30")
        assert Decimal(result["difference"]) == Decimal("0.20")

    def test_every_order_line_gets_a_result(self, engine, store, metrics_collector):
        self.load(
            store,
            DatasetType.ORDERS,
            order_row("O1", order_status="C"),
            order_row("O2", order_status="F"),
            order_row("O3"),
        )
        # Settlement rows without a matching order are ignored.
        self.load(store, DatasetType.PAYMENTS, {"order_line_id": "ORPHAN"})

        outcome = engine.reconcile(PERIOD)

        assert outcome.count == 3
        assert outcome.status_counts == {"Miscellaneous": 1, "Cancelled": 1, "In Transit": 1}
        assert outcome.model_dump(by_alias=True)["statusCounts"] == outcome.status_counts
        assert sorted(row["order_line_id"] for row in store.results) == ["O1", "O2", "O3"]
        metrics_collector.record_reconciliation_run.assert_called_once()
        assert metrics_collector.record_reconciliation_run.call_args[0][0] == "success"

    # ---------------------------
    # Period scoping
    # ---------------------------
    def test_only_the_period_orders_are_reconciled(self, engine, store):
        self.load(
            store,
            DatasetType.ORDERS,
            order_row("J1", period="2025-01", order_status="C"),
            order_row("F1", period="2025-02", order_status="C"),
        )

        outcome = engine.reconcile("2025-02")

        assert outcome.count == 1
        assert [row["order_line_id"] for row in store.results] == ["F1"]
        assert (DatasetType.ORDERS, "2025-02") in store.fetch_calls
        assert (DatasetType.PAYMENTS, None) in store.fetch_calls

    def test_rerun_is_idempotent_and_leaves_other_periods(self, engine, store):
        self.load(
            store,
            DatasetType.ORDERS,
            order_row("J1", period="2025-01", order_status="C"),
            order_row("F1", period="2025-02", order_status="F"),
        )
        engine.reconcile("2025-01")
        engine.reconcile("2025-02")
        first = sorted(store.results, key=lambda row: row["order_line_id"])

        engine.reconcile("2025-01")
        second = sorted(store.results, key=lambda row: row["order_line_id"])

        assert first == second
        assert {row["period"] for row in second} == {"2025-01", "2025-02"}

    def test_empty_period_clears_previous_results(self, engine, store):
        self.load(store, DatasetType.ORDERS, order_row("J1", order_status="C"))
        engine.reconcile(PERIOD)
        store.tables[DatasetType.ORDERS].clear()

        outcome = engine.reconcile(PERIOD)

        assert outcome.count == 0
        assert store.results == []

    # ---------------------------
    # Failures
    # ---------------------------
    def test_storage_failure_propagates_unchanged(self, engine, store, metrics_collector):
        self.load(store, DatasetType.ORDERS, order_row("A1", order_status="C"))
        error = StorageError('duplicate key value violates unique constraint "uq_period_line"')
        store.fail_replace = error

        with pytest.raises(StorageError) as exc_info:
            engine.reconcile(PERIOD)

        assert exc_info.value is error
        assert store.results == []
        assert metrics_collector.record_reconciliation_run.call_args[0][0] == "error"

    def test_read_failure_aborts_before_write(self, metrics_collector):
        store = MagicMock()
        store.fetch_table.side_effect = StorageError("connection refused")
        engine = ReconciliationEngine(store, metrics_collector=metrics_collector)

        with pytest.raises(StorageError, match="connection refused"):
            engine.reconcile(PERIOD)
        store.replace_period_results.assert_not_called()

    # ---------------------------
    # Duplicate settlement rows
    # ---------------------------
    def test_build_index_keeps_last_occurrence(self, engine):
        rows = [
            Payment(order_line_id="D1", actual_settlement=Decimal("1")),
            Payment(order_line_id="D1", actual_settlement=Decimal("2")),
        ]
        index = engine._build_index(rows, "payments")
        assert index["D1"].actual_settlement == Decimal("2")


# -------------------------------
# settlement_verdict
# -------------------------------
@pytest.mark.parametrize(
    "difference, expected",
    [
        (Decimal("0"), ReconciliationStatus.MATCHED),
        (Decimal("0.99"), ReconciliationStatus.MATCHED),
        (Decimal("-0.99"), ReconciliationStatus.MATCHED),
        (Decimal("1"), ReconciliationStatus.UNDER_SETTLED),
        (Decimal("-1"), ReconciliationStatus.OVER_SETTLED),
        (Decimal("250"), ReconciliationStatus.UNDER_SETTLED),
    ],
)
def test_settlement_verdict_thresholds(difference, expected):
    assert settlement_verdict(ItemStatus.DELIVERED, True, difference) == expected


def test_settlement_verdict_pending_without_settlement_data():
    assert (
        settlement_verdict(ItemStatus.CANCELLED, False, Decimal("0"))
        is ReconciliationStatus.PENDING
    )


def test_settlement_verdict_in_transit_pending_even_when_settled():
    assert (
        settlement_verdict(ItemStatus.IN_TRANSIT, True, Decimal("0"))
        is ReconciliationStatus.PENDING
    )


def test_miscellaneous_return_type_reported(store, metrics_collector):
    engine = ReconciliationEngine(store, metrics_collector=metrics_collector)
    store.upsert_rows(DatasetType.ORDERS, [order_row("M1", order_status="C")])
    store.upsert_rows(DatasetType.RETURNS, [{"order_line_id": "M1"}])

    engine.reconcile(PERIOD)

    result = store.results[0]
    assert result["item_status"] == ItemStatus.MISCELLANEOUS.value
    assert result["misc_type"] == MiscType.RETURN.value


def test_period_lock_shared_while_held_then_released():
    lock = _period_lock("2099-01")
    assert _period_lock("2099-01") is lock

    del lock
    gc.collect()

    assert "2099-01" not in reconciliation_engine._PERIOD_LOCKS
