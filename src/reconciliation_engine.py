"""
Core reconciliation logic for marketplace order settlements.

Joins orders with cancellations, returns, payments and return charges on
order_line_id, classifies each order line, computes settlement differences and
assigns a verdict. Uses hash map indexing for O(1) lookups and Decimal for
precision. Results replace the period's previous results in one write.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Set, Type, TypeVar

from field_mapper import DatasetType
from metrics import MetricsCollector, metrics
from models import (
    Cancellation,
    ItemStatus,
    OrderLine,
    Payment,
    ReconcileOutcome,
    ReconciliationResult,
    ReconciliationStatus,
    ReturnCharge,
    ReturnRecord,
)
from status_classifier import classify_item_status

# Standard logger for audit trail and operational monitoring
logger = logging.getLogger(__name__)

ZERO = Decimal("0")

RecordT = TypeVar("RecordT", Cancellation, ReturnRecord, Payment, ReturnCharge)

_LOCKS_GUARD = threading.Lock()
# Entries vanish once no run holds or awaits the period lock.
_PERIOD_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()


def _period_lock(period: str) -> threading.Lock:
    """Process-wide lock serializing runs for one period."""
    with _LOCKS_GUARD:
        return _PERIOD_LOCKS.setdefault(period, threading.Lock())


class SourceData(NamedTuple):
    """The five raw tables, as read for one reconciliation run."""

    orders: List[OrderLine]
    cancellations: List[Cancellation]
    returns: List[ReturnRecord]
    payments: List[Payment]
    return_charges: List[ReturnCharge]


def _amount(value: Optional[Decimal]) -> Decimal:
    return ZERO if value is None else value


def settlement_verdict(
    item_status: ItemStatus,
    has_settlement_data: bool,
    difference: Decimal,
    tolerance: Decimal = Decimal("1"),
) -> ReconciliationStatus:
    """
    Match verdict for one order line.

    `tolerance` is an absolute amount, not a percentage.
    """
    if item_status is ItemStatus.IN_TRANSIT:
        return ReconciliationStatus.PENDING
    if not has_settlement_data:
        return ReconciliationStatus.PENDING
    if abs(difference) < tolerance:
        return ReconciliationStatus.MATCHED
    if difference > 0:
        return ReconciliationStatus.UNDER_SETTLED
    return ReconciliationStatus.OVER_SETTLED


class ReconciliationEngine:
    """Reconciles a period's order lines against settlement data."""

    def __init__(
        self,
        store,
        match_tolerance: Decimal = Decimal("1"),
        read_workers: int = 5,
        metrics_collector: MetricsCollector = metrics,
    ) -> None:
        """
        Args:
            store: Dataset store exposing fetch_table and replace_period_results
            match_tolerance: Absolute difference below which a line is Matched
            read_workers: Threads used to read the five source tables
        """
        self.store = store
        self.match_tolerance = match_tolerance
        self.read_workers = max(1, read_workers)
        self.metrics = metrics_collector

    @staticmethod
    def _build_index(
        rows: List[RecordT], label: str = "records"
    ) -> Dict[str, RecordT]:
        """Build order_line_id index for O(1) lookups."""
        index: Dict[str, RecordT] = {}
        for row in rows:
            if row.order_line_id in index:
                logger.warning(
                    "Duplicate order_line_id %s in %s; keeping last occurrence.",
                    row.order_line_id,
                    label,
                )
            index[row.order_line_id] = row
        return index

    @staticmethod
    def _parse(rows: List[dict], model: Type[RecordT]) -> List[RecordT]:
        return [model.model_validate(row) for row in rows]

    def load_sources(self, period: str) -> SourceData:
        """Read the period's orders and the four settlement tables concurrently."""
        with ThreadPoolExecutor(max_workers=self.read_workers) as executor:
            orders = executor.submit(self.store.fetch_table, DatasetType.ORDERS, period)
            cancellations = executor.submit(self.store.fetch_table, DatasetType.CANCELLATIONS)
            returns = executor.submit(self.store.fetch_table, DatasetType.RETURNS)
            payments = executor.submit(self.store.fetch_table, DatasetType.PAYMENTS)
            return_charges = executor.submit(self.store.fetch_table, DatasetType.RETURN_CHARGES)

            return SourceData(
                orders=self._parse(orders.result(), OrderLine),
                cancellations=self._parse(cancellations.result(), Cancellation),
                returns=self._parse(returns.result(), ReturnRecord),
                payments=self._parse(payments.result(), Payment),
                return_charges=self._parse(return_charges.result(), ReturnCharge),
            )

    def reconcile_order(
        self,
        order: OrderLine,
        period: str,
        cancelled_ids: Set[str],
        returned_ids: Set[str],
        payments: Dict[str, Payment],
        return_charges: Dict[str, ReturnCharge],
    ) -> ReconciliationResult:
        """Classify one order line and compute its settlement figures."""
        payment = payments.get(order.order_line_id)
        return_charge = return_charges.get(order.order_line_id)
        has_payment = payment is not None
        has_return_charge = return_charge is not None

        item_status, misc_type = classify_item_status(
            order,
            is_cancelled=order.order_line_id in cancelled_ids,
            is_returned=order.order_line_id in returned_ids,
            has_payment=has_payment,
            has_return_charge=has_return_charge,
        )

        customer_paid = _amount(payment.customer_paid_amount) if has_payment else ZERO
        expected_settlement = _amount(payment.expected_settlement) if has_payment else ZERO
        actual_settlement = _amount(payment.actual_settlement) if has_payment else ZERO
        # Return charges are negative deductions; the sign is kept as uploaded.
        return_charge_amount = (
            _amount(return_charge.actual_settlement) if has_return_charge else ZERO
        )

        net_settlement = actual_settlement + return_charge_amount
        if item_status is ItemStatus.RETURNED:
            difference = -(actual_settlement + return_charge_amount)
            customer_difference = customer_paid + return_charge_amount
        else:
            difference = expected_settlement - actual_settlement
            customer_difference = customer_paid - net_settlement

        verdict = settlement_verdict(
            item_status,
            has_payment or has_return_charge,
            difference,
            self.match_tolerance,
        )

        return ReconciliationResult(
            order_line_id=order.order_line_id,
            order_release_id=order.order_release_id,
            sku_code=order.sku_code,
            style_name=order.style_name,
            item_status=item_status,
            misc_type=misc_type,
            final_amount=order.final_amount,
            customer_paid_amount=customer_paid,
            expected_settlement=expected_settlement,
            actual_settlement=actual_settlement,
            return_charge=return_charge_amount,
            net_settlement=net_settlement,
            difference=difference,
            customer_difference=customer_difference,
            reconciliation_status=verdict,
            period=period,
        )

    def build_results(self, sources: SourceData, period: str) -> List[ReconciliationResult]:
        """One result per order line, in input order; no line is ever dropped."""
        cancelled_ids = {c.order_line_id for c in sources.cancellations}
        returned_ids = {r.order_line_id for r in sources.returns}
        payments = self._build_index(sources.payments, "payments")
        return_charges = self._build_index(sources.return_charges, "return charges")

        return [
            self.reconcile_order(
                order, period, cancelled_ids, returned_ids, payments, return_charges
            )
            for order in sources.orders
        ]

    def reconcile(self, period: str) -> ReconcileOutcome:
        """
        Execute reconciliation for one period and replace its stored results.

        Args:
            period: Reporting month (YYYY-MM)

        Returns:
            ReconcileOutcome with the row count and item status breakdown

        Storage errors propagate unchanged; a failed run leaves no partial
        results for the period.
        """
        start = time.time()
        try:
            with _period_lock(period):
                sources = self.load_sources(period)
                logger.info(
                    "Loaded sources for %s: %d orders, %d cancellations, %d returns, "
                    "%d payments, %d return charges",
                    period,
                    len(sources.orders),
                    len(sources.cancellations),
                    len(sources.returns),
                    len(sources.payments),
                    len(sources.return_charges),
                )

                results = self.build_results(sources, period)
                self.store.replace_period_results(period, results)
        except Exception:
            self.metrics.record_reconciliation_run("error", time.time() - start)
            logger.error("Reconciliation failed for period %s", period)
            raise

        status_counts: Dict[str, int] = {}
        for result in results:
            key = result.item_status.value
            status_counts[key] = status_counts.get(key, 0) + 1

        self.metrics.record_reconciliation_run("success", time.time() - start)
        self.metrics.record_order_lines(
            Counter(
                (r.item_status.value, r.reconciliation_status.value) for r in results
            )
        )

        logger.info(
            "Reconciliation complete for %s: %d order lines, status breakdown %s",
            period,
            len(results),
            status_counts,
        )
        return ReconcileOutcome(period=period, count=len(results), status_counts=status_counts)
