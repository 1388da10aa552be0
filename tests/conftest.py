# tests/conftest.py

from decimal import Decimal
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from field_mapper import DatasetType
from main import setup_logging
from models import ReconciliationResult


class InMemoryStore:
    """
    Dataset store double with the same surface as DatabaseManager.

    Upserts overwrite only the columns a row carries; result replacement is
    scoped to one period.
    """

    def __init__(self):
        self.tables: Dict[DatasetType, Dict[str, Dict[str, Any]]] = {
            dataset: {} for dataset in DatasetType
        }
        self.results: List[Dict[str, Any]] = []
        self.fail_replace: Optional[Exception] = None
        self.fetch_calls: List[tuple] = []

    def upsert_rows(self, dataset, rows):
        table = self.tables[DatasetType(dataset)]
        for row in rows:
            table.setdefault(row["order_line_id"], {}).update(row)
        return len(rows)

    def fetch_table(self, dataset, period=None):
        dataset = DatasetType(dataset)
        self.fetch_calls.append((dataset, period))
        rows = [dict(row) for _, row in sorted(self.tables[dataset].items())]
        if period is not None and dataset is DatasetType.ORDERS:
            rows = [row for row in rows if row.get("period") == period]
        return rows

    def table_counts(self):
        return {dataset.value: len(rows) for dataset, rows in self.tables.items()}

    def replace_period_results(self, period, results: List[ReconciliationResult]):
        if self.fail_replace is not None:
            raise self.fail_replace
        kept = [row for row in self.results if row["period"] != period]
        self.results = kept + [result.model_dump(mode="json") for result in results]
        return len(results)

    def _filtered(self, item_status=None, period=None):
        rows = self.results
        if item_status and item_status != "All":
            rows = [row for row in rows if row["item_status"] == item_status]
        if period:
            rows = [row for row in rows if row["period"] == period]
        return rows

    def fetch_results(self, page=1, page_size=50, item_status=None, period=None):
        rows = self._filtered(item_status, period)
        start = (max(page, 1) - 1) * page_size
        return rows[start:start + page_size], len(rows)

    def fetch_all_results(self, period=None):
        return sorted(self._filtered(None, period), key=lambda row: row["order_line_id"])

    def fetch_summary_rows(self, period=None):
        return list(self._filtered(None, period))

    def list_periods(self):
        return sorted({row["period"] for row in self.results if row["period"]}, reverse=True)

    def clear_staging(self):
        for table in self.tables.values():
            table.clear()

    def clear_all(self):
        self.clear_staging()
        self.results = []


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def metrics_collector():
    """MetricsCollector stand-in that records calls instead of touching the registry."""
    return MagicMock()


def order_row(order_line_id: str, period: str = "2025-01", **fields) -> Dict[str, Any]:
    row = {
        "order_line_id": order_line_id,
        "order_release_id": f"R{order_line_id}",
        "order_status": None,
        "final_amount": Decimal("0"),
        "period": period,
    }
    row.update(fields)
    return row


@pytest.fixture(autouse=True, scope="session")
def structured_logging():
    """Route structlog through stdlib logging so stdout carries only CLI output."""
    setup_logging("DEBUG")
