"""
Upload ingestion: CSV bytes to upserted raw-table rows.

Duplicate order line ids inside one upload are resolved here, explicitly,
with last-row-wins semantics; across uploads the store's upsert gives the same
overwrite behaviour. No history of overwritten values is kept.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from csv_source import read_rows
from exceptions import DataValidationError
from field_mapper import DatasetType, canonical_header, normalize_rows
from metrics import MetricsCollector, metrics
from models import current_period, validate_period

logger = structlog.get_logger()

REQUIRED_FIELDS = ("order_line_id",)


def merge_by_order_line_id(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Collapse rows sharing an order_line_id; the last occurrence wins.

    Output keeps first-seen key order.
    """
    merged: Dict[str, Dict[str, Any]] = {}
    duplicates = 0
    for row in rows:
        key = row["order_line_id"]
        if key in merged:
            duplicates += 1
        merged[key] = row
    if duplicates:
        logger.warning(
            "Duplicate order_line_id rows overwritten by later rows",
            duplicates=duplicates,
        )
    return list(merged.values())


def missing_required_headers(headers: Iterable[str], dataset: DatasetType) -> List[str]:
    """Source headers for required fields that the upload does not carry."""
    present = {canonical_header(header) for header in headers}
    missing = []
    for source_header, field_name in dataset.field_map.items():
        if field_name in REQUIRED_FIELDS and canonical_header(source_header) not in present:
            missing.append(source_header)
    return missing


class IngestionService:
    """Parses, normalizes and upserts one dataset upload at a time."""

    def __init__(self, store, metrics_collector: MetricsCollector = metrics) -> None:
        self.store = store
        self.metrics = metrics_collector

    def upload(
        self,
        dataset: Union[DatasetType, str],
        content: Union[bytes, str],
        period: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Ingest one CSV export into its raw table.

        Order rows are stamped with `period` (default: current month) so a
        reconciliation run can select them. Returns {"count": rows upserted}.

        Raises:
            ParseError: content unreadable by either CSV parser.
            DataValidationError: empty upload or missing order line id column.
            StorageError: the upsert failed.
        """
        dataset = DatasetType(dataset)
        period = validate_period(period) if period else current_period()

        raw_rows = read_rows(content)
        if not raw_rows:
            raise DataValidationError("CSV file is empty or could not be parsed")

        missing = missing_required_headers(raw_rows[0].keys(), dataset)
        if missing:
            raise DataValidationError(
                f"Missing required column(s) for {dataset.value}: {', '.join(missing)}"
            )

        normalized = normalize_rows(raw_rows, dataset)
        keyed = [row for row in normalized if row.get("order_line_id")]
        if len(keyed) < len(normalized):
            logger.warning(
                "Skipped rows without order_line_id",
                dataset=dataset.value,
                skipped=len(normalized) - len(keyed),
            )

        if dataset is DatasetType.ORDERS:
            for row in keyed:
                row["period"] = period

        merged = merge_by_order_line_id(keyed)
        count = self.store.upsert_rows(dataset, merged)
        self.metrics.record_rows_uploaded(dataset.value, count)

        logger.info(
            "Upload ingested",
            dataset=dataset.value,
            parsed=len(raw_rows),
            upserted=count,
            period=period if dataset is DatasetType.ORDERS else None,
        )
        return {"count": count}
