"""
Reconciliation reporting module: Excel workbook with detail and summary sheets.
"""

from __future__ import annotations

import io
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import structlog

from field_mapper import parse_amount
from models import ReconciliationSummary

logger = structlog.get_logger()

DETAIL_SHEET = "Reconciliation Report"
SUMMARY_SHEET = "Summary"

# (result column, sheet header)
DETAIL_COLUMNS: List[Tuple[str, str]] = [
    ("order_line_id", "Order Line ID"),
    ("order_release_id", "Order Release ID"),
    ("sku_code", "SKU"),
    ("style_name", "Style Name"),
    ("item_status", "Status"),
    ("misc_type", "Misc Type"),
    ("final_amount", "Final Amount"),
    ("customer_paid_amount", "Customer Paid"),
    ("expected_settlement", "Expected Settlement"),
    ("actual_settlement", "Actual Settlement"),
    ("return_charge", "Return Charge"),
    ("net_settlement", "Net Settlement"),
    ("difference", "Difference"),
    ("customer_difference", "Customer Difference"),
    ("reconciliation_status", "Reconciliation Status"),
    ("period", "Period"),
]

_MONEY_COLUMNS = {
    "final_amount", "customer_paid_amount", "expected_settlement",
    "actual_settlement", "return_charge", "net_settlement", "difference",
    "customer_difference",
}


class ReportGenerator:
    """Builds the Excel export from stored reconciliation results."""

    def __init__(self, report_prefix: str = "settlement_reconciliation") -> None:
        self.report_prefix = report_prefix

    def build_detail_frame(self, rows: List[Dict[str, Any]]) -> pd.DataFrame:
        """Detail rows with export headers; money columns as floats for Excel."""
        columns = [column for column, _ in DETAIL_COLUMNS]
        frame = pd.DataFrame(rows, columns=columns)
        for column in _MONEY_COLUMNS:
            frame[column] = frame[column].map(parse_amount).astype(float)
        return frame.rename(columns=dict(DETAIL_COLUMNS))

    def build_summary_frame(
        self, summary: ReconciliationSummary, generated_at: Optional[datetime] = None
    ) -> pd.DataFrame:
        """Label/value block: order status, settlement verdicts, payment totals."""
        generated_at = generated_at or datetime.now()
        records = [
            ("--- ORDER STATUS ---", ""),
            ("Period", summary.period or "All"),
            ("Total Orders", summary.total_orders),
            ("Delivered", summary.delivered),
            ("Cancelled", summary.cancelled),
            ("Returned", summary.returned),
            ("RTO", summary.rto),
            ("In Transit", summary.in_transit),
            ("Miscellaneous", summary.miscellaneous),
            ("", ""),
            ("--- SETTLEMENT STATUS ---", ""),
            ("Matched", summary.matched),
            ("Under Settled", summary.under_settled),
            ("Over Settled", summary.over_settled),
            ("Pending", summary.pending),
            ("", ""),
            ("--- PAYMENT SUMMARY ---", ""),
            ("Total Customer Paid", f"₹{summary.total_customer_paid:,.2f}"),
            ("Total Settled", f"₹{summary.total_settled:,.2f}"),
            ("Total Difference", f"₹{summary.total_difference:,.2f}"),
            ("", ""),
            ("Exported At", generated_at.isoformat(timespec="seconds")),
        ]
        return pd.DataFrame(records, columns=["Metric", "Value"])

    def generate_workbook(
        self, rows: List[Dict[str, Any]], summary: ReconciliationSummary
    ) -> bytes:
        """Render the two-sheet workbook and return its bytes."""
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            self.build_detail_frame(rows).to_excel(writer, index=False, sheet_name=DETAIL_SHEET)
            self.build_summary_frame(summary).to_excel(
                writer, index=False, sheet_name=SUMMARY_SHEET
            )
        logger.info("Built Excel report", rows=len(rows), period=summary.period)
        return buffer.getvalue()

    def report_filename(self, period: Optional[str]) -> str:
        return f"{self.report_prefix}_{period or datetime.now().date().isoformat()}.xlsx"

    def write_report(
        self,
        rows: List[Dict[str, Any]],
        summary: ReconciliationSummary,
        output_dir: Path,
        filename: Optional[str] = None,
    ) -> Path:
        """Write the workbook under `output_dir` and return its path."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        report_path = output_dir / (filename or self.report_filename(summary.period))
        report_path.write_bytes(self.generate_workbook(rows, summary))
        logger.info("Wrote Excel report", path=str(report_path))
        return report_path
