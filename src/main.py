"""
Marketplace Settlement Reconciliation System - Main Entry Point

Wires the dataset store, ingestion, reconciliation engine, summary aggregator
and report generator together once, and exposes them as CLI commands.
Handles CLI arguments, logging setup, and maps errors to exit codes.
"""

from __future__ import annotations
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from dotenv import load_dotenv

from database_manager import DatabaseManager
from exceptions import DataValidationError, ParseError, ReconciliationError
from field_mapper import DatasetType
from ingestion import IngestionService
from metrics import metrics
from models import Settings, current_period, validate_period
from reconciliation_engine import ReconciliationEngine
from report_generator import ReportGenerator
from summary_aggregator import SummaryAggregator


load_dotenv()


logger = structlog.get_logger()


try:
    SETTINGS = Settings()
except Exception as e:
    logger.error(
        "Failed to load environment settings. Check your .env file.", error=str(e)
    )
    sys.exit(1)


UPLOAD_ALIASES = {
    "order": DatasetType.ORDERS,
    "cancel": DatasetType.CANCELLATIONS,
    "return": DatasetType.RETURNS,
    "return-charge": DatasetType.RETURN_CHARGES,
    "payment": DatasetType.PAYMENTS,
}


class ReconciliationSystem:
    """
    Coordinates the settlement reconciliation workflow.

    A single dataset store is built at start-up and injected into every
    service:
    - IngestionService for CSV upload normalization and upserts
    - ReconciliationEngine for order line classification and settlement matching
    - SummaryAggregator for lifecycle counts and totals
    - ReportGenerator for the Excel export
    """

    def __init__(self, settings: Settings = None, store=None) -> None:
        self.settings = settings or SETTINGS
        self.store = store if store is not None else DatabaseManager(settings=self.settings)
        self.ingestion_service = IngestionService(self.store)
        self.reconciliation_engine = ReconciliationEngine(
            self.store,
            match_tolerance=self.settings.MATCH_TOLERANCE,
            read_workers=self.settings.SOURCE_READ_WORKERS,
        )
        self.summary_aggregator = SummaryAggregator(
            self.store,
            max_retries=self.settings.SUMMARY_MAX_RETRIES,
            backoff_seconds=self.settings.SUMMARY_RETRY_BACKOFF_SECONDS,
        )
        self.report_generator = ReportGenerator()

    def upload(self, dataset: str, file_path: Path, period: Optional[str] = None) -> Dict[str, int]:
        dataset_type = UPLOAD_ALIASES.get(dataset) or DatasetType(dataset)
        content = Path(file_path).read_bytes()
        return self.ingestion_service.upload(dataset_type, content, period=period)

    def reconcile(self, period: Optional[str] = None) -> Dict[str, Any]:
        """Run reconciliation; period defaults to the current month."""
        period = validate_period(period) if period else current_period()
        outcome = self.reconciliation_engine.reconcile(period)
        result = outcome.model_dump(by_alias=True)
        result["message"] = f"Reconciliation completed for {period}"
        return result

    def summary(self, period: Optional[str] = None) -> Dict[str, Any]:
        summary = self.summary_aggregator.summarize(period)
        return summary.model_dump(by_alias=True, mode="json")

    def table(
        self,
        page: int = 1,
        page_size: int = 50,
        status: Optional[str] = None,
        period: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Paginated result rows, optionally filtered by item status and period."""
        page = max(page, 1)
        page_size = max(page_size, 1)
        rows, count = self.store.fetch_results(
            page=page, page_size=page_size, item_status=status, period=period
        )
        return {
            "data": rows,
            "count": count,
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "total": count,
                "totalPages": -(-count // page_size),
            },
        }

    def periods(self) -> Dict[str, List[str]]:
        return {"periods": self.store.list_periods()}

    def upload_status(self) -> Dict[str, int]:
        return self.store.table_counts()

    def export(self, period: Optional[str] = None, output: Optional[Path] = None) -> Path:
        """Write the Excel export and return its path."""
        rows = self.store.fetch_all_results(period)
        summary = self.summary_aggregator.summarize(period)
        if output is not None:
            output = Path(output)
            return self.report_generator.write_report(
                rows, summary, output.parent, filename=output.name
            )
        return self.report_generator.write_report(
            rows, summary, self.settings.REPORT_OUTPUT_DIR
        )

    def clear(self, staging_only: bool = False) -> Dict[str, str]:
        if staging_only:
            self.store.clear_staging()
            return {"message": "Staging data cleared"}
        self.store.clear_all()
        return {"message": "All data cleared"}


def setup_logging(level: str = "INFO") -> None:
    """
    Configure structured JSON logging for production observability.

    Sets up structlog with:
    - Timestamp formatting
    - Log level inclusion
    - Stack trace rendering
    - Exception info formatting
    - JSON output for log aggregation
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Marketplace Settlement Reconciliation System.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py upload order ORDER.csv --period 2025-01
  python main.py upload payment PAYMENT.csv
  python main.py reconcile --period 2025-01
  python main.py table --status Delivered --page 2
  python main.py export --period 2025-01
        """,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    upload = commands.add_parser("upload", help="Upload a marketplace CSV export")
    upload.add_argument(
        "dataset",
        choices=sorted(UPLOAD_ALIASES) + [d.value for d in DatasetType],
        help="Dataset type of the file",
    )
    upload.add_argument("file", type=Path, help="Path to the CSV file")
    upload.add_argument("--period", help="Reporting month for order rows (YYYY-MM)")

    reconcile = commands.add_parser("reconcile", help="Run reconciliation for a period")
    reconcile.add_argument(
        "--period", help="Reporting month (YYYY-MM). Defaults to the current month."
    )

    summary = commands.add_parser("summary", help="Lifecycle counts and totals")
    summary.add_argument("--period", help="Restrict to one reporting month")

    table = commands.add_parser("table", help="Paginated reconciliation results")
    table.add_argument("--page", type=int, default=1)
    table.add_argument("--page-size", type=int, default=50)
    table.add_argument("--status", help="Item status filter ('All' for none)")
    table.add_argument("--period", help="Restrict to one reporting month")

    commands.add_parser("periods", help="List reconciled periods")
    commands.add_parser("status", help="Row counts of uploaded tables")

    export = commands.add_parser("export", help="Export results to Excel")
    export.add_argument("--period", help="Restrict to one reporting month")
    export.add_argument("--output", type=Path, help="Output .xlsx path")

    clear = commands.add_parser("clear", help="Delete stored data")
    clear.add_argument(
        "--staging-only",
        action="store_true",
        help="Only clear uploaded tables; keep reconciliation results",
    )
    return parser


def run_command(system: ReconciliationSystem, args: argparse.Namespace) -> Any:
    if args.command == "upload":
        return system.upload(args.dataset, args.file, period=args.period)
    if args.command == "reconcile":
        return system.reconcile(args.period)
    if args.command == "summary":
        return system.summary(args.period)
    if args.command == "table":
        return system.table(args.page, args.page_size, args.status, args.period)
    if args.command == "periods":
        return system.periods()
    if args.command == "status":
        return system.upload_status()
    if args.command == "export":
        return {"path": str(system.export(args.period, args.output))}
    if args.command == "clear":
        return system.clear(staging_only=args.staging_only)
    raise ValueError(f"Unknown command {args.command}")


def main(argv: Optional[List[str]] = None, system: ReconciliationSystem = None) -> int:
    """CLI entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(SETTINGS.LOG_LEVEL)

    try:
        if system is None:
            if SETTINGS.METRICS_ENABLED:
                metrics.port = SETTINGS.METRICS_PORT
                metrics.start_metrics_server()
            system = ReconciliationSystem()
        output = run_command(system, args)
    except (ParseError, DataValidationError, FileNotFoundError) as e:
        logger.warning("Request rejected", command=args.command, error=str(e))
        print(json.dumps({"error": str(e)}))
        return 2
    except ReconciliationError as e:
        logger.error("Command failed", command=args.command, error=str(e))
        print(json.dumps({"error": str(e)}))
        return 1

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
