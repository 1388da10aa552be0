"""
database_manager.py

## PostgreSQL Dataset Store

This module provides the **DatabaseManager** class, handling all data persistence
for the settlement reconciliation system: five raw upload tables keyed by
`order_line_id` and the period-scoped `reconciliation_results` table. Key
features include **upsert-by-key** ingestion, **bulk insertion** using
`psycopg2.extras.execute_values`, and a **single-transaction, advisory-locked**
replacement of a period's results.

Driver errors are re-raised as `StorageError` (or `TransientReadError` for
connection-level failures) carrying the driver message verbatim.
"""

import os
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import RealDictCursor, execute_values
from structlog import get_logger

from exceptions import StorageError, TransientReadError
from field_mapper import DatasetType
from metrics import track_duration
from models import ReconciliationResult, Settings

logger = get_logger()

# Column order matters: order_line_id always comes first.
DATASET_COLUMNS: Dict[DatasetType, Tuple[str, ...]] = {
    DatasetType.ORDERS: (
        "order_line_id", "order_release_id", "order_status", "final_amount",
        "total_mrp", "discount", "delivered_on", "cancelled_on",
        "return_creation_date", "sku_code", "style_name", "brand", "period",
    ),
    DatasetType.CANCELLATIONS: (
        "order_line_id", "order_release_id", "cancellation_reason",
        "cancellation_type", "cancellation_date",
    ),
    DatasetType.RETURNS: (
        "order_line_id", "order_release_id", "return_id", "return_reason",
        "status", "return_created_date", "refunded_date",
    ),
    DatasetType.RETURN_CHARGES: (
        "order_line_id", "order_release_id", "return_type",
        "settlement_amount", "actual_settlement",
    ),
    DatasetType.PAYMENTS: (
        "order_line_id", "order_release_id", "customer_paid_amount",
        "seller_product_amount", "expected_settlement", "actual_settlement",
        "pending_settlement", "commission", "logistics_deduction",
    ),
}

RESULT_COLUMNS: Tuple[str, ...] = (
    "order_line_id", "order_release_id", "sku_code", "style_name",
    "item_status", "misc_type", "final_amount", "customer_paid_amount",
    "expected_settlement", "actual_settlement", "return_charge",
    "net_settlement", "difference", "customer_difference",
    "reconciliation_status", "period",
)

RESULTS_TABLE = "reconciliation_results"

# Raw tables, children first so clears never trip foreign keys added later.
STAGING_TABLES: Tuple[DatasetType, ...] = (
    DatasetType.RETURN_CHARGES,
    DatasetType.PAYMENTS,
    DatasetType.RETURNS,
    DatasetType.CANCELLATIONS,
    DatasetType.ORDERS,
)


class DatabaseManager:
    """PostgreSQL-backed dataset store for raw uploads and reconciliation results."""

    def __init__(self, settings: Settings = None):
        """Initializes database configuration from provided Settings or environment variables."""
        settings = settings or Settings()
        self.db_url = settings.database_url
        self.connect_timeout = settings.DB_CONNECT_TIMEOUT
        self.batch_size = settings.RECONCILIATION_BATCH_SIZE
        logger.info(
            "Database connection configured",
            host=settings.DB_HOST,
            port=settings.DB_PORT,
            dbname=settings.DB_NAME,
        )

        # Auto-initialize database schema if tables don't exist
        self._initialize_database()

    @contextmanager
    def get_connection(self):
        """
        Provides a transactionally safe database connection.

        The connection is rolled back on any exception and closed when exiting
        the context. Driver errors surface as StorageError with the original
        message; the driver exception is chained.
        """
        conn = None
        try:
            conn = psycopg2.connect(self.db_url, connect_timeout=self.connect_timeout)
            conn.autocommit = False  # Enforce explicit transaction control
            yield conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            self._rollback(conn)
            logger.error(
                "Database connection failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise TransientReadError(str(exc)) from exc
        except psycopg2.Error as exc:
            self._rollback(conn)
            logger.error(
                "Database transaction failed (psycopg2 error)",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise StorageError(str(exc)) from exc
        except Exception:
            self._rollback(conn)
            raise
        finally:
            if conn:
                conn.close()

    @staticmethod
    def _rollback(conn) -> None:
        if conn is None or conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            logger.warning("Rollback failed", error=str(exc))

    # =========================================================================
    # RAW UPLOAD TABLES
    # =========================================================================

    @track_duration("upsert_rows")
    def upsert_rows(self, dataset: DatasetType, rows: List[Dict[str, Any]]) -> int:
        """
        Upserts normalized rows into a raw table keyed by order_line_id.

        Columns present in a row overwrite the stored values; columns the upload
        did not carry are left untouched. Rows must already be de-duplicated by
        key (see ingestion.merge_by_order_line_id).
        """
        if not rows:
            return 0

        allowed = DATASET_COLUMNS[dataset]
        groups: Dict[Tuple[str, ...], List[tuple]] = {}
        for row in rows:
            columns = tuple(column for column in allowed if column in row)
            groups.setdefault(columns, []).append(tuple(row[c] for c in columns))

        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                for columns, values in groups.items():
                    query = self._build_upsert_query(dataset.value, columns)
                    execute_values(cursor, query, values, page_size=self.batch_size)
            conn.commit()

        logger.info("Upserted rows", table=dataset.value, count=len(rows))
        return len(rows)

    @staticmethod
    def _build_upsert_query(table: str, columns: Sequence[str]) -> sql.Composed:
        updates = [column for column in columns if column != "order_line_id"]
        if updates:
            assignments = sql.SQL(", ").join(
                [
                    sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(column))
                    for column in updates
                ]
            )
            action = sql.SQL("UPDATE SET {assignments}, updated_at = CURRENT_TIMESTAMP").format(
                assignments=assignments
            )
        else:
            action = sql.SQL("NOTHING")

        return sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES %s "
            "ON CONFLICT (order_line_id) DO {action}"
        ).format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join([sql.Identifier(c) for c in columns]),
            action=action,
        )

    @track_duration("fetch_table")
    def fetch_table(
        self, dataset: DatasetType, period: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Reads a raw table in full; orders may be restricted to one period."""
        query = sql.SQL("SELECT * FROM {table}").format(table=sql.Identifier(dataset.value))
        params: Tuple[Any, ...] = ()
        if period is not None and dataset is DatasetType.ORDERS:
            query = query + sql.SQL(" WHERE period = %s")
            params = (period,)
        query = query + sql.SQL(" ORDER BY order_line_id")

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]

    def table_counts(self) -> Dict[str, int]:
        """Row counts of the raw upload tables."""
        counts: Dict[str, int] = {}
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                for dataset in DatasetType:
                    cursor.execute(
                        sql.SQL("SELECT COUNT(*) FROM {table}").format(
                            table=sql.Identifier(dataset.value)
                        )
                    )
                    counts[dataset.value] = cursor.fetchone()[0]
        return counts

    # =========================================================================
    # RECONCILIATION RESULTS
    # =========================================================================

    @track_duration("replace_period_results")
    def replace_period_results(
        self, period: str, results: List[ReconciliationResult]
    ) -> int:
        """
        Replaces every result row for `period` with `results`.

        The delete and all insert batches share one transaction guarded by a
        transaction-scoped advisory lock on the period, so concurrent runs for
        the same period serialize and a failure leaves the old rows in place.
        Other periods are never touched.
        """
        values = [self._result_values(result) for result in results]
        insert_query = sql.SQL("INSERT INTO {table} ({columns}) VALUES %s").format(
            table=sql.Identifier(RESULTS_TABLE),
            columns=sql.SQL(", ").join([sql.Identifier(c) for c in RESULT_COLUMNS]),
        )

        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))",
                    (f"{RESULTS_TABLE}:{period}",),
                )
                cursor.execute(
                    "DELETE FROM reconciliation_results WHERE period = %s", (period,)
                )
                deleted = cursor.rowcount
                for start in range(0, len(values), self.batch_size):
                    batch = values[start:start + self.batch_size]
                    execute_values(cursor, insert_query, batch, page_size=self.batch_size)
            conn.commit()

        logger.info(
            "Replaced reconciliation results",
            period=period,
            deleted_count=deleted,
            inserted_count=len(values),
        )
        return len(values)

    @staticmethod
    def _result_values(result: ReconciliationResult) -> tuple:
        data = result.model_dump(mode="python")
        return tuple(
            data[column].value if isinstance(data[column], Enum) else data[column]
            for column in RESULT_COLUMNS
        )

    @staticmethod
    def _result_filters(
        item_status: Optional[str], period: Optional[str]
    ) -> Tuple[sql.Composable, Tuple[Any, ...]]:
        clauses: List[sql.Composable] = []
        params: List[Any] = []
        if item_status and item_status != "All":
            clauses.append(sql.SQL("item_status = %s"))
            params.append(item_status)
        if period:
            clauses.append(sql.SQL("period = %s"))
            params.append(period)
        if not clauses:
            return sql.SQL(""), ()
        return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), tuple(params)

    @track_duration("fetch_results")
    def fetch_results(
        self,
        page: int = 1,
        page_size: int = 50,
        item_status: Optional[str] = None,
        period: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Returns one page of results plus the total matching row count."""
        page = max(page, 1)
        where, params = self._result_filters(item_status, period)
        count_query = sql.SQL("SELECT COUNT(*) AS total FROM reconciliation_results") + where
        page_query = (
            sql.SQL("SELECT * FROM reconciliation_results")
            + where
            + sql.SQL(" ORDER BY created_at DESC, order_line_id LIMIT %s OFFSET %s")
        )

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(count_query, params)
                total = cursor.fetchone()["total"]
                cursor.execute(page_query, params + (page_size, (page - 1) * page_size))
                return [dict(row) for row in cursor.fetchall()], total

    @track_duration("fetch_all_results")
    def fetch_all_results(self, period: Optional[str] = None) -> List[Dict[str, Any]]:
        """All results (optionally one period), ordered by order line id."""
        where, params = self._result_filters(None, period)
        query = (
            sql.SQL("SELECT * FROM reconciliation_results")
            + where
            + sql.SQL(" ORDER BY order_line_id")
        )
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]

    @track_duration("fetch_summary_rows")
    def fetch_summary_rows(self, period: Optional[str] = None) -> List[Dict[str, Any]]:
        """Status and amount columns needed for the summary aggregate."""
        where, params = self._result_filters(None, period)
        query = (
            sql.SQL(
                "SELECT item_status, reconciliation_status, customer_paid_amount, "
                "net_settlement, difference FROM reconciliation_results"
            )
            + where
        )
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]

    def list_periods(self) -> List[str]:
        """Distinct non-null result periods, newest first."""
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT DISTINCT period FROM reconciliation_results "
                    "WHERE period IS NOT NULL ORDER BY period DESC"
                )
                return [row[0] for row in cursor.fetchall()]

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def clear_staging(self) -> None:
        """Empties the raw upload tables; historical results are kept."""
        self._delete_all(STAGING_TABLES)
        logger.warning("Cleared staging tables")

    def clear_all(self) -> None:
        """Empties every table, results included."""
        self._delete_all((RESULTS_TABLE,) + STAGING_TABLES)
        logger.warning("Cleared all tables")

    def _delete_all(self, tables: Iterable[Any]) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cursor:
                for table in tables:
                    name = table.value if isinstance(table, DatasetType) else table
                    cursor.execute(
                        sql.SQL("DELETE FROM {table}").format(table=sql.Identifier(name))
                    )
            conn.commit()

    def _initialize_database(self):
        """Initialize database schema if tables don't exist."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(
                        "SELECT EXISTS (SELECT FROM information_schema.tables "
                        "WHERE table_name = 'reconciliation_results')"
                    )
                    table_exists = cursor.fetchone()[0]

                    if table_exists:
                        logger.info("Database schema already exists")
                        return

                    logger.info("Database tables not found, initializing schema...")
                    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
                    possible_paths = [
                        os.path.join(base_dir, "setup.sql"),  # Local dev
                        "/app/setup.sql",  # Docker container
                    ]
                    setup_sql_path = next(
                        (path for path in possible_paths if os.path.exists(path)), None
                    )
                    if setup_sql_path is None:
                        logger.error("setup.sql not found", searched=possible_paths)
                        return

                    with open(setup_sql_path, "r") as f:
                        setup_sql = f.read()
                    if not setup_sql.strip():
                        logger.error("setup.sql file is empty", path=setup_sql_path)
                        return
                    cursor.execute(setup_sql)
                    conn.commit()
                    logger.info("Database schema initialized", path=setup_sql_path)
        except (StorageError, OSError) as e:
            logger.error("Failed to initialize database schema", error=str(e))

    def health_check(self) -> bool:
        """Performs a database connectivity check."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute("SELECT 1")
                    return True
        except StorageError as e:
            logger.error("Database health check failed", error=str(e))
            return False
