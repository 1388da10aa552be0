"""
models.py

Defines all core data models for the Marketplace Settlement Reconciliation System.
Models are built using Pydantic for robust validation, type safety, and serialization.
Monetary fields use Decimal; order line identifiers are always kept as strings.
"""

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from exceptions import DataValidationError

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def current_period(today: Optional[date] = None) -> str:
    """Reporting period (YYYY-MM) for the current calendar month."""
    return (today or date.today()).strftime("%Y-%m")


def validate_period(period: str) -> str:
    """Return the period unchanged, or raise if it is not a YYYY-MM month key."""
    if not isinstance(period, str) or not PERIOD_PATTERN.match(period.strip()):
        raise DataValidationError(f"Invalid period {period!r}; expected YYYY-MM")
    return period.strip()


# -----------------------------------------------------------------------------
# 1. System Configuration Model
# -----------------------------------------------------------------------------
class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables or .env files.

    This model centralizes all settings for database, reconciliation and reporting.
    """

    # Database Configuration
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: int = Field(default=5432, description="Database port")
    DB_NAME: str = Field(default="settlement_reconciliation", description="Database name")
    DB_USER: str = Field(default="postgres", description="Database user")
    DB_PASSWORD: str = Field(default="", description="Database password")
    DB_URL: Optional[str] = Field(
        None, description="Database connection URL (overrides individual params)"
    )
    DB_CONNECT_TIMEOUT: int = Field(default=10, description="Connect timeout in seconds")

    # Reconciliation Configuration
    RECONCILIATION_BATCH_SIZE: int = Field(
        default=500, description="Rows per insert batch for reconciliation results"
    )
    MATCH_TOLERANCE: Decimal = Field(
        default=Decimal("1"), description="Absolute difference below which a line is Matched"
    )
    SUMMARY_MAX_RETRIES: int = Field(
        default=3, description="Retries for transient summary read failures"
    )
    SUMMARY_RETRY_BACKOFF_SECONDS: float = Field(
        default=1.0, description="Linear backoff step between summary retries"
    )
    SOURCE_READ_WORKERS: int = Field(
        default=5, description="Concurrent source-table reads per reconciliation"
    )

    # Application Configuration
    REPORT_OUTPUT_DIR: Path = Field(
        default=Path("local_reports"), description="Directory for report outputs"
    )
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    METRICS_ENABLED: bool = Field(default=False, description="Expose Prometheus metrics")
    METRICS_PORT: int = Field(default=8000, description="Prometheus metrics port")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        """
        Construct database URL from individual components or return DB_URL if provided.
        """
        if self.DB_URL:
            return self.DB_URL
        password = quote_plus(self.DB_PASSWORD) if self.DB_PASSWORD else ""
        return f"postgresql://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"


# -----------------------------------------------------------------------------
# 2. Closed Status Vocabularies
# -----------------------------------------------------------------------------
class ItemStatus(str, Enum):
    """Lifecycle status assigned to an order line."""

    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"
    RTO = "RTO"
    IN_TRANSIT = "In Transit"
    MISCELLANEOUS = "Miscellaneous"


class MiscType(str, Enum):
    """Lifecycle event behind a Miscellaneous order line."""

    RETURN = "Return"
    DELIVERED = "Delivered"


class ReconciliationStatus(str, Enum):
    """Settlement-match verdict for an order line."""

    MATCHED = "Matched"
    UNDER_SETTLED = "Under Settled"
    OVER_SETTLED = "Over Settled"
    PENDING = "Pending"


# -----------------------------------------------------------------------------
# 3. Raw Dataset Records
# -----------------------------------------------------------------------------
class _SourceRecord(BaseModel):
    """Shared shape of every raw upload row: keyed by an opaque order line id."""

    model_config = ConfigDict(extra="ignore")

    order_line_id: str = Field(..., description="Order line identifier (opaque string)")
    order_release_id: Optional[str] = Field(None, description="Order release identifier")

    @field_validator("order_line_id", "order_release_id", mode="before")
    @classmethod
    def _as_text(cls, value):
        if value is None:
            return value
        return str(value).strip()


class OrderLine(_SourceRecord):
    """
    A single shippable unit within a customer order.

    This is the atomic unit of reconciliation; one result is produced per order line.
    """

    sku_code: Optional[str] = None
    style_name: Optional[str] = None
    brand: Optional[str] = None
    order_status: Optional[str] = Field(None, description="Coded or free-text status")
    final_amount: Decimal = Field(default=Decimal("0"))
    total_mrp: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    delivered_on: Optional[datetime] = None
    cancelled_on: Optional[datetime] = None
    return_creation_date: Optional[datetime] = None
    period: Optional[str] = Field(None, description="Reporting month (YYYY-MM)")

    @field_validator("final_amount", mode="before")
    @classmethod
    def _missing_amount_is_zero(cls, value):
        return Decimal("0") if value is None else value


class Cancellation(_SourceRecord):
    """Cancellation row; presence alone marks the order line as cancelled."""

    cancellation_reason: Optional[str] = None
    cancellation_type: Optional[str] = None
    cancellation_date: Optional[datetime] = None


class ReturnRecord(_SourceRecord):
    """Return row; presence marks a return event for the order line."""

    return_id: Optional[str] = None
    return_reason: Optional[str] = None
    status: Optional[str] = Field(None, description="RTO or ordinary return")
    return_created_date: Optional[datetime] = None
    refunded_date: Optional[datetime] = None


class ReturnCharge(_SourceRecord):
    """Settlement adjustment for a return; actual_settlement is typically negative."""

    return_type: Optional[str] = None
    settlement_amount: Optional[Decimal] = None
    actual_settlement: Optional[Decimal] = None


class Payment(_SourceRecord):
    """Forward settlement of an order line, independent of return charges."""

    customer_paid_amount: Optional[Decimal] = None
    seller_product_amount: Optional[Decimal] = None
    expected_settlement: Optional[Decimal] = None
    actual_settlement: Optional[Decimal] = None
    pending_settlement: Optional[Decimal] = None
    commission: Optional[Decimal] = None
    logistics_deduction: Optional[Decimal] = None


# -----------------------------------------------------------------------------
# 4. Reconciliation Models
# -----------------------------------------------------------------------------
class ReconciliationResult(BaseModel):
    """
    Derived reconciliation row, one per order line in a period.

    Regenerated in full on every reconciliation run for its period.
    """

    order_line_id: str = Field(..., description="Order line identifier")
    order_release_id: Optional[str] = None
    sku_code: Optional[str] = None
    style_name: Optional[str] = None
    item_status: ItemStatus
    misc_type: Optional[MiscType] = None
    final_amount: Decimal = Field(default=Decimal("0"))
    customer_paid_amount: Decimal = Field(default=Decimal("0"))
    expected_settlement: Decimal = Field(default=Decimal("0"))
    actual_settlement: Decimal = Field(default=Decimal("0"))
    return_charge: Decimal = Field(default=Decimal("0"))
    net_settlement: Decimal = Field(default=Decimal("0"))
    difference: Decimal = Field(default=Decimal("0"))
    customer_difference: Decimal = Field(default=Decimal("0"))
    reconciliation_status: ReconciliationStatus
    period: str = Field(..., description="Reporting month the batch was computed for")


class ReconcileOutcome(BaseModel):
    """Result of a reconcile call: row count and item status breakdown."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    period: str
    count: int
    status_counts: Dict[str, int] = Field(default_factory=dict)


class ReconciliationSummary(BaseModel):
    """
    Lifecycle counts and monetary totals over reconciliation results.

    Serialized with camelCase keys (totalOrders, inTransit, ...) for consumers.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    period: Optional[str] = None
    total_orders: int = 0
    delivered: int = 0
    cancelled: int = 0
    returned: int = 0
    rto: int = 0
    in_transit: int = 0
    miscellaneous: int = 0
    matched: int = 0
    under_settled: int = 0
    over_settled: int = 0
    pending: int = 0
    total_customer_paid: Decimal = Field(default=Decimal("0"))
    total_settled: Decimal = Field(default=Decimal("0"))
    total_difference: Decimal = Field(default=Decimal("0"))
