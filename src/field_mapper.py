"""
Column mapping and value coercion for marketplace CSV exports.

Each export type names its columns differently (and inconsistently across
downloads), so every raw row is projected onto a canonical field set before it
reaches the dataset store.
"""

from __future__ import annotations

import math
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

import pandas as pd


class DatasetType(str, Enum):
    """Raw upload categories; the value doubles as the store table name."""

    ORDERS = "orders"
    CANCELLATIONS = "cancellations"
    RETURNS = "returns"
    RETURN_CHARGES = "return_charges"
    PAYMENTS = "payments"

    @property
    def field_map(self) -> Dict[str, str]:
        return FIELD_MAPS[self]


ORDER_FIELD_MAP: Dict[str, str] = {
    "order line id": "order_line_id",
    "order release id": "order_release_id",
    "order status": "order_status",
    "final amount": "final_amount",
    "total mrp": "total_mrp",
    "discount": "discount",
    "delivered on": "delivered_on",
    "cancelled on": "cancelled_on",
    "return creation date": "return_creation_date",
    "seller sku code": "sku_code",
    "style name": "style_name",
    "brand": "brand",
}

CANCELLATION_FIELD_MAP: Dict[str, str] = {
    "order line id": "order_line_id",
    "order release id": "order_release_id",
    "cancellation reason": "cancellation_reason",
    "cancellation type": "cancellation_type",
    "order cancellation date": "cancellation_date",
}

RETURN_FIELD_MAP: Dict[str, str] = {
    "order_line_id": "order_line_id",
    "order_id": "order_release_id",
    "return_reason": "return_reason",
    "status": "status",
    "return_created_date": "return_created_date",
    "refunded_date": "refunded_date",
    "return_id": "return_id",
}

PAYMENT_FIELD_MAP: Dict[str, str] = {
    "order_line_id": "order_line_id",
    "order_release_id": "order_release_id",
    "customer_paid_amt": "customer_paid_amount",
    "seller_product_amount": "seller_product_amount",
    "total_expected_settlement": "expected_settlement",
    "total_actual_settlement": "actual_settlement",
    "amount_pending_settlement": "pending_settlement",
    "total_commission": "commission",
    "total_logistics_deduction": "logistics_deduction",
}

RETURN_CHARGE_FIELD_MAP: Dict[str, str] = {
    "order_line_id": "order_line_id",
    "order_release_id": "order_release_id",
    "return_type": "return_type",
    "total_settlement": "settlement_amount",
    "total_actual_settlement": "actual_settlement",
}

FIELD_MAPS: Dict[DatasetType, Dict[str, str]] = {
    DatasetType.ORDERS: ORDER_FIELD_MAP,
    DatasetType.CANCELLATIONS: CANCELLATION_FIELD_MAP,
    DatasetType.RETURNS: RETURN_FIELD_MAP,
    DatasetType.RETURN_CHARGES: RETURN_CHARGE_FIELD_MAP,
    DatasetType.PAYMENTS: PAYMENT_FIELD_MAP,
}

NUMERIC_FIELDS: FrozenSet[str] = frozenset(
    {
        "final_amount",
        "total_mrp",
        "discount",
        "customer_paid_amount",
        "seller_product_amount",
        "expected_settlement",
        "actual_settlement",
        "pending_settlement",
        "commission",
        "logistics_deduction",
        "settlement_amount",
    }
)

DATE_FIELDS: FrozenSet[str] = frozenset(
    {
        "delivered_on",
        "cancelled_on",
        "return_creation_date",
        "cancellation_date",
        "return_created_date",
        "refunded_date",
    }
)

_NULL_DATE_TOKENS = frozenset({"", "na", "n/a"})
_NON_NUMERIC = re.compile(r"[^0-9.\-]+")
_LEADING_NUMBER = re.compile(r"-?(?:\d+\.?\d*|\.\d+)")


def canonical_header(header: Any) -> str:
    """Header key used for matching: trimmed and lower-cased."""
    return str(header).strip().lower()


def parse_amount(value: Any) -> Decimal:
    """
    Coerce a raw monetary value to Decimal.

    Currency symbols, thousands separators and any other non-numeric characters
    are stripped. Empty or unparseable input yields zero.
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return Decimal("0")
        return Decimal(str(value))

    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return Decimal("0")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        # e.g. "1.2.3" or "12-34": keep the leading number only
        match = _LEADING_NUMBER.match(cleaned)
        return Decimal(match.group()) if match else Decimal("0")


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a raw date cell; blank, NA and unparseable values become None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.lower() in _NULL_DATE_TOKENS:
        return None
    try:
        parsed = pd.to_datetime(text, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def _parse_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip()


def normalize_row(
    row: Mapping[str, Any], field_map: Mapping[str, str]
) -> Dict[str, Any]:
    """
    Project a raw CSV row onto canonical field names.

    Only mapped columns are kept. A mapped column that the row does not carry
    is left out of the result entirely, so callers can tell "no data" apart
    from an explicit null. Never raises.
    """
    if not isinstance(row, Mapping) or not isinstance(field_map, Mapping):
        return {}

    header_lookup = {canonical_header(key): key for key in row.keys()}
    normalized: Dict[str, Any] = {}

    for source_header, field_name in field_map.items():
        actual_key = header_lookup.get(canonical_header(source_header))
        if actual_key is None:
            continue
        value = row[actual_key]

        if field_name in NUMERIC_FIELDS:
            normalized[field_name] = parse_amount(value)
        elif field_name in DATE_FIELDS:
            normalized[field_name] = parse_date(value)
        else:
            normalized[field_name] = _parse_text(value)

    return normalized


def normalize_rows(
    rows: List[Mapping[str, Any]], dataset: DatasetType
) -> List[Dict[str, Any]]:
    """Normalize every row of an upload with the dataset's field map."""
    field_map = dataset.field_map
    return [normalize_row(row, field_map) for row in rows]
