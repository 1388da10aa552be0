"""
Lifecycle status rules for order lines.

The rules are evaluated in a fixed priority order and the first match wins:
cancellation-table membership, explicit RTO status, return-table membership,
the order status code, and finally the delivered/cancelled dates.
"""

from __future__ import annotations

from typing import Optional, Tuple

from models import ItemStatus, MiscType, OrderLine

Classification = Tuple[ItemStatus, Optional[MiscType]]


def normalize_status_code(raw: Optional[str]) -> Optional[str]:
    """
    Upper-case and trim a raw order status.

    Only a missing or empty value counts as absent. A whitespace-only status
    is still a status and normalizes to "", which maps to In Transit.
    """
    if raw is None or raw == "":
        return None
    return str(raw).strip().upper()


def _delivered(has_settlement_data: bool) -> Classification:
    # Delivered with nothing settled yet needs a manual claim.
    if has_settlement_data:
        return ItemStatus.DELIVERED, None
    return ItemStatus.MISCELLANEOUS, MiscType.DELIVERED


def status_from_code(code: str, has_settlement_data: bool) -> Classification:
    """Map a normalized, non-empty order status code to a lifecycle status."""
    if code == "C":
        return _delivered(has_settlement_data)
    if code == "F":
        return ItemStatus.CANCELLED, None
    if code == "RTO":
        return ItemStatus.RTO, None
    if "DELIVER" in code:
        return _delivered(has_settlement_data)
    if "CANCEL" in code:
        return ItemStatus.CANCELLED, None
    if "RTO" in code:
        return ItemStatus.RTO, None
    if "RETURN" in code:
        return ItemStatus.RETURNED, None
    return ItemStatus.IN_TRANSIT, None


def classify_item_status(
    order: OrderLine,
    is_cancelled: bool,
    is_returned: bool,
    has_payment: bool,
    has_return_charge: bool,
) -> Classification:
    """
    Assign a lifecycle status (and misc type, for Miscellaneous lines).

    Cancellation-table membership and an explicit RTO status override
    everything else, including a conflicting return-table entry.
    """
    has_settlement_data = has_payment or has_return_charge
    code = normalize_status_code(order.order_status)

    if is_cancelled:
        return ItemStatus.CANCELLED, None
    if code == "RTO":
        return ItemStatus.RTO, None
    if is_returned:
        if has_return_charge:
            return ItemStatus.RETURNED, None
        return ItemStatus.MISCELLANEOUS, MiscType.RETURN
    if code is not None:
        return status_from_code(code, has_settlement_data)
    if order.delivered_on is not None:
        return _delivered(has_settlement_data)
    if order.cancelled_on is not None:
        return ItemStatus.CANCELLED, None
    return ItemStatus.IN_TRANSIT, None
