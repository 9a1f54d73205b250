from typing import Any, Iterable, Optional, Tuple

from services.reimbursement_models import ReimbursementRecord, ReimbursementType

# Checked in order, first hit wins. "WAREHOUSE_LOST" therefore lands in LOST, and
# "WAREHOUSE_DAMAGE" in DAMAGED, before the bare WAREHOUSE group is reached.
REASON_KEYWORD_GROUPS: Tuple[Tuple[Tuple[str, ...], ReimbursementType], ...] = (
    (("LOST", "MISSING"), ReimbursementType.LOST),
    (("DAMAGE", "DEFECTIVE"), ReimbursementType.DAMAGED),
    (("CUSTOMER_RETURN", "RETURN"), ReimbursementType.CUSTOMER_RETURN),
    (("FEE", "OVERCHARGE"), ReimbursementType.FEE_CORRECTION),
    (("INBOUND", "RECEIVE"), ReimbursementType.INBOUND_SHIPMENT),
    (("REMOVAL", "DISPOSAL"), ReimbursementType.REMOVAL_ORDER),
    (("WAREHOUSE",), ReimbursementType.WAREHOUSE_DAMAGE),
    (("INVENTORY", "RECONCILIATION"), ReimbursementType.INVENTORY_DIFFERENCE),
)

LOST_WAREHOUSE_KEYWORDS = ("lost_warehouse", "lost-warehouse", "lost warehouse")


def classify_reason(reason: Optional[Any]) -> ReimbursementType:
    """Map a free-form Amazon reason code or description to a reimbursement category."""
    if reason is None:
        return ReimbursementType.OTHER
    text = str(reason).strip().upper()
    if not text:
        return ReimbursementType.OTHER
    for keywords, category in REASON_KEYWORD_GROUPS:
        if any(keyword in text for keyword in keywords):
            return category
    return ReimbursementType.OTHER


def _mentions_lost_warehouse(values: Iterable[Optional[str]]) -> bool:
    for value in values:
        lowered = (value or "").lower()
        if any(keyword in lowered for keyword in LOST_WAREHOUSE_KEYWORDS):
            return True
    return False


def is_lost_warehouse(record: ReimbursementRecord) -> bool:
    if record.reimbursement_type == ReimbursementType.LOST:
        return True
    return _mentions_lost_warehouse((record.reason_code, record.reason_description))
