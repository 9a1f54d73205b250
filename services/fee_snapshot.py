"""
Fee / price lookup for expected-amount calculations.

The fee snapshot is the latest fetched FBA estimated-fees report for a scope. Lookups are
by ASIN for the ledger reconciler and by SKU for the shipment detector, which only knows
seller SKUs.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from services.reimbursement_models import FeeSnapshotItem, coerce_float

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitValue:
    sales_price: float
    fees: float
    reimbursement_per_unit: float


def _as_item(entry: Any) -> FeeSnapshotItem:
    if isinstance(entry, FeeSnapshotItem):
        return entry
    return FeeSnapshotItem.model_validate(entry)


def build_fee_map(items: Optional[Iterable[Any]], key: str = "asin") -> Dict[str, FeeSnapshotItem]:
    """
    Index a fee snapshot by ``asin`` or ``sku``.

    When a key repeats the first entry wins, mirroring how the report lists the
    active offer first. Entries without the key are ignored.
    """
    fee_map: Dict[str, FeeSnapshotItem] = {}
    for entry in items or []:
        item = _as_item(entry)
        lookup = getattr(item, key, "")
        if not lookup:
            continue
        fee_map.setdefault(lookup, item)
    return fee_map


def resolve_unit_value(
    item: Optional[FeeSnapshotItem],
    fallback_price: Optional[Any] = None,
) -> Optional[UnitValue]:
    """
    Work out what Amazon should pay per unit.

    Order: the snapshot's precomputed reimbursement per unit, then snapshot sales price
    minus fees, then ``fallback_price`` (the listing price) with zero fees. Returns None
    when none of these is available.
    """
    if item is not None:
        sales_price = item.sales_price if item.sales_price is not None else 0.0
        fees = item.total_fee
        if item.reimbursement_per_unit is not None:
            return UnitValue(sales_price, fees, item.reimbursement_per_unit)
        if item.sales_price is not None:
            return UnitValue(sales_price, fees, sales_price - fees)
    if fallback_price is not None:
        price = coerce_float(fallback_price)
        return UnitValue(price, 0.0, price)
    return None


def unit_value_or_zero(item: Optional[FeeSnapshotItem]) -> UnitValue:
    """Per-unit value for ledger reconciliation, where a missing fee entry counts as 0."""
    value = resolve_unit_value(item)
    if value is None:
        return UnitValue(0.0, 0.0, 0.0)
    return value
