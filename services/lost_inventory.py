"""
Lost-inventory reconciliation against the warehouse ledger.

Amazon's ledger records units it lost and later found in its fulfillment centres, and
the reimbursement report records what it paid for them. Whatever is lost, not found
and not reimbursed is still owed. Paid reimbursements far below the item's value are
flagged as underpaid.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from config import DEFAULT_CURRENCY, UNDERPAID_THRESHOLD_RATIO, underpaid_threshold_for
from services import reimbursement_store as store
from services.fee_snapshot import UnitValue, build_fee_map, resolve_unit_value, unit_value_or_zero
from services.ledger_aggregator import LedgerAggregate, aggregate_ledger
from services.perf import time_block
from services.reimbursement_classifier import is_lost_warehouse
from services.reimbursement_models import (
    BackendLostInventoryItem,
    ClaimStatus,
    DamagedInventoryItem,
    DamagedInventoryResult,
    DamagedInventorySummary,
    DisposedInventoryItem,
    DisposedInventoryResult,
    DisposedInventorySummary,
    LostInventoryResult,
    LostInventorySummary,
    MissingPrecondition,
    Product,
    ReimbursementRecord,
    Scope,
    ensure_utc,
)
from services.scope_lock import scope_lock

logger = logging.getLogger(__name__)

MISSING_LEDGER = "ledger_summary"


def _missing_ledger(scope: Scope) -> MissingPrecondition:
    return MissingPrecondition(
        missing=MISSING_LEDGER,
        message=f"No ledger summary has been fetched for {scope}; fetch the ledger report first.",
    )


def compute_lost_inventory(
    aggregate: LedgerAggregate,
    reimbursements: Iterable[ReimbursementRecord],
    fee_snapshot: Optional[Iterable[Any]] = None,
    underpaid_ratio: Optional[float] = None,
    now: Optional[datetime] = None,
) -> LostInventoryResult:
    ratio = UNDERPAID_THRESHOLD_RATIO if underpaid_ratio is None else underpaid_ratio
    fee_map = build_fee_map(fee_snapshot, key="asin")

    records_by_asin: Dict[str, List[ReimbursementRecord]] = {}
    for record in reimbursements or []:
        if record.status not in (ClaimStatus.APPROVED, ClaimStatus.PENDING):
            continue
        if not record.asin or not is_lost_warehouse(record):
            continue
        records_by_asin.setdefault(record.asin, []).append(record)

    items: List[BackendLostInventoryItem] = []
    for asin in sorted(set(aggregate.lost) | set(aggregate.found) | set(records_by_asin)):
        records = records_by_asin.get(asin, [])
        lost = aggregate.lost.get(asin, 0.0)
        found = aggregate.found.get(asin, 0.0)
        reimbursed = float(sum(r.quantity for r in records))
        discrepancy = lost - found - reimbursed
        if discrepancy <= 0:
            continue

        fee_item = fee_map.get(asin)
        unit = unit_value_or_zero(fee_item)
        per_unit = unit.reimbursement_per_unit
        meta = aggregate.metadata.get(asin) or {}
        item = BackendLostInventoryItem(
            asin=asin,
            sku=meta.get("sku") or (records[0].sku if records else ""),
            fnsku=meta.get("fnsku") or (records[0].fnsku if records else ""),
            lost_units=lost,
            found_units=found,
            reimbursed_units=reimbursed,
            discrepancy_units=discrepancy,
            sales_price=unit.sales_price,
            fees=unit.fees,
            reimbursement_per_unit=per_unit,
            expected_amount=discrepancy * per_unit,
            currency=fee_item.currency if fee_item else DEFAULT_CURRENCY,
        )

        paid = next((r for r in records if r.quantity > 0), None)
        if paid is not None:
            item.amount_per_unit = paid.amount / paid.quantity
            if item.amount_per_unit < per_unit * ratio:
                item.is_underpaid = True
                item.underpaid_expected_amount = (per_unit - item.amount_per_unit) * paid.quantity
        items.append(item)

    result = LostInventoryResult(
        items=items,
        summary=summarize_lost_inventory(items),
        calculated_at=ensure_utc(now) if now else datetime.now(timezone.utc),
    )
    logger.info(
        "[LostInventory] %s discrepant ASINs, expected %.2f, %s underpaid",
        len(items),
        result.summary.total_expected_amount,
        result.summary.total_underpaid_items,
    )
    return result


def summarize_lost_inventory(items: Iterable[BackendLostInventoryItem]) -> LostInventorySummary:
    summary = LostInventorySummary()
    for item in items:
        summary.total_discrepancy_units += item.discrepancy_units
        summary.total_expected_amount += item.expected_amount
        summary.total_lost_units += item.lost_units
        summary.total_found_units += item.found_units
        summary.total_reimbursed_units += item.reimbursed_units
        if item.is_underpaid:
            summary.total_underpaid_items += 1
            summary.total_underpaid_expected_amount += item.underpaid_expected_amount
    return summary


def reconcile_lost_inventory(
    scope: Scope,
    now: Optional[datetime] = None,
) -> Union[LostInventoryResult, MissingPrecondition]:
    """
    Recompute and persist the lost-inventory line items for one scope.

    Returns MissingPrecondition, writing nothing, when the latest ledger snapshot is
    missing or empty.
    """
    with time_block("reconcile_lost_inventory", scope), scope_lock(scope, owner="reconcile_lost_inventory"):
        ledger_rows = store.get_latest_ledger_snapshot(scope)
        if not ledger_rows:
            logger.warning("[LostInventory] No ledger rows for %s; nothing reconciled", scope)
            return _missing_ledger(scope)

        fee_snapshot = store.get_latest_fee_snapshot(scope) or []
        if not fee_snapshot:
            logger.warning("[LostInventory] No fee snapshot for %s; expected amounts will be 0", scope)
        reimbursements = store.get_approved_reimbursements(scope)

        result = compute_lost_inventory(
            aggregate_ledger(ledger_rows),
            reimbursements,
            fee_snapshot,
            underpaid_ratio=underpaid_threshold_for(scope.country),
            now=now,
        )
        store.save_lost_inventory_result(scope, result)
        return result


def compute_damaged_inventory(
    aggregate: LedgerAggregate,
    fee_snapshot: Optional[Iterable[Any]] = None,
) -> DamagedInventoryResult:
    fee_map = build_fee_map(fee_snapshot, key="asin")
    items: List[DamagedInventoryItem] = []
    for asin in sorted(aggregate.damaged):
        damaged = aggregate.damaged[asin]
        if damaged <= 0:
            continue
        fee_item = fee_map.get(asin)
        unit = unit_value_or_zero(fee_item)
        meta = aggregate.metadata.get(asin) or {}
        items.append(
            DamagedInventoryItem(
                asin=asin,
                sku=meta.get("sku", ""),
                fnsku=meta.get("fnsku", ""),
                damaged_units=damaged,
                sales_price=unit.sales_price,
                fees=unit.fees,
                reimbursement_per_unit=unit.reimbursement_per_unit,
                expected_amount=damaged * unit.reimbursement_per_unit,
                currency=fee_item.currency if fee_item else DEFAULT_CURRENCY,
            )
        )
    summary = DamagedInventorySummary(
        total_damaged_units=sum(i.damaged_units for i in items),
        total_expected_amount=sum(i.expected_amount for i in items),
    )
    return DamagedInventoryResult(items=items, summary=summary)


def calculate_damaged_inventory(scope: Scope) -> Union[DamagedInventoryResult, MissingPrecondition]:
    """Damaged units valued at the fee snapshot; computed on request, never stored."""
    ledger_rows = store.get_latest_ledger_snapshot(scope)
    if not ledger_rows:
        return _missing_ledger(scope)
    fee_snapshot = store.get_latest_fee_snapshot(scope) or []
    return compute_damaged_inventory(aggregate_ledger(ledger_rows), fee_snapshot)


def compute_disposed_inventory(
    aggregate: LedgerAggregate,
    fee_snapshot: Optional[Iterable[Any]] = None,
    products: Optional[Iterable[Any]] = None,
) -> DisposedInventoryResult:
    """
    Value units Amazon disposed of at what it should have paid for them.

    Fees are looked up by FNSKU, then ASIN. When the fee snapshot has no price for the
    ASIN the listing price is used with zero fees.
    """
    by_fnsku = build_fee_map(fee_snapshot, key="fnsku")
    by_asin = build_fee_map(fee_snapshot, key="asin")
    prices: Dict[str, float] = {}
    for entry in products or []:
        product = entry if isinstance(entry, Product) else Product.model_validate(entry)
        if product.asin and product.price:
            prices.setdefault(product.asin, product.price)

    items: List[DisposedInventoryItem] = []
    for asin in sorted(aggregate.disposed):
        disposed = aggregate.disposed[asin]
        if disposed <= 0:
            continue
        meta = aggregate.metadata.get(asin) or {}
        fee_item = by_fnsku.get(meta.get("fnsku") or "") or by_asin.get(asin)
        unit = resolve_unit_value(fee_item, fallback_price=prices.get(asin)) or UnitValue(0.0, 0.0, 0.0)
        items.append(
            DisposedInventoryItem(
                asin=asin,
                sku=meta.get("sku", ""),
                fnsku=meta.get("fnsku", ""),
                disposed_units=disposed,
                sales_price=unit.sales_price,
                fees=unit.fees,
                reimbursement_per_unit=unit.reimbursement_per_unit,
                expected_amount=disposed * unit.reimbursement_per_unit,
                currency=fee_item.currency if fee_item else DEFAULT_CURRENCY,
            )
        )
    summary = DisposedInventorySummary(
        total_products=len(items),
        total_disposed_units=sum(i.disposed_units for i in items),
        total_expected_amount=sum(i.expected_amount for i in items),
    )
    logger.info(
        "[DisposedInventory] %s ASINs, %s units, expected %.2f",
        summary.total_products,
        summary.total_disposed_units,
        summary.total_expected_amount,
    )
    return DisposedInventoryResult(items=items, summary=summary)


def calculate_disposed_inventory(scope: Scope) -> Union[DisposedInventoryResult, MissingPrecondition]:
    """Disposed units from the latest ledger snapshot; computed on request, never stored."""
    ledger_rows = store.get_latest_ledger_snapshot(scope)
    if not ledger_rows:
        return _missing_ledger(scope)
    fee_snapshot = store.get_latest_fee_snapshot(scope) or []
    return compute_disposed_inventory(aggregate_ledger(ledger_rows), fee_snapshot, store.get_products(scope))
