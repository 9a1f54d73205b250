"""
Inbound shipment discrepancy detection.

Amazon closes an inbound shipment once receiving is done. Any shortfall between units
shipped and units received can be claimed for a limited window after the shipment date,
so every actionable item becomes a POTENTIAL claim carrying its deadline.
"""

import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from config import CLAIM_VALUATION_BASIS, CLAIM_WINDOW_DAYS, DEFAULT_CURRENCY, claim_window_days_for
from services import reimbursement_store as store
from services.claim_merge import merge_claims
from services.fee_snapshot import build_fee_map, resolve_unit_value
from services.reimbursement_models import (
    AmountBasis,
    ClaimStatus,
    Product,
    ReimbursementRecord,
    ReimbursementSet,
    ReimbursementType,
    Scope,
    Shipment,
    ensure_utc,
)

logger = logging.getLogger(__name__)

INBOUND_REASON_CODE = "INBOUND_RECEIVE_DISCREPANCY"

# Shipment names generated by Seller Central end with "(MM/DD/YYYY HH:MM)", sometimes
# with a comma before the time.
_NAME_DATE_RE = re.compile(r"\((\d{2})/(\d{2})/(\d{4})(?:,?\s*(\d{1,2}):(\d{2}))?\)")


def parse_shipment_date(shipment: Shipment) -> Optional[datetime]:
    if shipment.shipment_date is not None:
        return ensure_utc(shipment.shipment_date)
    match = _NAME_DATE_RE.search(shipment.shipment_name or "")
    if not match:
        return None
    month, day, year, hour, minute = match.groups()
    try:
        return datetime(
            int(year),
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            tzinfo=timezone.utc,
        )
    except ValueError:
        logger.warning("[ShipmentDiscrepancy] Invalid date in shipment name %r", shipment.shipment_name)
        return None


def days_remaining(shipment_date: datetime, now: datetime, window_days: int) -> int:
    age_days = math.floor((now - shipment_date).total_seconds() / 86400)
    return window_days - age_days


def _as_shipment(entry: Any) -> Shipment:
    if isinstance(entry, Shipment):
        return entry
    return Shipment.model_validate(entry)


def _as_product(entry: Any) -> Product:
    if isinstance(entry, Product):
        return entry
    return Product.model_validate(entry)


def detect_shipment_discrepancies(
    shipments: Iterable[Any],
    products: Iterable[Any],
    fee_snapshot: Optional[Iterable[Any]] = None,
    now: Optional[datetime] = None,
    claim_window_days: Optional[int] = None,
) -> List[ReimbursementRecord]:
    """
    Emit one POTENTIAL INBOUND_SHIPMENT claim per short-received shipment item.

    Shipments past the claim window, or whose date cannot be determined, produce nothing.
    Items whose SKU is not in ``products`` are skipped with a warning.
    """
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    window = claim_window_days if claim_window_days is not None else CLAIM_WINDOW_DAYS
    products_by_sku: Dict[str, Product] = {}
    for entry in products or []:
        product = _as_product(entry)
        if product.sku:
            products_by_sku.setdefault(product.sku, product)
    fee_items = list(fee_snapshot or [])
    fees_by_sku = build_fee_map(fee_items, key="sku")
    fees_by_asin = build_fee_map(fee_items, key="asin")

    claims: List[ReimbursementRecord] = []
    for entry in shipments or []:
        shipment = _as_shipment(entry)
        shipment_date = parse_shipment_date(shipment)
        if shipment_date is None:
            logger.info("[ShipmentDiscrepancy] No usable date for shipment %s; skipping", shipment.shipment_id)
            continue
        remaining = days_remaining(shipment_date, now, window)
        if remaining <= 0:
            continue
        expiry_date = shipment_date + timedelta(days=window)

        for item in shipment.items:
            discrepancy = item.quantity_shipped - item.quantity_received
            if discrepancy <= 0:
                continue
            product = products_by_sku.get(item.sku)
            if product is None:
                logger.warning(
                    "[ShipmentDiscrepancy] SKU %s in shipment %s has no product entry; skipping",
                    item.sku,
                    shipment.shipment_id,
                )
                continue
            fee_item = fees_by_sku.get(item.sku) or fees_by_asin.get(product.asin)
            unit = resolve_unit_value(fee_item, fallback_price=product.price)
            per_unit = unit.reimbursement_per_unit if unit else 0.0
            expected = discrepancy * per_unit
            basis = AmountBasis.COST if CLAIM_VALUATION_BASIS == "COST" or per_unit <= 0 else AmountBasis.PRICE
            claims.append(
                ReimbursementRecord(
                    asin=product.asin,
                    sku=item.sku,
                    fnsku=item.fnsku,
                    reimbursement_type=ReimbursementType.INBOUND_SHIPMENT,
                    amount=expected,
                    currency=fee_item.currency if fee_item else DEFAULT_CURRENCY,
                    quantity=discrepancy,
                    reason_code=INBOUND_REASON_CODE,
                    reason_description=f"{discrepancy} unit(s) not received in shipment",
                    status=ClaimStatus.POTENTIAL,
                    discovery_date=now,
                    expiry_date=expiry_date,
                    days_to_deadline=remaining,
                    is_automated=False,
                    amount_basis=basis,
                    shipment_id=shipment.shipment_id,
                    shipment_name=shipment.shipment_name,
                    retail_value=expected,
                )
            )

    logger.info("[ShipmentDiscrepancy] Found %s potential inbound claims", len(claims))
    return claims


def detect_and_merge_shipment_claims(scope: Scope, now: Optional[datetime] = None) -> ReimbursementSet:
    """Run detection over the scope's stored shipments and merge the result into its claims."""
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    shipments = store.get_closed_shipments(scope)
    products = store.get_products(scope)
    fee_snapshot = store.get_latest_fee_snapshot(scope) or []
    if not shipments:
        logger.info("[ShipmentDiscrepancy] No stored shipments for %s", scope)
    claims = detect_shipment_discrepancies(
        shipments,
        products,
        fee_snapshot,
        now=now,
        claim_window_days=claim_window_days_for(scope.country),
    )
    return merge_claims(scope, claims, now=now)
