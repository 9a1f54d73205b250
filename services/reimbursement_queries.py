"""
Read-side helpers behind the reimbursement dashboard routes.

Every helper returns zero-valued structures for a scope with no data so the UI never has
to special-case null.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from services import reimbursement_store as store
from services.reimbursement_models import (
    AmountBasis,
    ClaimStatus,
    LostInventoryResult,
    ReimbursementRecord,
    ReimbursementSet,
    ReimbursementSummary,
    ReimbursementType,
    Scope,
    coerce_float,
    ensure_utc,
)
from services.reimbursement_summary import summarize_claims
from services.scope_lock import scope_lock

logger = logging.getLogger(__name__)

_NO_DEADLINE = 999


def _claims(scope: Scope) -> List[ReimbursementRecord]:
    current = store.get_reimbursement_set(scope)
    return list(current.reimbursements) if current else []


def get_summary(scope: Scope) -> ReimbursementSummary:
    current = store.get_reimbursement_set(scope)
    if current is None:
        return ReimbursementSummary()
    return current.summary


def get_detailed_claims(
    scope: Scope,
    status: Optional[str] = None,
    reimbursement_type: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[ReimbursementRecord]:
    """Claims filtered by status / type / effective date range, newest first."""
    status_filter = ClaimStatus(status.strip().upper()) if status else None
    type_filter = ReimbursementType(reimbursement_type.strip().upper()) if reimbursement_type else None
    start = ensure_utc(start)
    end = ensure_utc(end)

    results = []
    for claim in _claims(scope):
        if status_filter and claim.status != status_filter:
            continue
        if type_filter and claim.reimbursement_type != type_filter:
            continue
        effective = claim.effective_date
        if start and (effective is None or effective < start):
            continue
        if end and (effective is None or effective > end):
            continue
        results.append(claim)

    floor = datetime.min.replace(tzinfo=timezone.utc)
    results.sort(key=lambda c: c.effective_date or floor, reverse=True)
    return results


def get_potential_claims(scope: Scope) -> List[ReimbursementRecord]:
    potential = [c for c in _claims(scope) if c.status == ClaimStatus.POTENTIAL]
    potential.sort(key=lambda c: c.days_to_deadline if c.days_to_deadline is not None else _NO_DEADLINE)
    return potential


def get_urgent_claims(scope: Scope, days: int = 7) -> List[ReimbursementRecord]:
    return [
        c
        for c in get_potential_claims(scope)
        if c.days_to_deadline is not None and 0 <= c.days_to_deadline <= days
    ]


def get_claims_by_product(scope: Scope, asin: str) -> Dict[str, Any]:
    claims = [c for c in _claims(scope) if c.asin == asin]
    return {
        "asin": asin,
        "reimbursements": claims,
        "totalAmount": sum(c.amount for c in claims),
        "totalQuantity": sum(c.quantity for c in claims),
        "count": len(claims),
    }


def get_stats_by_type(scope: Scope) -> Dict[str, Any]:
    summary = get_summary(scope)
    return {
        "amountByType": summary.amount_by_type,
        "countByType": summary.count_by_type,
        "total": summary.total_received,
    }


def get_timeline(scope: Scope, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Per-day totals of claims whose effective date falls in the last ``days`` days."""
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    buckets: Dict[date, Dict[str, Any]] = {}
    for claim in _claims(scope):
        effective = claim.effective_date
        if effective is None or effective < cutoff or effective > now:
            continue
        day = effective.date()
        bucket = buckets.setdefault(day, {"date": day.isoformat(), "totalAmount": 0.0, "count": 0, "byType": {}})
        bucket["totalAmount"] += claim.amount
        bucket["count"] += 1
        type_key = claim.reimbursement_type.value
        bucket["byType"][type_key] = bucket["byType"].get(type_key, 0.0) + claim.amount
    return [buckets[day] for day in sorted(buckets)]


def update_product_costs(scope: Scope, costs_by_sku: Mapping[str, Any], now: Optional[datetime] = None) -> bool:
    """
    Attach product costs to POTENTIAL claims and revalue the cost-based ones.

    Returns False, leaving the store untouched, when the scope has no claim document
    or no POTENTIAL claim matches a SKU in ``costs_by_sku``.
    """
    costs = {str(sku).strip(): coerce_float(value) for sku, value in (costs_by_sku or {}).items()}
    changed = {"count": 0}

    def _apply(current: Optional[ReimbursementSet]) -> Optional[ReimbursementSet]:
        if current is None:
            return None
        claims = []
        for claim in current.reimbursements:
            if claim.status == ClaimStatus.POTENTIAL and claim.sku in costs:
                cost = costs[claim.sku]
                update: Dict[str, Any] = {"product_cost": cost}
                if claim.amount_basis == AmountBasis.COST:
                    update["amount"] = cost * (claim.quantity or 1)
                claim = claim.model_copy(update=update)
                changed["count"] += 1
            claims.append(claim)
        if not changed["count"]:
            return None
        return ReimbursementSet(
            reimbursements=claims,
            summary=summarize_claims(claims, now),
            last_fetch_date=current.last_fetch_date,
            data_source=current.data_source,
        )

    with scope_lock(scope, owner="update_product_costs"):
        store.update_reimbursement_set(scope, _apply)
    if changed["count"]:
        logger.info("[ReimbursementQueries] Updated costs on %s claims for %s", changed["count"], scope)
        return True
    logger.info("[ReimbursementQueries] No potential claims matched cost update for %s", scope)
    return False


def get_lost_inventory(scope: Scope) -> LostInventoryResult:
    result = store.get_lost_inventory_result(scope)
    return result if result is not None else LostInventoryResult()
