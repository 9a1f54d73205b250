"""
Folding newly discovered potential claims into a scope's canonical claim list.

The stored ReimbursementSet is read whole, a new list is computed, and the result is
written back in one transaction while holding the scope lock. Potential claims are
never dropped by a merge; they only leave the POTENTIAL state through a status
transition or by expiring.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from services import reimbursement_store as store
from services.perf import time_block
from services.reimbursement_models import (
    OPEN_STATUSES,
    ClaimStatus,
    ReimbursementRecord,
    ReimbursementSet,
    Scope,
    ensure_utc,
)
from services.reimbursement_summary import summarize_claims
from services.scope_lock import scope_lock

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ClaimStatus, Set[ClaimStatus]] = {
    ClaimStatus.POTENTIAL: {ClaimStatus.PENDING, ClaimStatus.APPROVED, ClaimStatus.DENIED, ClaimStatus.EXPIRED},
    ClaimStatus.PENDING: {ClaimStatus.APPROVED, ClaimStatus.DENIED, ClaimStatus.EXPIRED},
}


class InvalidStatusTransition(ValueError):
    def __init__(self, current: ClaimStatus, requested: ClaimStatus):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move claim from {current.value} to {requested.value}")


class ClaimNotFoundError(LookupError):
    pass


def _now(now: Optional[datetime]) -> datetime:
    return ensure_utc(now) if now else datetime.now(timezone.utc)


def days_until(expiry_date: datetime, now: datetime) -> int:
    return math.ceil((expiry_date - now).total_seconds() / 86400)


def expire_overdue_claims(
    claims: Iterable[ReimbursementRecord],
    now: Optional[datetime] = None,
) -> List[ReimbursementRecord]:
    """Refresh deadlines on open claims and move overdue POTENTIAL claims to EXPIRED."""
    now = _now(now)
    refreshed: List[ReimbursementRecord] = []
    expired = 0
    for claim in claims:
        if claim.status not in OPEN_STATUSES or claim.expiry_date is None:
            refreshed.append(claim)
            continue
        remaining = days_until(claim.expiry_date, now)
        if claim.status == ClaimStatus.POTENTIAL and remaining <= 0:
            refreshed.append(claim.model_copy(update={"status": ClaimStatus.EXPIRED, "days_to_deadline": 0}))
            expired += 1
            continue
        refreshed.append(claim.model_copy(update={"days_to_deadline": remaining}))
    if expired:
        logger.info("[ClaimMerge] Expired %s overdue potential claims", expired)
    return refreshed


def merge_claim_lists(
    existing: Iterable[ReimbursementRecord],
    new_potential_claims: Iterable[ReimbursementRecord],
    fresh_approved: Optional[Iterable[ReimbursementRecord]] = None,
    now: Optional[datetime] = None,
) -> List[ReimbursementRecord]:
    existing = list(existing)
    if fresh_approved is not None:
        base = list(fresh_approved) + [r for r in existing if r.status != ClaimStatus.APPROVED]
    else:
        base = existing

    open_keys: Set[Tuple] = {r.merge_key() for r in base if r.status in OPEN_STATUSES}
    merged = list(base)
    added = 0
    for claim in new_potential_claims:
        key = claim.merge_key()
        if key in open_keys:
            continue
        merged.append(claim)
        open_keys.add(key)
        added += 1
    logger.debug("[ClaimMerge] Appended %s new claims onto %s existing", added, len(base))
    return expire_overdue_claims(merged, now)


def merge_claims(
    scope: Scope,
    new_potential_claims: Iterable[ReimbursementRecord],
    fresh_approved: Optional[Iterable[ReimbursementRecord]] = None,
    now: Optional[datetime] = None,
) -> ReimbursementSet:
    """
    Merge new potential claims (and optionally a fresh approved-reimbursement report)
    into the stored claim document for ``scope``. Running it twice with the same
    input leaves the document as after the first run.
    """
    now = _now(now)
    new_potential_claims = list(new_potential_claims)
    fresh_approved = list(fresh_approved) if fresh_approved is not None else None

    def _apply(current: Optional[ReimbursementSet]) -> ReimbursementSet:
        existing = current.reimbursements if current else []
        merged = merge_claim_lists(existing, new_potential_claims, fresh_approved, now)
        last_fetch = now if fresh_approved is not None else (current.last_fetch_date if current else None)
        return ReimbursementSet(
            reimbursements=merged,
            summary=summarize_claims(merged, now),
            last_fetch_date=last_fetch,
        )

    with time_block("merge_claims", scope), scope_lock(scope, owner="merge_claims"):
        result = store.update_reimbursement_set(scope, _apply)
    logger.info(
        "[ClaimMerge] %s now holds %s claims (potential %.2f)",
        scope,
        len(result.reimbursements),
        result.summary.total_potential,
    )
    return result


def advance_status(
    record: ReimbursementRecord,
    new_status: ClaimStatus,
    now: Optional[datetime] = None,
) -> ReimbursementRecord:
    new_status = ClaimStatus(new_status)
    if new_status not in ALLOWED_TRANSITIONS.get(record.status, set()):
        raise InvalidStatusTransition(record.status, new_status)
    update = {"status": new_status}
    if new_status == ClaimStatus.APPROVED and record.approval_date is None:
        update["approval_date"] = _now(now)
    if new_status != ClaimStatus.PENDING:
        update["days_to_deadline"] = None
    return record.model_copy(update=update)


def transition_claim_status(
    scope: Scope,
    claim_id: str,
    new_status: ClaimStatus,
    case_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReimbursementRecord:
    """
    Move one stored claim forward and re-summarize the scope.

    Raises ClaimNotFoundError for an unknown claim and InvalidStatusTransition for a
    backwards or terminal move; the stored document is unchanged in both cases.
    """
    now = _now(now)
    updated: Dict[str, ReimbursementRecord] = {}

    def _apply(current: Optional[ReimbursementSet]) -> ReimbursementSet:
        claims = list(current.reimbursements) if current else []
        for index, claim in enumerate(claims):
            if claim.claim_id != claim_id:
                continue
            moved = advance_status(claim, new_status, now)
            if case_id:
                moved = moved.model_copy(update={"case_id": case_id})
            claims[index] = moved
            updated["claim"] = moved
            return ReimbursementSet(
                reimbursements=claims,
                summary=summarize_claims(claims, now),
                last_fetch_date=current.last_fetch_date,
                data_source=current.data_source,
            )
        raise ClaimNotFoundError(f"Claim {claim_id} not found for {scope}")

    with scope_lock(scope, owner="transition_claim_status"):
        store.update_reimbursement_set(scope, _apply)
    logger.info("[ClaimMerge] Claim %s for %s moved to %s", claim_id, scope, updated["claim"].status.value)
    return updated["claim"]
