from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from services.reimbursement_models import (
    ClaimStatus,
    ReimbursementRecord,
    ReimbursementSummary,
    ensure_utc,
)


def summarize_claims(
    claims: Iterable[ReimbursementRecord],
    now: Optional[datetime] = None,
) -> ReimbursementSummary:
    """
    Recompute dashboard totals from a full claim list.

    Recency windows use the reimbursement date, or the discovery date when Amazon has not
    paid yet. Expiry buckets count POTENTIAL claims whose deadline falls between now and
    now + N days.
    """
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    summary = ReimbursementSummary()
    recency = {
        "last7_days": now - timedelta(days=7),
        "last30_days": now - timedelta(days=30),
        "last90_days": now - timedelta(days=90),
    }
    expiring_7 = now + timedelta(days=7)
    expiring_30 = now + timedelta(days=30)

    for claim in claims:
        amount = claim.amount
        if claim.status == ClaimStatus.APPROVED:
            summary.total_received += amount
        elif claim.status == ClaimStatus.PENDING:
            summary.total_pending += amount
        elif claim.status == ClaimStatus.POTENTIAL:
            summary.total_potential += amount
        elif claim.status == ClaimStatus.DENIED:
            summary.total_denied += amount

        type_key = claim.reimbursement_type.value
        summary.count_by_type[type_key] = summary.count_by_type.get(type_key, 0) + 1
        summary.amount_by_type[type_key] = summary.amount_by_type.get(type_key, 0.0) + amount

        effective = claim.effective_date
        if effective is not None:
            for attr, cutoff in recency.items():
                if effective >= cutoff:
                    setattr(summary, attr, getattr(summary, attr) + amount)

        if claim.status == ClaimStatus.POTENTIAL and claim.expiry_date is not None:
            if now <= claim.expiry_date <= expiring_7:
                summary.claims_expiring_in7_days += 1
            if now <= claim.expiry_date <= expiring_30:
                summary.claims_expiring_in30_days += 1

        if claim.is_automated:
            summary.automated_count += 1
        else:
            summary.manual_count += 1
        summary.reimbursement_count += 1

    return summary
