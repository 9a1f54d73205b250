from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from services import db as db_service
from services import reimbursement_store as store
from services.claim_merge import merge_claims
from services.reimbursement_models import (
    AmountBasis,
    ClaimStatus,
    ReimbursementRecord,
    ReimbursementSummary,
    Scope,
)
from services.reimbursement_queries import (
    get_claims_by_product,
    get_detailed_claims,
    get_lost_inventory,
    get_potential_claims,
    get_stats_by_type,
    get_summary,
    get_timeline,
    get_urgent_claims,
    update_product_costs,
)

SCOPE = Scope(user_id="u1", country="US", region="NA")
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _setup_tmp_db(tmp_path, monkeypatch):
    db_path = tmp_path / "reimbursements.db"
    monkeypatch.setattr(db_service, "DB_PATH", db_path)
    return db_path


def _potential(sku, days_left, basis="PRICE", amount=40.0, quantity=5, asin=None):
    return ReimbursementRecord(
        sku=sku,
        asin=asin or f"B-{sku}",
        shipment_id=f"S-{sku}",
        reimbursement_type="INBOUND_SHIPMENT",
        status="POTENTIAL",
        amount=amount,
        quantity=quantity,
        amount_basis=basis,
        discovery_date=NOW - timedelta(days=2),
        expiry_date=NOW + timedelta(days=days_left) if days_left is not None else None,
        days_to_deadline=days_left,
    )


def _approved(reimbursement_id, days_ago, amount, asin="B-A", type_="LOST"):
    return ReimbursementRecord(
        reimbursement_id=reimbursement_id,
        asin=asin,
        sku="A",
        reimbursement_type=type_,
        status="APPROVED",
        amount=amount,
        quantity=1,
        is_automated=True,
        reimbursement_date=NOW - timedelta(days=days_ago),
    )


def _seed():
    potential = [_potential("X", 20), _potential("Y", 3), _potential("Z", None), _potential("W", 9)]
    approved = [
        _approved("R1", 1, 10.0),
        _approved("R2", 1, 5.0, type_="DAMAGED"),
        _approved("R3", 10, 7.0, asin="B-X"),
    ]
    return merge_claims(SCOPE, potential, fresh_approved=approved, now=NOW)


def test_empty_scope_returns_zero_structures(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)

    assert get_summary(SCOPE) == ReimbursementSummary()
    assert get_detailed_claims(SCOPE) == []
    assert get_timeline(SCOPE, now=NOW) == []
    lost = get_lost_inventory(SCOPE)
    assert lost.items == [] and lost.summary.total_expected_amount == 0
    assert get_stats_by_type(SCOPE)["total"] == 0


def test_potential_sorted_by_deadline_with_missing_last(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    _seed()

    assert [c.sku for c in get_potential_claims(SCOPE)] == ["Y", "W", "X", "Z"]
    assert [c.sku for c in get_urgent_claims(SCOPE)] == ["Y"]
    assert [c.sku for c in get_urgent_claims(SCOPE, days=10)] == ["Y", "W"]


def test_detailed_claims_filters_and_sort(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    _seed()

    approved = get_detailed_claims(SCOPE, status="approved")
    assert [c.reimbursement_id for c in approved][-1] == "R3"
    assert {c.reimbursement_id for c in get_detailed_claims(SCOPE, reimbursement_type="damaged")} == {"R2"}
    recent = get_detailed_claims(SCOPE, status="APPROVED", start=NOW - timedelta(days=5))
    assert {c.reimbursement_id for c in recent} == {"R1", "R2"}
    older = get_detailed_claims(SCOPE, end=NOW - timedelta(days=5))
    assert [c.reimbursement_id for c in older] == ["R3"]
    with pytest.raises(ValueError):
        get_detailed_claims(SCOPE, status="bogus")


def test_claims_by_product_and_stats(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    _seed()

    product = get_claims_by_product(SCOPE, "B-X")
    assert product["count"] == 2
    assert product["totalAmount"] == pytest.approx(47.0)
    assert product["totalQuantity"] == 6

    stats = get_stats_by_type(SCOPE)
    assert stats["total"] == pytest.approx(22.0)
    assert stats["countByType"]["INBOUND_SHIPMENT"] == 4
    assert stats["amountByType"]["DAMAGED"] == pytest.approx(5.0)


def test_timeline_groups_by_day(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    _seed()

    timeline = get_timeline(SCOPE, days=30, now=NOW)

    assert [day["date"] for day in timeline] == ["2024-05-22", "2024-05-30", "2024-05-31"]
    last = timeline[-1]
    assert last["count"] == 2
    assert last["totalAmount"] == pytest.approx(15.0)
    assert last["byType"] == {"LOST": pytest.approx(10.0), "DAMAGED": pytest.approx(5.0)}
    assert timeline[1]["count"] == 4
    assert [d["date"] for d in get_timeline(SCOPE, days=5, now=NOW)] == ["2024-05-30", "2024-05-31"]


def test_update_product_costs_revalues_cost_based_claims(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    merge_claims(
        SCOPE,
        [_potential("X", 20, basis="COST", amount=0, quantity=5), _potential("Y", 20, basis="PRICE", amount=40)],
        now=NOW,
    )

    assert update_product_costs(SCOPE, {"X": "3.5", "Y": 2}, now=NOW) is True

    claims = {c.sku: c for c in store.get_reimbursement_set(SCOPE).reimbursements}
    assert claims["X"].product_cost == 3.5
    assert claims["X"].amount == pytest.approx(17.5)
    assert claims["X"].amount_basis == AmountBasis.COST
    assert claims["Y"].product_cost == 2
    assert claims["Y"].amount == pytest.approx(40.0)
    assert get_summary(SCOPE).total_potential == pytest.approx(57.5)


def test_update_product_costs_returns_false_when_nothing_matches(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    assert update_product_costs(SCOPE, {"X": 1}) is False

    merge_claims(SCOPE, [_potential("X", 20)], now=NOW)
    before = store.get_reimbursement_set(SCOPE)
    assert update_product_costs(SCOPE, {"NOPE": 1}) is False
    assert store.get_reimbursement_set(SCOPE) == before


def test_update_product_costs_ignores_closed_claims(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    result = merge_claims(SCOPE, [], fresh_approved=[_approved("R1", 1, 10.0)], now=NOW)

    assert update_product_costs(SCOPE, {"A": 99}) is False
    assert store.get_reimbursement_set(SCOPE).reimbursements[0].status == ClaimStatus.APPROVED
    assert result.reimbursements[0].product_cost is None
