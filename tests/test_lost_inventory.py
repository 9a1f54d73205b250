from __future__ import annotations

from datetime import datetime, timezone

import pytest

from services import db as db_service
from services import reimbursement_store as store
from services.claim_merge import merge_claims
from services.ledger_aggregator import aggregate_ledger
from services.report_ingest import ingest_ledger_report
from services.lost_inventory import (
    calculate_damaged_inventory,
    calculate_disposed_inventory,
    compute_disposed_inventory,
    compute_lost_inventory,
    reconcile_lost_inventory,
)
from services.reimbursement_models import (
    FeeSnapshotItem,
    LedgerRow,
    LostInventoryResult,
    MissingPrecondition,
    Product,
    ReimbursementRecord,
    Scope,
)

SCOPE = Scope(user_id="u1", country="US", region="NA")
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _setup_tmp_db(tmp_path, monkeypatch):
    db_path = tmp_path / "reimbursements.db"
    monkeypatch.setattr(db_service, "DB_PATH", db_path)
    db_service.ensure_reimbursement_tables()
    return db_path


def _lost_record(asin="B001", quantity=3, amount=45.0, reason="Lost_Warehouse", status="APPROVED"):
    return ReimbursementRecord(
        asin=asin,
        sku=f"SKU-{asin}",
        reimbursement_type="LOST",
        reason_code=reason,
        quantity=quantity,
        amount=amount,
        status=status,
        is_automated=True,
    )


def test_reference_scenario():
    aggregate = aggregate_ledger([{"asin": "B001", "msku": "SKU-1", "fnsku": "X1", "lost": "10", "found": "2"}])
    fees = [{"asin": "B001", "salesPrice": 20, "totalFee": 5}]

    result = compute_lost_inventory(aggregate, [_lost_record()], fees, now=NOW)

    assert len(result.items) == 1
    item = result.items[0]
    assert item.discrepancy_units == 5
    assert item.reimbursed_units == 3
    assert item.reimbursement_per_unit == pytest.approx(15.0)
    assert item.expected_amount == pytest.approx(75.0)
    assert (item.sku, item.fnsku) == ("SKU-1", "X1")
    assert item.is_underpaid is False
    assert result.summary.total_expected_amount == pytest.approx(75.0)
    assert result.summary.total_lost_units == 10
    assert result.calculated_at == NOW


@pytest.mark.parametrize("amount, underpaid", [(3.9, True), (4.0, False)])
def test_underpayment_threshold(amount, underpaid):
    aggregate = aggregate_ledger([{"asin": "B001", "lost": "10"}])
    fees = [{"asin": "B001", "salesPrice": 10, "totalFee": 0}]

    result = compute_lost_inventory(aggregate, [_lost_record(quantity=1, amount=amount)], fees)

    item = result.items[0]
    assert item.amount_per_unit == pytest.approx(amount)
    assert item.is_underpaid is underpaid
    if underpaid:
        assert item.underpaid_expected_amount == pytest.approx(6.1)
        assert result.summary.total_underpaid_items == 1
    else:
        assert item.underpaid_expected_amount == 0


def test_underpayment_ratio_is_configurable():
    aggregate = aggregate_ledger([{"asin": "B001", "lost": "10"}])
    fees = [{"asin": "B001", "salesPrice": 10}]

    result = compute_lost_inventory(aggregate, [_lost_record(quantity=1, amount=4.5)], fees, underpaid_ratio=0.5)

    assert result.items[0].is_underpaid is True


def test_non_positive_discrepancies_are_dropped():
    aggregate = aggregate_ledger(
        [
            {"asin": "B001", "lost": "3", "found": "1"},
            {"asin": "B002", "lost": "1", "found": "4"},
        ]
    )
    records = [_lost_record("B001", quantity=2), _lost_record("B003", quantity=5)]

    result = compute_lost_inventory(aggregate, records, [])

    assert result.items == []
    assert result.summary.total_discrepancy_units == 0


def test_only_lost_warehouse_records_count_as_reimbursed():
    aggregate = aggregate_ledger([{"asin": "B001", "lost": "10"}])
    damaged = ReimbursementRecord(asin="B001", reimbursement_type="DAMAGED", reason_code="Damaged_Warehouse", quantity=4)
    potential = _lost_record(quantity=4, status="POTENTIAL")

    result = compute_lost_inventory(aggregate, [damaged, potential, _lost_record(quantity=1)], [])

    assert result.items[0].reimbursed_units == 1
    assert result.items[0].discrepancy_units == 9


def test_emitted_items_hold_arithmetic_invariants():
    aggregate = aggregate_ledger(
        [{"asin": f"B00{i}", "lost": str(i * 3), "found": str(i)} for i in range(1, 6)]
    )
    fees = [FeeSnapshotItem(asin=f"B00{i}", sales_price=7.3 * i, total_fee=1.1) for i in range(1, 6)]

    result = compute_lost_inventory(aggregate, [_lost_record("B003", quantity=2, amount=1)], fees)

    assert result.items
    for item in result.items:
        assert item.discrepancy_units > 0
        assert abs(item.expected_amount - item.discrepancy_units * item.reimbursement_per_unit) < 1e-9


def test_missing_fee_entry_values_at_zero():
    result = compute_lost_inventory(aggregate_ledger([{"asin": "B001", "lost": "2"}]), [], None)

    assert result.items[0].expected_amount == 0
    assert result.items[0].sales_price == 0


def test_reconcile_without_ledger_returns_missing_precondition(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)

    result = reconcile_lost_inventory(SCOPE)

    assert isinstance(result, MissingPrecondition)
    assert result.missing == "ledger_summary"
    assert store.get_lost_inventory_result(SCOPE) is None


def test_reconcile_with_empty_ledger_snapshot_writes_nothing(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    assert ingest_ledger_report(SCOPE, lambda: []) == []
    assert store.get_latest_ledger_snapshot(SCOPE) == []

    result = reconcile_lost_inventory(SCOPE, now=NOW)

    assert isinstance(result, MissingPrecondition)
    assert result.missing == "ledger_summary"
    assert store.get_lost_inventory_result(SCOPE) is None
    assert isinstance(calculate_damaged_inventory(SCOPE), MissingPrecondition)
    assert isinstance(calculate_disposed_inventory(SCOPE), MissingPrecondition)


def test_reconcile_persists_and_replaces_result(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    store.append_ledger_snapshot(SCOPE, [LedgerRow(asin="B001", msku="SKU-1", lost=10, found=2)])
    store.save_fee_snapshot(SCOPE, [FeeSnapshotItem(asin="B001", sales_price=20, total_fee=5)])
    merge_claims(SCOPE, [], fresh_approved=[_lost_record()], now=NOW)

    first = reconcile_lost_inventory(SCOPE, now=NOW)

    assert isinstance(first, LostInventoryResult)
    assert store.get_lost_inventory_result(SCOPE) == first
    assert first.items[0].expected_amount == pytest.approx(75.0)

    store.append_ledger_snapshot(SCOPE, [LedgerRow(asin="B001", lost=3, found=0)])
    second = reconcile_lost_inventory(SCOPE, now=NOW)

    assert second.items == []
    assert store.get_lost_inventory_result(SCOPE).items == []


def test_reconcile_is_scoped(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    other = Scope(user_id="u1", country="UK", region="EU")
    store.append_ledger_snapshot(other, [LedgerRow(asin="B001", lost=10)])

    assert isinstance(reconcile_lost_inventory(SCOPE), MissingPrecondition)
    assert len(reconcile_lost_inventory(other).items) == 1


def test_damaged_inventory_on_the_fly(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    assert isinstance(calculate_damaged_inventory(SCOPE), MissingPrecondition)

    store.append_ledger_snapshot(
        SCOPE,
        [LedgerRow(asin="B001", damaged=2), LedgerRow(asin="B001", damaged=1), LedgerRow(asin="B002", damaged=0)],
    )
    store.save_fee_snapshot(SCOPE, [FeeSnapshotItem(asin="B001", sales_price=12, total_fee=2)])

    result = calculate_damaged_inventory(SCOPE)

    assert [i.asin for i in result.items] == ["B001"]
    assert result.summary.total_damaged_units == 3
    assert result.summary.total_expected_amount == pytest.approx(30.0)
    assert store.get_lost_inventory_result(SCOPE) is None


def test_disposed_inventory_values_units_at_fee_snapshot():
    aggregate = aggregate_ledger(
        [
            {"asin": "B001", "fnsku": "X001", "msku": "SKU-1", "disposed": 2},
            {"asin": "B001", "fnsku": "X001", "disposed": "3"},
            {"asin": "B002", "disposed": 0},
        ]
    )
    fees = [
        FeeSnapshotItem(asin="B001", fnsku="OTHER", sales_price=30, total_fee=10),
        FeeSnapshotItem(asin="B001", fnsku="X001", sales_price=20, total_fee=5),
    ]

    result = compute_disposed_inventory(aggregate, fees)

    assert [i.asin for i in result.items] == ["B001"]
    item = result.items[0]
    assert item.sku == "SKU-1"
    assert item.disposed_units == 5
    # FNSKU match wins over the first ASIN entry.
    assert item.reimbursement_per_unit == pytest.approx(15.0)
    assert item.expected_amount == pytest.approx(75.0)
    assert result.summary.total_products == 1
    assert result.summary.total_expected_amount == pytest.approx(75.0)


def test_disposed_inventory_falls_back_to_listing_price():
    aggregate = aggregate_ledger([{"asin": "B009", "disposed": 4}])

    result = compute_disposed_inventory(aggregate, [], [Product(sku="S9", asin="B009", price="$6.50")])
    unpriced = compute_disposed_inventory(aggregate, [], [])

    assert result.items[0].expected_amount == pytest.approx(26.0)
    assert result.items[0].fees == 0
    assert unpriced.items[0].expected_amount == 0


def test_disposed_inventory_on_the_fly(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    store.append_ledger_snapshot(SCOPE, [LedgerRow(asin="B001", disposed=2), LedgerRow(asin="B002", lost=1)])
    store.save_products(SCOPE, [Product(sku="S1", asin="B001", price=10)])

    result = calculate_disposed_inventory(SCOPE)

    assert result.summary.total_disposed_units == 2
    assert result.summary.total_expected_amount == pytest.approx(20.0)
    assert store.get_lost_inventory_result(SCOPE) is None
