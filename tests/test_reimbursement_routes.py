from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient

from routes import reimbursement_routes
from services import db as db_service
from services import reimbursement_store as store
from services.claim_merge import merge_claims
from services.reimbursement_models import (
    FeeSnapshotItem,
    LedgerRow,
    Product,
    ReimbursementRecord,
    Scope,
    Shipment,
    ShipmentItem,
)
from services.reimbursement_store import ReimbursementStoreError

SCOPE = Scope(user_id="u1", country="US", region="NA")
PARAMS = {"user_id": "u1", "country": "US", "region": "NA"}
BODY = {"user_id": "u1", "country": "US", "region": "NA"}


def _build_app() -> FastAPI:
    app = FastAPI()
    app.include_router(reimbursement_routes.router)
    return app


def _setup_tmp_db(tmp_path, monkeypatch):
    db_path = tmp_path / "reimbursements.db"
    monkeypatch.setattr(db_service, "DB_PATH", db_path)
    return db_path


def _seed_claims():
    now = datetime.now(timezone.utc)
    potential = [
        ReimbursementRecord(
            sku=sku,
            asin="B0X",
            shipment_id=f"S-{sku}",
            reimbursement_type="INBOUND_SHIPMENT",
            status="POTENTIAL",
            amount=40,
            quantity=5,
            amount_basis="COST",
            expiry_date=now + timedelta(days=days, hours=1),
        )
        for sku, days in (("X", 3), ("Y", 25))
    ]
    approved = [
        ReimbursementRecord(
            reimbursement_id="R1",
            asin="B0X",
            sku="A",
            reimbursement_type="LOST",
            status="APPROVED",
            amount=10,
            quantity=1,
            is_automated=True,
            reimbursement_date=now - timedelta(days=1),
        )
    ]
    return merge_claims(SCOPE, potential, fresh_approved=approved)


def test_summary_empty_scope_is_zeroed(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    client = TestClient(_build_app())

    resp = client.get("/api/reimbursements/summary", params=PARAMS)

    assert resp.status_code == 200
    data = resp.json()
    assert data["ok"] is True
    assert data["summary"]["totalReceived"] == 0
    assert data["summary"]["countByType"]["LOST"] == 0


def test_scope_params_are_required(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    client = TestClient(_build_app())

    resp = client.get("/api/reimbursements/summary", params={"user_id": "u1"})

    assert resp.status_code == 422


def test_claim_listing_endpoints(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    _seed_claims()
    client = TestClient(_build_app())

    listing = client.get("/api/reimbursements", params={**PARAMS, "status": "approved"}).json()
    assert [c["reimbursementId"] for c in listing["reimbursements"]] == ["R1"]

    potential = client.get("/api/reimbursements/potential", params=PARAMS).json()
    assert [c["sku"] for c in potential["reimbursements"]] == ["X", "Y"]

    urgent = client.get("/api/reimbursements/urgent", params=PARAMS).json()
    assert [c["sku"] for c in urgent["reimbursements"]] == ["X"]

    product = client.get("/api/reimbursements/product/B0X", params=PARAMS).json()
    assert product["count"] == 3
    assert product["totalAmount"] == 90

    stats = client.get("/api/reimbursements/stats/by-type", params=PARAMS).json()
    assert stats["total"] == 10
    assert stats["countByType"]["INBOUND_SHIPMENT"] == 2

    timeline = client.get("/api/reimbursements/timeline", params={**PARAMS, "days": 30}).json()
    assert sum(day["count"] for day in timeline["timeline"]) == 3


def test_invalid_filter_is_bad_request(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    client = TestClient(_build_app())

    resp = client.get("/api/reimbursements", params={**PARAMS, "type": "NOT_A_TYPE"})

    assert resp.status_code == 400


def test_update_costs(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    _seed_claims()
    client = TestClient(_build_app())

    ok = client.post("/api/reimbursements/update-costs", json={**BODY, "cogs_values": {"X": 2.5}})
    missing = client.post("/api/reimbursements/update-costs", json={**BODY, "cogsValues": {"NOPE": 1}})

    assert ok.status_code == 200
    assert ok.json()["summary"]["totalPotential"] == 52.5
    assert missing.status_code == 404


def test_status_transition_codes(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    seeded = _seed_claims()
    potential_id = next(c.claim_id for c in seeded.reimbursements if c.sku == "X")
    approved_id = next(c.claim_id for c in seeded.reimbursements if c.reimbursement_id == "R1")
    client = TestClient(_build_app())

    filed = client.post(f"/api/reimbursements/{potential_id}/status", json={**BODY, "status": "pending", "caseId": "C-7"})
    backwards = client.post(f"/api/reimbursements/{approved_id}/status", json={**BODY, "status": "PENDING"})
    unknown = client.post("/api/reimbursements/nope/status", json={**BODY, "status": "DENIED"})
    bogus = client.post(f"/api/reimbursements/{potential_id}/status", json={**BODY, "status": "WHATEVER"})

    assert filed.status_code == 200
    assert filed.json()["reimbursement"]["status"] == "PENDING"
    assert filed.json()["reimbursement"]["caseId"] == "C-7"
    assert backwards.status_code == 409
    assert unknown.status_code == 404
    assert bogus.status_code == 400


def test_lost_inventory_reconcile_flow(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    client = TestClient(_build_app())

    missing = client.post("/api/reimbursements/lost-inventory/reconcile", json=BODY)
    assert missing.status_code == 200
    assert missing.json()["ok"] is False
    assert missing.json()["missing"] == "ledger_summary"

    empty = client.get("/api/reimbursements/lost-inventory", params=PARAMS).json()
    assert empty["items"] == [] and empty["summary"]["totalExpectedAmount"] == 0

    store.append_ledger_snapshot(SCOPE, [LedgerRow(asin="B001", lost=10, found=2, damaged=1)])
    store.save_fee_snapshot(SCOPE, [FeeSnapshotItem(asin="B001", sales_price=20, total_fee=5)])

    done = client.post("/api/reimbursements/lost-inventory/reconcile", json=BODY).json()
    assert done["ok"] is True
    assert done["items"][0]["expectedAmount"] == 120
    stored = client.get("/api/reimbursements/lost-inventory", params=PARAMS).json()
    assert stored["summary"]["totalDiscrepancyUnits"] == 8

    damaged = client.get("/api/reimbursements/damaged-inventory", params=PARAMS).json()
    assert damaged["summary"]["totalExpectedAmount"] == 15


def test_shipment_detection_route(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    shipped_on = datetime.now(timezone.utc) - timedelta(days=10)
    store.save_shipments(
        SCOPE,
        [
            Shipment(
                shipment_id="S1",
                shipment_date=shipped_on,
                status="CLOSED",
                items=[ShipmentItem(sku="X", quantity_shipped=100, quantity_received=95)],
            )
        ],
    )
    store.save_products(SCOPE, [Product(sku="X", asin="B0X", price=8)])
    client = TestClient(_build_app())

    first = client.post("/api/reimbursements/shipments/detect", json=BODY).json()
    second = client.post("/api/reimbursements/shipments/detect", json=BODY).json()

    assert first["count"] == 1 == second["count"]
    assert second["summary"]["totalPotential"] == 40


def test_store_failure_maps_to_500(tmp_path, monkeypatch):
    def _boom(scope):
        raise ReimbursementStoreError("disk full")

    monkeypatch.setattr(reimbursement_routes, "get_summary", _boom)
    client = TestClient(_build_app())

    resp = client.get("/api/reimbursements/summary", params=PARAMS)

    assert resp.status_code == 500
    assert "disk full" in resp.json()["detail"]


def test_disposed_inventory_route(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    client = TestClient(_build_app())

    missing = client.get("/api/reimbursements/disposed-inventory", params=PARAMS).json()
    assert missing["ok"] is False and missing["missing"] == "ledger_summary"

    store.append_ledger_snapshot(SCOPE, [LedgerRow(asin="B001", fnsku="X001", disposed=4)])
    store.save_fee_snapshot(SCOPE, [FeeSnapshotItem(asin="B001", sales_price=20, total_fee=5)])

    data = client.get("/api/reimbursements/disposed-inventory", params=PARAMS).json()
    assert data["ok"] is True
    assert data["items"][0]["disposedUnits"] == 4
    assert data["summary"]["totalExpectedAmount"] == 60


def test_sync_route_passes_documents_and_context(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    seen = {}

    def _fake_sync(scope, ctx, document_ids=None, include_shipments=True):
        seen.update(scope=scope, ctx=ctx, document_ids=document_ids, include_shipments=include_shipments)
        if "orders" in document_ids:
            raise ValueError("Unknown report kinds ['orders']")
        return {"ledger": 3, "claims": 0}

    monkeypatch.setattr(reimbursement_routes, "sync_scope_reports", _fake_sync)
    client = TestClient(_build_app())

    ok = client.post(
        "/api/reimbursements/sync",
        json={
            **BODY,
            "accessToken": "Atza|token",
            "marketplaceId": "ATVPDKIKX0DER",
            "documents": {"ledger": "DOC-L"},
            "includeShipments": False,
        },
    )
    bad = client.post(
        "/api/reimbursements/sync",
        json={**BODY, "access_token": "t", "marketplace_id": "M", "documents": {"orders": "DOC-O"}},
    )

    assert ok.status_code == 200
    assert ok.json() == {"ok": True, "synced": {"ledger": 3, "claims": 0}}
    assert bad.status_code == 400
    assert seen["scope"] == SCOPE
    assert seen["ctx"].access_token == "t"
    assert seen["include_shipments"] is True


def test_sync_route_requires_credentials(tmp_path, monkeypatch):
    _setup_tmp_db(tmp_path, monkeypatch)
    client = TestClient(_build_app())

    resp = client.post("/api/reimbursements/sync", json=BODY)

    assert resp.status_code == 422
