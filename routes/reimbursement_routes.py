from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from services.claim_merge import ClaimNotFoundError, InvalidStatusTransition, transition_claim_status
from services.db import ensure_reimbursement_tables
from services.lost_inventory import (
    calculate_damaged_inventory,
    calculate_disposed_inventory,
    reconcile_lost_inventory,
)
from services.reimbursement_models import ClaimStatus, MissingPrecondition, Scope
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
from services.report_ingest import sync_scope_reports
from services.shipment_discrepancy import detect_and_merge_shipment_claims
from services.spapi_reports import SpApiContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reimbursements")


class ScopeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    country: str
    region: str

    def scope(self) -> Scope:
        return Scope(user_id=self.user_id, country=self.country, region=self.region)


class UpdateCostsRequest(ScopeRequest):
    cogs_values: Dict[str, float] = Field(default_factory=dict, alias="cogsValues")


class StatusRequest(ScopeRequest):
    status: str
    case_id: Optional[str] = Field(None, alias="caseId")


class SyncRequest(ScopeRequest):
    access_token: str = Field(..., alias="accessToken")
    marketplace_id: str = Field(..., alias="marketplaceId")
    documents: Dict[str, str] = Field(default_factory=dict)
    include_shipments: bool = Field(True, alias="includeShipments")


def scope_params(
    user_id: str = Query(..., description="Seller account id"),
    country: str = Query(..., description="Marketplace country code"),
    region: str = Query(..., description="SP-API region (NA / EU / FE)"),
) -> Scope:
    return Scope(user_id=user_id, country=country, region=region)


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    return value


def _missing(result: MissingPrecondition) -> dict:
    return {"ok": False, **_dump(result)}


def _fail(action: str, exc: Exception) -> HTTPException:
    logger.error("[Reimbursements] %s failed: %s", action, exc, exc_info=True)
    return HTTPException(status_code=500, detail=str(exc))


@router.get("/summary")
def summary(scope: Scope = Depends(scope_params)) -> dict:
    try:
        return {"ok": True, "summary": _dump(get_summary(scope))}
    except Exception as exc:
        raise _fail("Summary", exc)


@router.get("")
def list_claims(
    scope: Scope = Depends(scope_params),
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None, description="Reimbursement type"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
) -> dict:
    try:
        claims = get_detailed_claims(scope, status=status, reimbursement_type=type, start=start_date, end=end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        raise _fail("List claims", exc)
    return {"ok": True, "count": len(claims), "reimbursements": _dump(claims)}


@router.get("/potential")
def potential_claims(scope: Scope = Depends(scope_params)) -> dict:
    try:
        claims = get_potential_claims(scope)
        return {"ok": True, "count": len(claims), "reimbursements": _dump(claims)}
    except Exception as exc:
        raise _fail("Potential claims", exc)


@router.get("/urgent")
def urgent_claims(scope: Scope = Depends(scope_params), days: int = Query(7, ge=0, le=365)) -> dict:
    try:
        claims = get_urgent_claims(scope, days=days)
        return {"ok": True, "days": days, "count": len(claims), "reimbursements": _dump(claims)}
    except Exception as exc:
        raise _fail("Urgent claims", exc)


@router.get("/product/{asin}")
def claims_for_product(asin: str, scope: Scope = Depends(scope_params)) -> dict:
    try:
        return {"ok": True, **_dump(get_claims_by_product(scope, asin))}
    except Exception as exc:
        raise _fail("Product claims", exc)


@router.get("/stats/by-type")
def stats_by_type(scope: Scope = Depends(scope_params)) -> dict:
    try:
        return {"ok": True, **get_stats_by_type(scope)}
    except Exception as exc:
        raise _fail("Stats by type", exc)


@router.get("/timeline")
def timeline(scope: Scope = Depends(scope_params), days: int = Query(30, ge=1, le=365)) -> dict:
    try:
        return {"ok": True, "days": days, "timeline": get_timeline(scope, days=days)}
    except Exception as exc:
        raise _fail("Timeline", exc)


@router.post("/update-costs")
def update_costs(payload: UpdateCostsRequest) -> dict:
    try:
        updated = update_product_costs(payload.scope(), payload.cogs_values)
    except Exception as exc:
        raise _fail("Update costs", exc)
    if not updated:
        raise HTTPException(status_code=404, detail="No potential claims matched the supplied SKUs")
    return {"ok": True, "summary": _dump(get_summary(payload.scope()))}


@router.post("/shipments/detect")
def detect_shipments(payload: ScopeRequest) -> dict:
    try:
        result = detect_and_merge_shipment_claims(payload.scope())
        return {"ok": True, "count": len(result.reimbursements), "summary": _dump(result.summary)}
    except Exception as exc:
        raise _fail("Shipment detection", exc)


@router.post("/sync")
def sync_reports(payload: SyncRequest) -> dict:
    ctx = SpApiContext(access_token=payload.access_token, marketplace_id=payload.marketplace_id)
    try:
        counts = sync_scope_reports(
            payload.scope(),
            ctx,
            document_ids=payload.documents,
            include_shipments=payload.include_shipments,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        raise _fail("Report sync", exc)
    return {"ok": True, "synced": counts}


@router.post("/lost-inventory/reconcile")
def reconcile(payload: ScopeRequest) -> dict:
    try:
        result = reconcile_lost_inventory(payload.scope())
    except Exception as exc:
        raise _fail("Lost inventory reconcile", exc)
    if isinstance(result, MissingPrecondition):
        return _missing(result)
    return {"ok": True, **_dump(result)}


@router.get("/lost-inventory")
def lost_inventory(scope: Scope = Depends(scope_params)) -> dict:
    try:
        return {"ok": True, **_dump(get_lost_inventory(scope))}
    except Exception as exc:
        raise _fail("Lost inventory", exc)


@router.get("/damaged-inventory")
def damaged_inventory(scope: Scope = Depends(scope_params)) -> dict:
    try:
        result = calculate_damaged_inventory(scope)
    except Exception as exc:
        raise _fail("Damaged inventory", exc)
    if isinstance(result, MissingPrecondition):
        return _missing(result)
    return {"ok": True, **_dump(result)}


@router.get("/disposed-inventory")
def disposed_inventory(scope: Scope = Depends(scope_params)) -> dict:
    try:
        result = calculate_disposed_inventory(scope)
    except Exception as exc:
        raise _fail("Disposed inventory", exc)
    if isinstance(result, MissingPrecondition):
        return _missing(result)
    return {"ok": True, **_dump(result)}


@router.post("/{claim_id}/status")
def change_status(claim_id: str, payload: StatusRequest) -> dict:
    try:
        new_status = ClaimStatus(payload.status.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown status {payload.status!r}")
    try:
        claim = transition_claim_status(payload.scope(), claim_id, new_status, case_id=payload.case_id)
    except ClaimNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidStatusTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except Exception as exc:
        raise _fail("Status transition", exc)
    return {"ok": True, "reimbursement": _dump(claim)}


def register_reimbursement_routes(app: FastAPI) -> None:
    try:
        ensure_reimbursement_tables()
    except Exception as exc:
        logger.warning("[Reimbursements] Failed to ensure tables on startup: %s", exc)
    app.include_router(router)
