"""
Thin SP-API collaborator calls used by report ingestion.

Report creation and status polling live elsewhere; by the time these functions run the
report document exists. Credentials travel in an explicit SpApiContext on every call,
so one process can serve many sellers without shared token state.
"""

import gzip
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel

from config import SPAPI_HOST

logger = logging.getLogger("spapi_reports")

REQUEST_TIMEOUT_SECONDS = 30


class SpApiQuotaError(RuntimeError):
    """Raised when SP-API returns a QuotaExceeded / 429."""


class SpApiContext(BaseModel):
    access_token: str
    marketplace_id: str
    host: str = SPAPI_HOST

    def headers(self) -> Dict[str, str]:
        return {
            "x-amz-access-token": self.access_token,
            "accept": "application/json",
        }


def _error_payload(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


def _check_response(resp: requests.Response, what: str) -> None:
    if resp.status_code == 429:
        payload = _error_payload(resp)
        logger.error("[spapi_reports] %s failed 429 QuotaExceeded: %s", what, payload)
        raise SpApiQuotaError(f"QuotaExceeded during {what}: {payload}")
    if resp.status_code >= 300:
        logger.error("[spapi_reports] %s failed %s: %s", what, resp.status_code, resp.text)
        resp.raise_for_status()


def _get_json(ctx: SpApiContext, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    resp = requests.get(
        f"{ctx.host}{path}",
        headers=ctx.headers(),
        params=params,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    _check_response(resp, f"GET {path}")
    return resp.json()


def parse_tsv_report(text: Optional[str]) -> List[Dict[str, str]]:
    """
    Split a tab-separated flat-file report into dicts.

    Header names are lower-cased with dashes and spaces turned into underscores
    ("amount-total" -> "amount_total"). Blank lines are ignored and short rows are
    padded with empty strings.
    """
    if not text:
        return []
    lines = [line for line in text.replace("\r\n", "\n").split("\n") if line.strip()]
    if not lines:
        return []

    def _clean(cell: str) -> str:
        cell = cell.strip()
        if len(cell) >= 2 and cell[0] == cell[-1] == '"':
            cell = cell[1:-1]
        return cell

    headers = [_clean(h).lower().replace("-", "_").replace(" ", "_") for h in lines[0].split("\t")]
    rows: List[Dict[str, str]] = []
    for line in lines[1:]:
        cells = [_clean(c) for c in line.split("\t")]
        cells += [""] * (len(headers) - len(cells))
        rows.append(dict(zip(headers, cells)))
    return rows


def get_report_document(ctx: SpApiContext, document_id: str) -> Dict[str, Any]:
    """Fetch the getReportDocument envelope (download url and compression)."""
    logger.info("[spapi_reports] get_report_document document_id=%s", document_id)
    return _get_json(ctx, f"/reports/2021-06-30/documents/{document_id}")


def download_report_document(ctx: SpApiContext, document: Dict[str, Any]) -> List[Dict[str, str]]:
    """
    Download a report document and parse it as TSV.

    The pre-signed URL carries its own auth, so no token header is sent. Document URLs
    expire; callers re-fetch the envelope instead of caching them.
    """
    url = document.get("url")
    if not url:
        raise RuntimeError(f"Missing download URL for document {document.get('reportDocumentId')}")
    resp = requests.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
    _check_response(resp, "report document download")

    content = resp.content
    compression = document.get("compressionAlgorithm")
    if compression and compression.upper() == "GZIP":
        try:
            content = gzip.decompress(content)
        except OSError:
            logger.warning("[spapi_reports] Document marked GZIP is not gzip; reading as plain text")
    text = content.decode("utf-8-sig", errors="ignore")
    rows = parse_tsv_report(text)
    logger.info(
        "[spapi_reports] document %s: %s bytes, %s rows (marketplace %s)",
        document.get("reportDocumentId"),
        len(content),
        len(rows),
        ctx.marketplace_id,
    )
    return rows


def list_inbound_shipments(
    ctx: SpApiContext,
    updated_after: str,
    updated_before: str,
    statuses: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """Inbound shipment headers (FBA Inbound v0), following NextToken pages."""
    params: Dict[str, Any] = {
        "MarketplaceId": ctx.marketplace_id,
        "QueryType": "DATE_RANGE",
        "ShipmentStatusList": ",".join(statuses or ["CLOSED"]),
        "LastUpdatedAfter": updated_after,
        "LastUpdatedBefore": updated_before,
    }
    shipments: List[Dict[str, Any]] = []
    while True:
        payload = _get_json(ctx, "/fba/inbound/v0/shipments", params).get("payload") or {}
        shipments.extend(payload.get("ShipmentData") or [])
        next_token = payload.get("NextToken")
        if not next_token:
            break
        params = {"MarketplaceId": ctx.marketplace_id, "QueryType": "NEXT_TOKEN", "NextToken": next_token}
    logger.info("[spapi_reports] list_inbound_shipments returned %s shipments", len(shipments))
    return shipments


def get_shipment_items(ctx: SpApiContext, shipment_id: str) -> List[Dict[str, Any]]:
    payload = _get_json(
        ctx,
        f"/fba/inbound/v0/shipments/{shipment_id}/items",
        {"MarketplaceId": ctx.marketplace_id},
    ).get("payload") or {}
    return payload.get("ItemData") or []
