"""
Report ingestion boundary.

Raw report rows (already parsed from TSV by spapi_reports) are normalized into the
engine's models here and written to the store. Each ``ingest_*`` function takes a
``fetcher`` callable so schedulers can plug in the live SP-API call and tests can plug in
a stub. A fetcher that raises is treated as "no data yet": the failure is logged,
nothing is written, and None is returned.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from config import DEFAULT_CURRENCY, SHIPMENT_FETCH_CONCURRENCY, SHIPMENT_LOOKBACK_DAYS
from services import reimbursement_store as store
from services.async_utils import run_single_arg_settled
from services.claim_merge import merge_claims
from services.reimbursement_classifier import classify_reason
from services.reimbursement_models import (
    ClaimStatus,
    FeeSnapshotItem,
    LedgerRow,
    MissingPrecondition,
    Product,
    ReimbursementRecord,
    ReimbursementSet,
    Scope,
    Shipment,
    ShipmentItem,
    coerce_float,
    ensure_utc,
)
from services.lost_inventory import reconcile_lost_inventory
from services.shipment_discrepancy import detect_and_merge_shipment_claims, parse_shipment_date
from services.spapi_reports import (
    SpApiContext,
    download_report_document,
    get_report_document,
    get_shipment_items,
    list_inbound_shipments,
)

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Any]

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y-%m-%d %H:%M:%S")


def _first(row: Dict[str, Any], *keys: str, default: Any = "") -> Any:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return default


def parse_report_date(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    logger.warning("[ReportIngest] Could not parse date value %r", value)
    return None


# ----------------------------
# Normalizers
# ----------------------------
def ledger_rows_from_report(rows: Iterable[Dict[str, Any]]) -> List[LedgerRow]:
    """
    Inventory ledger summary view -> LedgerRow.

    Amazon reports losses, damage and disposals as negative adjustments; they are
    stored as magnitudes so those totals are unit counts.
    """
    ledger: List[LedgerRow] = []
    for row in rows or []:
        ledger.append(
            LedgerRow(
                date=_first(row, "date", default=None),
                asin=_first(row, "asin"),
                fnsku=_first(row, "fnsku"),
                msku=_first(row, "msku", "sku"),
                disposition=_first(row, "disposition"),
                starting_balance=_first(row, "starting_warehouse_balance", "starting_balance", default=0),
                receipts=_first(row, "receipts", default=0),
                customer_shipments=_first(row, "customer_shipments", default=0),
                customer_returns=_first(row, "customer_returns", default=0),
                found=_first(row, "found", default=0),
                lost=abs(coerce_float(_first(row, "lost", default=0))),
                damaged=abs(coerce_float(_first(row, "damaged", default=0))),
                disposed=abs(coerce_float(_first(row, "disposed", default=0))),
                unknown_events=_first(row, "unknown_events", default=0),
                ending_balance=_first(row, "ending_warehouse_balance", "ending_balance", default=0),
                location=_first(row, "location"),
            )
        )
    return ledger


def fee_items_from_report(rows: Iterable[Dict[str, Any]]) -> List[FeeSnapshotItem]:
    """FBA estimated fees report -> FeeSnapshotItem."""
    items: List[FeeSnapshotItem] = []
    for row in rows or []:
        if not _first(row, "asin", "sku"):
            logger.warning("[ReportIngest] Fee row without asin or sku skipped")
            continue
        items.append(
            FeeSnapshotItem(
                asin=_first(row, "asin"),
                sku=_first(row, "sku", "seller_sku"),
                fnsku=_first(row, "fnsku"),
                sales_price=_first(row, "your_price", "sales_price", default=None),
                total_fee=_first(row, "estimated_fee_total", "total_fee", default=0),
                reimbursement_per_unit=_first(row, "reimbursement_per_unit", default=None),
                currency=_first(row, "currency", default=DEFAULT_CURRENCY),
            )
        )
    return items


def reimbursements_from_report(rows: Iterable[Dict[str, Any]]) -> List[ReimbursementRecord]:
    """FBA reimbursements report -> APPROVED, automated ReimbursementRecord."""
    records: List[ReimbursementRecord] = []
    for row in rows or []:
        reason = _first(row, "reason", "reason_code")
        approval_date = parse_report_date(_first(row, "approval_date", default=None))
        reimbursement_date = parse_report_date(_first(row, "reimbursed_date", "reimbursement_date", default=None))
        records.append(
            ReimbursementRecord(
                reimbursement_id=_first(row, "reimbursement_id", "case_id"),
                asin=_first(row, "asin"),
                sku=_first(row, "sku"),
                fnsku=_first(row, "fnsku"),
                reimbursement_type=classify_reason(reason),
                amount=_first(row, "amount_total", "reimbursed_amount", default=0),
                currency=_first(row, "currency_unit", "currency", default=DEFAULT_CURRENCY),
                quantity=_first(row, "quantity_reimbursed_total", "quantity", default=0),
                reason_code=reason,
                reason_description=_first(row, "reason_description"),
                case_id=_first(row, "case_id"),
                status=ClaimStatus.APPROVED,
                approval_date=approval_date,
                reimbursement_date=reimbursement_date or approval_date,
                is_automated=True,
                shipment_id=_first(row, "shipment_id"),
                notes=_first(row, "comments"),
                retail_value=_first(row, "original_reimbursement_amount", default=0),
            )
        )
    return records


def products_from_listing(rows: Iterable[Dict[str, Any]]) -> List[Product]:
    products: List[Product] = []
    for row in rows or []:
        sku = _first(row, "sku", "seller_sku")
        if not sku:
            continue
        products.append(
            Product(
                sku=sku,
                asin=_first(row, "asin", "asin1"),
                price=_first(row, "price", "your_price", default=0),
            )
        )
    return products


def shipment_from_api(header: Dict[str, Any], items: Iterable[Dict[str, Any]]) -> Shipment:
    """FBA Inbound v0 ShipmentData + ItemData -> Shipment."""
    return Shipment(
        shipment_id=header.get("ShipmentId") or "",
        shipment_name=header.get("ShipmentName") or "",
        status=header.get("ShipmentStatus") or "",
        items=[
            ShipmentItem(
                sku=item.get("SellerSKU"),
                fnsku=item.get("FulfillmentNetworkSKU"),
                quantity_shipped=item.get("QuantityShipped"),
                quantity_received=item.get("QuantityReceived"),
            )
            for item in items or []
        ],
    )


def select_claimable_shipments(
    shipments: Iterable[Any],
    now: Optional[datetime] = None,
    lookback_days: Optional[int] = None,
) -> List[Shipment]:
    """Keep CLOSED shipments with a known date inside the lookback window."""
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    cutoff = now - timedelta(days=SHIPMENT_LOOKBACK_DAYS if lookback_days is None else lookback_days)
    selected: List[Shipment] = []
    for entry in shipments or []:
        shipment = entry if isinstance(entry, Shipment) else Shipment.model_validate(entry)
        if shipment.status != "CLOSED":
            continue
        shipment_date = parse_shipment_date(shipment)
        if shipment_date is None or shipment_date < cutoff:
            continue
        selected.append(shipment)
    return selected


# ----------------------------
# Fetch + store
# ----------------------------
def _fetch(label: str, scope: Scope, fetcher: Fetcher) -> Optional[Any]:
    try:
        return fetcher()
    except Exception as exc:
        logger.error("[ReportIngest] %s fetch failed for %s: %s", label, scope, exc, exc_info=True)
        return None


def ingest_ledger_report(
    scope: Scope,
    fetcher: Fetcher,
    fetched_at: Optional[datetime] = None,
) -> Optional[List[LedgerRow]]:
    raw = _fetch("ledger", scope, fetcher)
    if raw is None:
        return None
    rows = ledger_rows_from_report(raw)
    store.append_ledger_snapshot(scope, rows, fetched_at=fetched_at)
    return rows


def ingest_fee_report(scope: Scope, fetcher: Fetcher) -> Optional[List[FeeSnapshotItem]]:
    raw = _fetch("fee", scope, fetcher)
    if raw is None:
        return None
    items = fee_items_from_report(raw)
    store.save_fee_snapshot(scope, items)
    logger.info("[ReportIngest] Stored %s fee entries for %s", len(items), scope)
    return items


def ingest_products(scope: Scope, fetcher: Fetcher) -> Optional[List[Product]]:
    raw = _fetch("products", scope, fetcher)
    if raw is None:
        return None
    products = products_from_listing(raw)
    store.save_products(scope, products)
    logger.info("[ReportIngest] Stored %s products for %s", len(products), scope)
    return products


def ingest_reimbursement_report(
    scope: Scope,
    fetcher: Fetcher,
    now: Optional[datetime] = None,
) -> Optional[ReimbursementSet]:
    """Replace the scope's approved reimbursements with the freshly fetched report."""
    raw = _fetch("reimbursement", scope, fetcher)
    if raw is None:
        return None
    records = reimbursements_from_report(raw)
    logger.info("[ReportIngest] %s approved reimbursements fetched for %s", len(records), scope)
    return merge_claims(scope, [], fresh_approved=records, now=now)


def ingest_shipments(
    scope: Scope,
    fetcher: Fetcher,
    now: Optional[datetime] = None,
) -> Optional[List[Shipment]]:
    raw = _fetch("shipments", scope, fetcher)
    if raw is None:
        return None
    shipments = select_claimable_shipments(raw, now=now)
    store.save_shipments(scope, shipments)
    logger.info("[ReportIngest] Stored %s closed shipments for %s", len(shipments), scope)
    return shipments


async def fetch_shipment_details(
    shipment_ids: Iterable[str],
    fetch_one: Callable[[str], List[Dict[str, Any]]],
    max_concurrency: Optional[int] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Fetch item details for many shipments, a few at a time.

    A shipment whose fetch fails is logged and left out of the result.
    """
    limit = SHIPMENT_FETCH_CONCURRENCY if max_concurrency is None else max_concurrency
    outcomes = await run_single_arg_settled(fetch_one, list(shipment_ids), max_concurrency=limit)
    details: Dict[str, List[Dict[str, Any]]] = {}
    for shipment_id, items, error in outcomes:
        if error is not None:
            logger.warning("[ReportIngest] Dropping shipment %s: %s", shipment_id, error)
            continue
        details[shipment_id] = items or []
    return details


def spapi_shipment_fetcher(ctx: SpApiContext, now: Optional[datetime] = None) -> Fetcher:
    """Build an ``ingest_shipments`` fetcher that reads closed shipments from SP-API."""

    def _fetch_shipments() -> List[Shipment]:
        end = ensure_utc(now) if now else datetime.now(timezone.utc)
        start = end - timedelta(days=SHIPMENT_LOOKBACK_DAYS)
        headers = list_inbound_shipments(ctx, start.isoformat(), end.isoformat(), statuses=["CLOSED"])
        by_id = {h.get("ShipmentId"): h for h in headers if h.get("ShipmentId")}
        details = asyncio.run(
            fetch_shipment_details(by_id.keys(), lambda shipment_id: get_shipment_items(ctx, shipment_id))
        )
        return [shipment_from_api(by_id[sid], items) for sid, items in details.items()]

    return _fetch_shipments


# ----------------------------
# Scope sync
# ----------------------------
REPORT_KINDS = ("products", "fees", "ledger", "reimbursements")


def document_fetcher(ctx: SpApiContext, document_id: str) -> Fetcher:
    """Build a fetcher that downloads one finished report document as TSV rows."""

    def _fetch_rows() -> List[Dict[str, str]]:
        return download_report_document(ctx, get_report_document(ctx, document_id))

    return _fetch_rows


def _count(value: Optional[Any]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, ReimbursementSet):
        return len(value.reimbursements)
    return len(value)


def sync_scope_reports(
    scope: Scope,
    ctx: SpApiContext,
    document_ids: Optional[Dict[str, str]] = None,
    include_shipments: bool = True,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Ingest the given report documents for one scope, then recompute its claims.

    ``document_ids`` maps a report kind (see REPORT_KINDS) to a finished report document
    id. Kinds left out are not touched. Closed shipments are listed live when
    ``include_shipments`` is set. Afterwards shipment discrepancies are detected and,
    when a ledger was ingested, lost inventory is reconciled.

    The result maps each kind to the number of rows stored, or None when it was skipped
    or its fetch failed.
    """
    document_ids = {k.strip().lower(): v for k, v in (document_ids or {}).items() if v}
    unknown = sorted(set(document_ids) - set(REPORT_KINDS))
    if unknown:
        raise ValueError(f"Unknown report kinds {unknown}; expected one of {list(REPORT_KINDS)}")

    ingesters: Dict[str, Callable[[Fetcher], Any]] = {
        "products": lambda fetcher: ingest_products(scope, fetcher),
        "fees": lambda fetcher: ingest_fee_report(scope, fetcher),
        "ledger": lambda fetcher: ingest_ledger_report(scope, fetcher, fetched_at=now),
        "reimbursements": lambda fetcher: ingest_reimbursement_report(scope, fetcher, now=now),
    }
    counts: Dict[str, Any] = {}
    for kind in REPORT_KINDS:
        document_id = document_ids.get(kind)
        if not document_id:
            counts[kind] = None
            continue
        logger.info("[ReportIngest] Syncing %s for %s from document %s", kind, scope, document_id)
        counts[kind] = _count(ingesters[kind](document_fetcher(ctx, document_id)))

    counts["shipments"] = None
    if include_shipments:
        counts["shipments"] = _count(ingest_shipments(scope, spapi_shipment_fetcher(ctx, now=now), now=now))

    claims = detect_and_merge_shipment_claims(scope, now=now)
    counts["claims"] = len(claims.reimbursements)
    if counts["ledger"]:
        lost = reconcile_lost_inventory(scope, now=now)
        if not isinstance(lost, MissingPrecondition):
            counts["lostInventoryItems"] = len(lost.items)
    logger.info("[ReportIngest] Sync finished for %s: %s", scope, counts)
    return counts
