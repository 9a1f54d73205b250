"""
SQLite-backed snapshot store, one JSON document per scope and kind.

Documents are replaced wholesale on write. Ledger snapshots are the exception: every
fetch appends a row and readers take the newest one.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional

from services import db as db_service
from services.reimbursement_models import (
    ClaimStatus,
    FeeSnapshotItem,
    LedgerRow,
    LostInventoryResult,
    Product,
    ReimbursementRecord,
    ReimbursementSet,
    Scope,
    Shipment,
)

logger = logging.getLogger(__name__)

KIND_FEE_SNAPSHOT = "fee_snapshot"
KIND_SHIPMENTS = "shipments"
KIND_PRODUCTS = "products"
KIND_REIMBURSEMENTS = "reimbursements"
KIND_LOST_INVENTORY = "lost_inventory"


class ReimbursementStoreError(RuntimeError):
    """A read or write against the reimbursement store failed."""


def _utc_iso(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True)
    return value


def _read_document_in(conn: sqlite3.Connection, scope: Scope, kind: str) -> Optional[Any]:
    row = conn.execute(
        f"""
        SELECT payload FROM {db_service.DOCUMENTS_TABLE}
        WHERE user_id = ? AND country = ? AND region = ? AND kind = ?
        """,
        (*scope.key(), kind),
    ).fetchone()
    if not row:
        return None
    return json.loads(row["payload"])


def _write_document_in(conn: sqlite3.Connection, scope: Scope, kind: str, payload: Any) -> None:
    conn.execute(
        f"""
        INSERT INTO {db_service.DOCUMENTS_TABLE} (user_id, country, region, kind, payload, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, country, region, kind) DO UPDATE SET
            payload = excluded.payload,
            updated_at = excluded.updated_at
        """,
        (*scope.key(), kind, json.dumps(_dump(payload)), _utc_iso()),
    )


def read_document(scope: Scope, kind: str) -> Optional[Any]:
    try:
        db_service.ensure_reimbursement_tables()
        with db_service.get_db_connection() as conn:
            return _read_document_in(conn, scope, kind)
    except (sqlite3.Error, ValueError) as exc:
        logger.error("[ReimbursementStore] Failed to read %s for %s: %s", kind, scope, exc, exc_info=True)
        raise ReimbursementStoreError(f"Failed to read {kind} for {scope}: {exc}") from exc


def write_document(scope: Scope, kind: str, payload: Any) -> None:
    try:
        db_service.ensure_reimbursement_tables()
        with db_service.write_transaction() as conn:
            _write_document_in(conn, scope, kind, payload)
    except sqlite3.Error as exc:
        logger.error("[ReimbursementStore] Failed to write %s for %s: %s", kind, scope, exc, exc_info=True)
        raise ReimbursementStoreError(f"Failed to write {kind} for {scope}: {exc}") from exc


# ----------------------------
# Ledger snapshots (append-only)
# ----------------------------
def append_ledger_snapshot(
    scope: Scope,
    rows: Iterable[LedgerRow],
    fetched_at: Optional[datetime] = None,
) -> int:
    rows = list(rows)
    try:
        db_service.ensure_reimbursement_tables()
        with db_service.write_transaction() as conn:
            cur = conn.execute(
                f"""
                INSERT INTO {db_service.LEDGER_SNAPSHOTS_TABLE}
                    (user_id, country, region, fetched_at, row_count, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (*scope.key(), _utc_iso(fetched_at), len(rows), json.dumps(_dump(rows))),
            )
            snapshot_id = cur.lastrowid
    except sqlite3.Error as exc:
        logger.error("[ReimbursementStore] Failed to append ledger snapshot for %s: %s", scope, exc, exc_info=True)
        raise ReimbursementStoreError(f"Failed to append ledger snapshot for {scope}: {exc}") from exc
    logger.info("[ReimbursementStore] Stored ledger snapshot %s for %s (%s rows)", snapshot_id, scope, len(rows))
    return snapshot_id


def get_latest_ledger_snapshot(scope: Scope) -> Optional[List[LedgerRow]]:
    try:
        db_service.ensure_reimbursement_tables()
        with db_service.get_db_connection() as conn:
            row = conn.execute(
                f"""
                SELECT payload FROM {db_service.LEDGER_SNAPSHOTS_TABLE}
                WHERE user_id = ? AND country = ? AND region = ?
                ORDER BY fetched_at DESC, id DESC
                LIMIT 1
                """,
                scope.key(),
            ).fetchone()
    except sqlite3.Error as exc:
        logger.error("[ReimbursementStore] Failed to read ledger snapshot for %s: %s", scope, exc, exc_info=True)
        raise ReimbursementStoreError(f"Failed to read ledger snapshot for {scope}: {exc}") from exc
    if not row:
        return None
    return [LedgerRow.model_validate(item) for item in json.loads(row["payload"])]


# ----------------------------
# Scope documents
# ----------------------------
def get_latest_fee_snapshot(scope: Scope) -> Optional[List[FeeSnapshotItem]]:
    payload = read_document(scope, KIND_FEE_SNAPSHOT)
    if payload is None:
        return None
    return [FeeSnapshotItem.model_validate(item) for item in payload]


def save_fee_snapshot(scope: Scope, items: Iterable[FeeSnapshotItem]) -> None:
    write_document(scope, KIND_FEE_SNAPSHOT, list(items))


def get_closed_shipments(scope: Scope) -> List[Shipment]:
    payload = read_document(scope, KIND_SHIPMENTS) or []
    return [Shipment.model_validate(item) for item in payload]


def save_shipments(scope: Scope, shipments: Iterable[Shipment]) -> None:
    write_document(scope, KIND_SHIPMENTS, list(shipments))


def get_products(scope: Scope) -> List[Product]:
    payload = read_document(scope, KIND_PRODUCTS) or []
    return [Product.model_validate(item) for item in payload]


def save_products(scope: Scope, products: Iterable[Product]) -> None:
    write_document(scope, KIND_PRODUCTS, list(products))


def get_reimbursement_set(scope: Scope) -> Optional[ReimbursementSet]:
    payload = read_document(scope, KIND_REIMBURSEMENTS)
    if payload is None:
        return None
    return ReimbursementSet.model_validate(payload)


def save_reimbursement_set(scope: Scope, reimbursement_set: ReimbursementSet) -> None:
    write_document(scope, KIND_REIMBURSEMENTS, reimbursement_set)


def update_reimbursement_set(
    scope: Scope,
    update: Callable[[Optional[ReimbursementSet]], Optional[ReimbursementSet]],
) -> Optional[ReimbursementSet]:
    """
    Read, transform and write the claim document inside one IMMEDIATE transaction.

    ``update`` receives the current set (None when the scope has none yet) and returns
    the replacement, or None to leave the stored document untouched.
    """
    try:
        db_service.ensure_reimbursement_tables()
        with db_service.write_transaction() as conn:
            payload = _read_document_in(conn, scope, KIND_REIMBURSEMENTS)
            current = ReimbursementSet.model_validate(payload) if payload is not None else None
            updated = update(current)
            if updated is not None:
                _write_document_in(conn, scope, KIND_REIMBURSEMENTS, updated)
            return updated
    except sqlite3.Error as exc:
        logger.error("[ReimbursementStore] Failed to update claims for %s: %s", scope, exc, exc_info=True)
        raise ReimbursementStoreError(f"Failed to update claims for {scope}: {exc}") from exc


def get_approved_reimbursements(scope: Scope) -> List[ReimbursementRecord]:
    """Claims Amazon has paid or is processing (APPROVED / PENDING)."""
    current = get_reimbursement_set(scope)
    if current is None:
        return []
    return [
        record
        for record in current.reimbursements
        if record.status in (ClaimStatus.APPROVED, ClaimStatus.PENDING)
    ]


def get_lost_inventory_result(scope: Scope) -> Optional[LostInventoryResult]:
    payload = read_document(scope, KIND_LOST_INVENTORY)
    if payload is None:
        return None
    return LostInventoryResult.model_validate(payload)


def save_lost_inventory_result(scope: Scope, result: LostInventoryResult) -> None:
    write_document(scope, KIND_LOST_INVENTORY, result)
