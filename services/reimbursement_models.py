"""
Record shapes for the reimbursement engine.

Amazon reports arrive as loosely typed TSV rows: numbers as strings, columns that come
and go between marketplaces. Everything is validated into these models at the ingestion
boundary so the calculation code only ever sees defaulted, typed values. Persisted and
API JSON uses the camelCase aliases.
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from config import DEFAULT_CURRENCY

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


class ReimbursementType(str, Enum):
    LOST = "LOST"
    DAMAGED = "DAMAGED"
    CUSTOMER_RETURN = "CUSTOMER_RETURN"
    FEE_CORRECTION = "FEE_CORRECTION"
    INBOUND_SHIPMENT = "INBOUND_SHIPMENT"
    REMOVAL_ORDER = "REMOVAL_ORDER"
    WAREHOUSE_DAMAGE = "WAREHOUSE_DAMAGE"
    INVENTORY_DIFFERENCE = "INVENTORY_DIFFERENCE"
    OTHER = "OTHER"


class ClaimStatus(str, Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    POTENTIAL = "POTENTIAL"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


class AmountBasis(str, Enum):
    PRICE = "PRICE"
    COST = "COST"


OPEN_STATUSES = frozenset({ClaimStatus.POTENTIAL, ClaimStatus.PENDING})
TERMINAL_STATUSES = frozenset({ClaimStatus.APPROVED, ClaimStatus.DENIED, ClaimStatus.EXPIRED})


def coerce_float(value: Any) -> float:
    """Parse a report number; absent or unparseable values count as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    try:
        parsed = float(str(value).strip().replace(",", ""))
    except ValueError:
        parsed = None
    if parsed is not None:
        return parsed if math.isfinite(parsed) else 0.0
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def coerce_int(value: Any) -> int:
    return int(coerce_float(value))


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Scope(BaseModel):
    """A seller's presence in one marketplace: every entity is partitioned by it."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    country: str
    region: str

    @field_validator("user_id", "country", "region", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return _text(value)

    def key(self) -> Tuple[str, str, str]:
        return (self.user_id, self.country, self.region)

    def __str__(self) -> str:
        return f"{self.user_id}/{self.country}/{self.region}"


class LedgerRow(_Model):
    date: Optional[str] = None
    asin: str = ""
    fnsku: str = ""
    msku: str = ""
    disposition: str = ""
    starting_balance: float = 0.0
    receipts: float = 0.0
    customer_shipments: float = 0.0
    customer_returns: float = 0.0
    found: float = 0.0
    lost: float = 0.0
    damaged: float = 0.0
    disposed: float = 0.0
    unknown_events: float = 0.0
    ending_balance: float = 0.0
    location: str = ""

    @field_validator(
        "starting_balance",
        "receipts",
        "customer_shipments",
        "customer_returns",
        "found",
        "lost",
        "damaged",
        "disposed",
        "unknown_events",
        "ending_balance",
        mode="before",
    )
    @classmethod
    def _numeric(cls, value: Any) -> float:
        return coerce_float(value)

    @field_validator("asin", "fnsku", "msku", "disposition", "location", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> str:
        return _text(value)


class FeeSnapshotItem(_Model):
    asin: str = ""
    sku: str = ""
    fnsku: str = ""
    sales_price: Optional[float] = None
    total_fee: float = 0.0
    reimbursement_per_unit: Optional[float] = None
    currency: str = DEFAULT_CURRENCY

    @field_validator("sales_price", "reimbursement_per_unit", mode="before")
    @classmethod
    def _optional_numeric(cls, value: Any) -> Optional[float]:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return coerce_float(value)

    @field_validator("total_fee", mode="before")
    @classmethod
    def _fee(cls, value: Any) -> float:
        return coerce_float(value)

    @field_validator("asin", "sku", "fnsku", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> str:
        return _text(value)

    @model_validator(mode="after")
    def _derive_per_unit(self) -> "FeeSnapshotItem":
        # A zero per-unit value in the feed means "not computed" when a price is known.
        if self.sales_price is not None and (
            self.reimbursement_per_unit is None or (self.reimbursement_per_unit == 0 and self.sales_price > 0)
        ):
            self.reimbursement_per_unit = self.sales_price - self.total_fee
        return self


class Product(_Model):
    sku: str = ""
    asin: str = ""
    price: float = 0.0

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, value: Any) -> float:
        return coerce_float(value)

    @field_validator("sku", "asin", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> str:
        return _text(value)


class ShipmentItem(_Model):
    sku: str = ""
    fnsku: str = ""
    quantity_shipped: int = 0
    quantity_received: int = 0

    @field_validator("quantity_shipped", "quantity_received", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> int:
        return coerce_int(value)

    @field_validator("sku", "fnsku", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> str:
        return _text(value)


class Shipment(_Model):
    shipment_id: str = ""
    shipment_name: str = ""
    shipment_date: Optional[datetime] = None
    status: str = ""
    items: List[ShipmentItem] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _text(value).upper()

    @field_validator("shipment_date", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class ReimbursementRecord(_Model):
    claim_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    reimbursement_id: str = ""
    asin: str = ""
    sku: str = ""
    fnsku: str = ""
    reimbursement_type: ReimbursementType = ReimbursementType.OTHER
    amount: float = 0.0
    currency: str = DEFAULT_CURRENCY
    quantity: int = 0
    reason_code: str = ""
    reason_description: str = ""
    case_id: str = ""
    status: ClaimStatus = ClaimStatus.APPROVED
    approval_date: Optional[datetime] = None
    reimbursement_date: Optional[datetime] = None
    discovery_date: Optional[datetime] = Field(default_factory=utc_now)
    expiry_date: Optional[datetime] = None
    days_to_deadline: Optional[int] = None
    is_automated: bool = False
    product_cost: Optional[float] = None
    amount_basis: AmountBasis = AmountBasis.PRICE
    shipment_id: str = ""
    shipment_name: str = ""
    retail_value: float = 0.0
    notes: str = ""

    @field_validator("status", "reimbursement_type", "amount_basis", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("amount", "retail_value", mode="before")
    @classmethod
    def _money(cls, value: Any) -> float:
        return coerce_float(value)

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> int:
        return coerce_int(value)

    @field_validator(
        "reimbursement_id",
        "asin",
        "sku",
        "fnsku",
        "reason_code",
        "reason_description",
        "case_id",
        "shipment_id",
        "shipment_name",
        "notes",
        mode="before",
    )
    @classmethod
    def _strings(cls, value: Any) -> str:
        return _text(value)

    @field_validator("approval_date", "reimbursement_date", "discovery_date", "expiry_date", mode="after")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def effective_date(self) -> Optional[datetime]:
        return self.reimbursement_date or self.discovery_date

    def merge_key(self) -> Tuple[str, str, ReimbursementType]:
        return (self.sku, self.shipment_id, self.reimbursement_type)


def _zero_by_type(kind: type) -> Dict[str, Any]:
    return {t.value: kind() for t in ReimbursementType}


class ReimbursementSummary(_Model):
    total_received: float = 0.0
    total_pending: float = 0.0
    total_potential: float = 0.0
    total_denied: float = 0.0
    count_by_type: Dict[str, int] = Field(default_factory=lambda: _zero_by_type(int))
    amount_by_type: Dict[str, float] = Field(default_factory=lambda: _zero_by_type(float))
    last7_days: float = Field(0.0, alias="last7Days")
    last30_days: float = Field(0.0, alias="last30Days")
    last90_days: float = Field(0.0, alias="last90Days")
    claims_expiring_in7_days: int = Field(0, alias="claimsExpiringIn7Days")
    claims_expiring_in30_days: int = Field(0, alias="claimsExpiringIn30Days")
    automated_count: int = 0
    manual_count: int = 0
    reimbursement_count: int = 0


class ReimbursementSet(_Model):
    reimbursements: List[ReimbursementRecord] = Field(default_factory=list)
    summary: ReimbursementSummary = Field(default_factory=ReimbursementSummary)
    last_fetch_date: Optional[datetime] = None
    data_source: str = "SP_API"


class BackendLostInventoryItem(_Model):
    asin: str
    sku: str = ""
    fnsku: str = ""
    lost_units: float = 0.0
    found_units: float = 0.0
    reimbursed_units: float = 0.0
    discrepancy_units: float = 0.0
    sales_price: float = 0.0
    fees: float = 0.0
    reimbursement_per_unit: float = 0.0
    expected_amount: float = 0.0
    currency: str = DEFAULT_CURRENCY
    is_underpaid: bool = False
    amount_per_unit: float = 0.0
    underpaid_expected_amount: float = 0.0


class LostInventorySummary(_Model):
    total_discrepancy_units: float = 0.0
    total_expected_amount: float = 0.0
    total_underpaid_items: int = 0
    total_underpaid_expected_amount: float = 0.0
    total_lost_units: float = 0.0
    total_found_units: float = 0.0
    total_reimbursed_units: float = 0.0


class LostInventoryResult(_Model):
    items: List[BackendLostInventoryItem] = Field(default_factory=list)
    summary: LostInventorySummary = Field(default_factory=LostInventorySummary)
    calculated_at: Optional[datetime] = None


class DamagedInventoryItem(_Model):
    asin: str
    sku: str = ""
    fnsku: str = ""
    damaged_units: float = 0.0
    sales_price: float = 0.0
    fees: float = 0.0
    reimbursement_per_unit: float = 0.0
    expected_amount: float = 0.0
    currency: str = DEFAULT_CURRENCY


class DamagedInventorySummary(_Model):
    total_damaged_units: float = 0.0
    total_expected_amount: float = 0.0


class DamagedInventoryResult(_Model):
    items: List[DamagedInventoryItem] = Field(default_factory=list)
    summary: DamagedInventorySummary = Field(default_factory=DamagedInventorySummary)


class DisposedInventoryItem(_Model):
    asin: str
    sku: str = ""
    fnsku: str = ""
    disposed_units: float = 0.0
    sales_price: float = 0.0
    fees: float = 0.0
    reimbursement_per_unit: float = 0.0
    expected_amount: float = 0.0
    currency: str = DEFAULT_CURRENCY


class DisposedInventorySummary(_Model):
    total_products: int = 0
    total_disposed_units: float = 0.0
    total_expected_amount: float = 0.0


class DisposedInventoryResult(_Model):
    items: List[DisposedInventoryItem] = Field(default_factory=list)
    summary: DisposedInventorySummary = Field(default_factory=DisposedInventorySummary)


class MissingPrecondition(_Model):
    """An upstream snapshot the calculation needs has not been fetched yet."""

    missing: str
    message: str
