import logging
import os
from pathlib import Path

# Load .env early so os.getenv picks up local dev settings.
try:  # pragma: no cover - environment bootstrap
    from dotenv import load_dotenv

    _DOTENV_PATHS = [Path.cwd() / ".env", Path(__file__).resolve().parent / ".env"]
    for _env_path in _DOTENV_PATHS:
        if _env_path.exists():
            load_dotenv(dotenv_path=_env_path, override=False)
except Exception as exc:
    logging.getLogger(__name__).warning("Failed to load .env: %s", exc)

APP_NAME = "FBA Reimbursement Reconciliation"
APP_VERSION = "1.0.0"

# ----------------------------
# Helpers
# ----------------------------
def _csv_list(name: str, default: str = "") -> list[str]:
    raw = (os.getenv(name) or default).strip()
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _csv_map(name: str) -> dict[str, float]:
    """Parse "UK:45,IN:30" style overrides keyed by upper-cased country code."""
    result: dict[str, float] = {}
    for entry in _csv_list(name):
        key, sep, value = entry.partition(":")
        if not sep:
            continue
        try:
            result[key.strip().upper()] = float(value)
        except ValueError:
            logging.getLogger(__name__).warning("Ignoring bad %s entry %r", name, entry)
    return result

# ----------------------------
# Storage
# ----------------------------
REIMBURSEMENT_DB_PATH = Path(
    os.getenv("REIMBURSEMENT_DB_PATH") or Path(__file__).resolve().parent / "reimbursements.db"
)

# ----------------------------
# Business rules
# ----------------------------
# Amazon accepts inbound discrepancy claims for 60 days after the shipment date.
CLAIM_WINDOW_DAYS = _env_int("CLAIM_WINDOW_DAYS", 60)
# A lost-warehouse payout below 40% of (sales price - fees) per unit is treated as underpaid.
UNDERPAID_THRESHOLD_RATIO = _env_float("UNDERPAID_THRESHOLD_RATIO", 0.4)
CLAIM_WINDOW_DAYS_BY_COUNTRY = _csv_map("CLAIM_WINDOW_DAYS_BY_COUNTRY")
UNDERPAID_THRESHOLD_BY_COUNTRY = _csv_map("UNDERPAID_THRESHOLD_BY_COUNTRY")

# PRICE: potential claims are valued at (sales price - fees).
# COST: potential claims are valued at product cost once costs are supplied.
CLAIM_VALUATION_BASIS = (os.getenv("CLAIM_VALUATION_BASIS") or "PRICE").strip().upper()
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# ----------------------------
# Upstream fetch window
# ----------------------------
SHIPMENT_LOOKBACK_DAYS = _env_int("SHIPMENT_LOOKBACK_DAYS", 30)
SHIPMENT_FETCH_CONCURRENCY = _env_int("SHIPMENT_FETCH_CONCURRENCY", 3)
SPAPI_HOST = os.getenv("SPAPI_HOST", "https://sellingpartnerapi-na.amazon.com")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def claim_window_days_for(country: str | None) -> int:
    override = CLAIM_WINDOW_DAYS_BY_COUNTRY.get((country or "").strip().upper())
    return int(override) if override is not None else CLAIM_WINDOW_DAYS


def underpaid_threshold_for(country: str | None) -> float:
    override = UNDERPAID_THRESHOLD_BY_COUNTRY.get((country or "").strip().upper())
    return override if override is not None else UNDERPAID_THRESHOLD_RATIO
