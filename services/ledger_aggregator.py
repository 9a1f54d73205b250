import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from services.reimbursement_models import LedgerRow

logger = logging.getLogger(__name__)


@dataclass
class LedgerAggregate:
    """Per-ASIN totals over one ledger snapshot."""

    lost: Dict[str, float] = field(default_factory=dict)
    found: Dict[str, float] = field(default_factory=dict)
    damaged: Dict[str, float] = field(default_factory=dict)
    disposed: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "LedgerAggregate":
        return cls()

    def asins(self) -> set:
        return set(self.lost) | set(self.found) | set(self.damaged) | set(self.disposed)


def _as_row(entry: Any) -> LedgerRow:
    if isinstance(entry, LedgerRow):
        return entry
    return LedgerRow.model_validate(entry)


def aggregate_ledger(rows: Optional[Iterable[Any]]) -> LedgerAggregate:
    """
    Sum lost, found, damaged and disposed units per ASIN.

    A ledger row is a daily (or monthly) line per FNSKU and disposition, so one ASIN
    spans many rows. Values are added as they come; metadata keeps the first
    ``msku`` / ``fnsku`` seen for the ASIN. Rows with no ASIN are skipped.
    """
    result = LedgerAggregate.empty()
    if not rows:
        return result

    skipped = 0
    for entry in rows:
        row = _as_row(entry)
        asin = row.asin
        if not asin:
            skipped += 1
            continue
        result.lost[asin] = result.lost.get(asin, 0.0) + row.lost
        result.found[asin] = result.found.get(asin, 0.0) + row.found
        result.damaged[asin] = result.damaged.get(asin, 0.0) + row.damaged
        result.disposed[asin] = result.disposed.get(asin, 0.0) + row.disposed
        if asin not in result.metadata:
            result.metadata[asin] = {"sku": row.msku, "fnsku": row.fnsku}

    if skipped:
        logger.warning("[LedgerAggregator] Skipped %s ledger rows without an ASIN", skipped)
    logger.debug("[LedgerAggregator] Aggregated %s ASINs", len(result.metadata))
    return result
