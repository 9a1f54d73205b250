import logging
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_recent_timings: deque[Dict[str, Any]] = deque(maxlen=50)


def record_timing(label: str, duration_ms: float, scope: Optional[str] = None, ok: bool = True) -> None:
    _recent_timings.append(
        {
            "label": label,
            "scope": scope,
            "ok": ok,
            "duration_ms": round(duration_ms, 2),
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def get_recent_timings(label: Optional[str] = None) -> List[Dict[str, Any]]:
    if label is None:
        return list(_recent_timings)
    return [entry for entry in _recent_timings if entry["label"] == label]


@contextmanager
def time_block(label: str, scope: Optional[Any] = None):
    """Record how long a reconcile / merge run took, including failed runs."""
    start = perf_counter()
    ok = False
    try:
        yield
        ok = True
    finally:
        duration_ms = (perf_counter() - start) * 1000.0
        scope_label = str(scope) if scope is not None else None
        record_timing(label, duration_ms, scope=scope_label, ok=ok)
        logger.debug("[perf] %s %s took %.2fms ok=%s", label, scope_label or "-", duration_ms, ok)
