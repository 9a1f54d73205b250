import logging
import threading
from contextlib import contextmanager
from typing import Dict, Tuple

from services.reimbursement_models import Scope

LOGGER = logging.getLogger(__name__)

_locks: Dict[Tuple[str, str, str], threading.Lock] = {}
_locks_guard = threading.Lock()


def _lock_for(scope: Scope) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(scope.key())
        if lock is None:
            lock = threading.Lock()
            _locks[scope.key()] = lock
        return lock


@contextmanager
def scope_lock(scope: Scope, owner: str = "unknown"):
    """
    Serialize read-compute-write cycles for one scope within this process.

    Different scopes never block each other.
    """
    lock = _lock_for(scope)
    if not lock.acquire(blocking=False):
        LOGGER.info("[ScopeLock] %s waiting for %s", owner, scope)
        lock.acquire()
    try:
        yield
    finally:
        lock.release()


def is_scope_locked(scope: Scope) -> bool:
    return _lock_for(scope).locked()
