"""Per-cycle write serialization.

Every write to a billing cycle's member-charge snapshot goes through
``cycle_guard``. Inside one process a per-cycle lock orders the writers; across
processes the row is read FOR UPDATE (where the database supports it) and the
``version_id`` column turns the final UPDATE into a compare-and-swap.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator
from weakref import WeakValueDictionary

from sqlalchemy.orm import Session

from roomsplit.models.billing_cycle import BillingCycle

logger = logging.getLogger(__name__)

# Entries disappear once no thread holds a reference to the lock
_cycle_locks: "WeakValueDictionary[int, threading.RLock]" = WeakValueDictionary()
_registry_lock = threading.Lock()


def get_cycle_lock(cycle_id: int) -> threading.RLock:
    """Return the process-wide lock for a cycle id."""
    with _registry_lock:
        lock = _cycle_locks.get(cycle_id)
        if lock is None:
            lock = threading.RLock()
            _cycle_locks[cycle_id] = lock
        return lock


@contextmanager
def cycle_guard(db: Session, cycle_id: int) -> Iterator[BillingCycle | None]:
    """Hold the cycle's write lock and yield a freshly loaded cycle row.

    Yields None when the cycle does not exist. The caller commits or rolls back
    inside the block; the lock is released afterwards.
    """
    lock = get_cycle_lock(cycle_id)
    with lock:
        cycle = (
            db.query(BillingCycle)
            .filter(BillingCycle.id == cycle_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        logger.debug("Acquired write guard for cycle %s", cycle_id)
        yield cycle


__all__ = ["cycle_guard", "get_cycle_lock"]
