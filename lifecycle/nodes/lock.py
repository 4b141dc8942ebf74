"""
lock_acquirer node + the registry of held writer locks.

The DomainLock is an open file descriptor, which has no business in graph
state, so held locks live in a module-level registry keyed by primary
domain.  Acquiring twice in one cycle is a no-op (the keep-existing path
passes through lock_acquirer again); cycle_reporter releases it, and
run_cycle() calls release_all_locks() as a final guard.

The decision that led here was made without the lock, so a fresh
acquisition sets "rescan": the graph goes back through material_scanner
and lifecycle_decider before acting, in case another writer replaced the
store entry while this run was waiting.
"""
from __future__ import annotations

from typing import Dict

import structlog

from lifecycle.errors import LockHeldError
from lifecycle.state import CycleState, record_error
from storage.lock import DomainLock
from storage.store import make_store

log = structlog.get_logger(__name__)

_held: Dict[str, DomainLock] = {}


def lock_acquirer(state: CycleState) -> dict:
    primary = state["primary_domain"]
    if primary in _held:
        return {"lock_held": True, "rescan": False}

    lock = make_store().lock(primary, timeout=state.get("lock_timeout", 0.0))
    try:
        lock.acquire()
    except LockHeldError as exc:
        log.error("writer lock busy", domain=primary, lock=str(lock.path))
        return {"lock_held": False, **record_error(state, exc)}

    _held[primary] = lock
    log.debug("writer lock acquired; re-scanning", domain=primary, lock=str(lock.path))
    return {"lock_held": True, "rescan": True}


def release_lock(primary: str) -> None:
    lock = _held.pop(primary, None)
    if lock is not None:
        lock.release()


def release_all_locks() -> None:
    for primary in list(_held):
        release_lock(primary)
