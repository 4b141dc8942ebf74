"""
Install nodes — runtime_sync and installer.

runtime_sync runs on the Skip path (and after a kept-existing issuance
failure).  It compares the runtime copy with the store entry and only asks
for an install when they differ or the runtime pair does not validate, so
a second run on healthy material writes nothing.

installer always installs what the store holds, never what is already at
the runtime location.
"""
from __future__ import annotations

import structlog

from lifecycle.errors import InstallError, LifecycleError
from lifecycle.installer import make_installer, make_runtime_target
from lifecycle.state import CycleState, record_error
from storage.store import make_store

log = structlog.get_logger(__name__)


def runtime_sync(state: CycleState) -> dict:
    primary = state["primary_domain"]
    try:
        entry = make_store().load(primary)
    except LifecycleError as exc:
        return {"in_sync": False, "pending_action": "install", **record_error(state, exc)}

    if entry is None:
        return {"in_sync": False, "pending_action": "install"}

    target = make_runtime_target()
    if make_installer().is_in_sync(entry.material, target):
        log.info("runtime copy in sync", domain=primary, runtime=str(target.cert_path))
        return {"in_sync": True}

    log.info("runtime copy stale; re-deriving from store", domain=primary, runtime=str(target.cert_path))
    return {"in_sync": False, "pending_action": "install"}


def installer(state: CycleState) -> dict:
    primary = state["primary_domain"]
    target = make_runtime_target()
    try:
        entry = make_store().load(primary)
        if entry is None:
            raise InstallError("store has no entry to install", domain=primary)
        result = make_installer().install(entry.material, target)
    except LifecycleError as exc:
        log.error("install failed", domain=primary, error=exc.kind, detail=str(exc))
        return {"installed": False, **record_error(state, exc)}

    log.info(
        "installed",
        domain=primary,
        runtime=str(target.cert_path),
        validation=result.summary(),
        issuer_class=result.issuer_class.value,
        not_after=result.not_after.isoformat() if result.not_after else None,
    )
    return {"installed": True, "final_validation": result}
