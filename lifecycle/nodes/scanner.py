"""
material_scanner node — load the DomainSet's store entry and validate it.

Populates state["existing"] with a fresh ValidationResult (None when the
store has no entry).  An entry that cannot be read is reported as
Unreadable rather than raised, so the decider treats it as absent.
"""
from __future__ import annotations

import structlog

from lifecycle.errors import Unreadable
from lifecycle.models import IssuerClass, ValidationFailureKind, ValidationResult
from lifecycle.state import CycleState
from lifecycle.validator import make_validator
from storage.store import make_store

log = structlog.get_logger(__name__)


def material_scanner(state: CycleState) -> dict:
    primary = state["primary_domain"]
    store = make_store()

    try:
        entry = store.load(primary)
    except Unreadable as exc:
        existing = ValidationResult(
            well_formed=False,
            matches_key=False,
            not_after=None,
            issuer_class=IssuerClass.UNKNOWN,
            failure=ValidationFailureKind.UNREADABLE,
            detail=str(exc),
        )
        log.warning("store entry unreadable", domain=primary, validation=existing.summary(), detail=str(exc))
        return {"existing": existing, "existing_source": None, "existing_layout": None, "rescan": False}

    if entry is None:
        log.info("no store entry", domain=primary)
        return {"existing": None, "existing_source": None, "existing_layout": None, "rescan": False}

    existing = make_validator().validate(entry.material)
    log.info(
        "store entry scanned",
        domain=primary,
        layout=entry.layout,
        source=entry.source.value if entry.source else None,
        validation=existing.summary(),
        issuer_class=existing.issuer_class.value,
        not_after=existing.not_after.isoformat() if existing.not_after else None,
    )
    return {
        "existing": existing,
        "existing_source": entry.source.value if entry.source else None,
        "existing_layout": entry.layout,
        "rescan": False,
    }
