"""
Issuance nodes — acme_issuer, fallback_issuer, issuance_failure_handler.

Both issuers hand their material straight to the MaterialStore with the
PairValidator as the verify callback, so a pair only becomes the current
store entry after its stored copy validates.  Material never enters state.
"""
from __future__ import annotations

import structlog

from acme.issuer import make_acme_issuer
from lifecycle.errors import IssuanceError, LifecycleError
from lifecycle.fallback import make_fallback_issuer
from lifecycle.models import IssuerClass, MaterialSource
from lifecycle.state import CycleState, add_warning, domain_set_of, record_error
from lifecycle.validator import make_validator
from storage.store import make_store

log = structlog.get_logger(__name__)


def acme_issuer(state: CycleState) -> dict:
    """Request a certificate from the public CA and store it."""
    domain_set = domain_set_of(state)
    validator = make_validator()

    try:
        material = make_acme_issuer().issue(domain_set, state.get("contact_email", ""))
        entry = make_store().save(domain_set, material, MaterialSource.ACME, verify=validator.validate)
    except IssuanceError as exc:
        log.error("issuance failed", domain=domain_set.primary, error=exc.kind, detail=str(exc))
        return _issuance_failed(state, exc.kind, exc)
    except LifecycleError as exc:
        # The CA answered, but what came back does not validate
        log.error("issued material rejected", domain=domain_set.primary, validation=exc.kind, detail=str(exc))
        return _issuance_failed(state, exc.kind, exc)
    except OSError as exc:
        log.error("store write failed", domain=domain_set.primary, detail=str(exc))
        return _issuance_failed(state, "InstallError", exc)

    result = validator.validate(entry.material)
    log.info(
        "certificate issued",
        domain=domain_set.primary,
        version=entry.version,
        issuer_class=result.issuer_class.value,
        not_after=result.not_after.isoformat() if result.not_after else None,
    )
    return {"issued_source": MaterialSource.ACME.value, "issuance_error": None}


def _issuance_failed(state: CycleState, kind: str, exc: Exception) -> dict:
    return {
        "issued_source": None,
        "issuance_error": kind,
        "error_log": list(state.get("error_log", [])) + [str(exc)],
    }


def issuance_failure_handler(state: CycleState) -> dict:
    """
    Decide what an issuance failure means for this cycle.

      keep_existing — the store still holds an installable pair: keep it and
                      make sure the runtime copy matches it.  Exits with the
                      issuance error unless that pair is the permitted
                      self-signed fallback.
      fallback      — nothing installable and fallback allowed: generate one
                      (exit 0 with a warning).
      abort         — nothing installable, fallback not allowed.
    """
    primary = state["primary_domain"]
    kind = state.get("issuance_error") or "IssuanceError"
    existing = state.get("existing")
    allow_fallback = state.get("allow_fallback", False)

    if existing is not None and existing.installable:
        if existing.issuer_class == IssuerClass.SELF_SIGNED and allow_fallback:
            message = f"{kind} while upgrading {primary}; keeping the self-signed fallback"
            log.warning("keeping fallback", domain=primary, error=kind)
            return {"failure_action": "keep_existing", **add_warning(state, message)}
        log.error("keeping existing certificate", domain=primary, error=kind)
        return {"failure_action": "keep_existing", "error_kind": state.get("error_kind") or kind}

    if allow_fallback:
        message = f"{kind} for {primary}; installing a self-signed fallback"
        log.warning("falling back to self-signed", domain=primary, error=kind)
        return {"failure_action": "fallback", **add_warning(state, message)}

    log.error("no installable material and fallback disabled", domain=primary, error=kind)
    return {"failure_action": "abort", "error_kind": state.get("error_kind") or kind}


def fallback_issuer(state: CycleState) -> dict:
    """Generate and store a self-signed pair."""
    domain_set = domain_set_of(state)
    validator = make_validator()
    try:
        material = make_fallback_issuer().generate(domain_set)
        entry = make_store().save(domain_set, material, MaterialSource.SELF_SIGNED, verify=validator.validate)
    except LifecycleError as exc:
        log.error("fallback rejected", domain=domain_set.primary, validation=exc.kind)
        return {"issued_source": None, **record_error(state, exc)}
    except OSError as exc:
        log.error("store write failed", domain=domain_set.primary, detail=str(exc))
        return {"issued_source": None, **record_error(state, exc, kind="InstallError")}

    log.info("fallback stored", domain=domain_set.primary, version=entry.version, issuer_class=IssuerClass.SELF_SIGNED.value)
    update = {"issued_source": MaterialSource.SELF_SIGNED.value}
    if state.get("failure_action") != "fallback":
        # issuance_failure_handler has already warned on its own path
        reason = state.get("decision_reason") or "no installable material"
        update.update(add_warning(state, f"{reason}; installed a self-signed fallback for {domain_set.primary}"))
    return update
