"""
lifecycle_decider node — thin wrapper that hands the scan result to
LifecycleDecider and records the decision.

A Fallback decision while ALLOW_SELF_SIGNED_FALLBACK is off is refused
here, before the writer lock is taken: nothing installable exists and the
operator has not allowed a self-signed pair.
"""
from __future__ import annotations

import structlog

from lifecycle.decider import LifecycleDecider
from lifecycle.errors import ConfigurationError
from lifecycle.models import LifecycleDecision
from lifecycle.state import CycleState, domain_set_of, record_error

log = structlog.get_logger(__name__)

_ACTIONS = {
    LifecycleDecision.ISSUE: "issue",
    LifecycleDecision.RENEW: "issue",
    LifecycleDecision.FALLBACK: "fallback",
    LifecycleDecision.SKIP: None,
}


def lifecycle_decider(state: CycleState) -> dict:
    existing = state.get("existing")
    allow_fallback = state.get("allow_fallback", True)

    if state.get("install_only"):
        decision = LifecycleDecider.decide_for_startup(existing)
        reason = "startup install: reuse store entry" if decision == LifecycleDecision.SKIP \
            else "startup install: no installable store entry"
    else:
        decider = LifecycleDecider(
            renewal_threshold_days=state.get("renewal_threshold_days", 30),
            public_ca_configured=state.get("public_ca_configured", False),
            allow_fallback=allow_fallback,
        )
        decision, reason = decider.decide_with_reason(
            existing,
            force_renew=state.get("force_renew", False),
            domain_set=domain_set_of(state),
        )

    log.info(
        "decision",
        domain=state["primary_domain"],
        decision=decision.value,
        reason=reason,
        validation=existing.summary() if existing else "absent",
        issuer_class=existing.issuer_class.value if existing else None,
    )
    update = {
        "decision": decision.value,
        "decision_reason": reason,
        "pending_action": _ACTIONS[decision],
    }

    if decision == LifecycleDecision.FALLBACK and not allow_fallback:
        exc = ConfigurationError(
            f"{reason}; self-signed fallback is disabled (ALLOW_SELF_SIGNED_FALLBACK=false)",
            domain=state["primary_domain"],
        )
        log.error("fallback refused", domain=state["primary_domain"], decision=decision.value, detail=str(exc))
        update.update(pending_action=None, **record_error(state, exc))
    return update
