"""
cycle_reporter node — release the writer lock and summarise the cycle.

Every path through the graph ends here.  The exit code is derived from the
first recorded error kind; warnings (fallback used, kept fallback) do not
change it.
"""
from __future__ import annotations

import structlog

from lifecycle.errors import exit_code_for
from lifecycle.nodes.lock import release_lock
from lifecycle.state import CycleState

log = structlog.get_logger(__name__)


def cycle_reporter(state: CycleState) -> dict:
    primary = state["primary_domain"]
    release_lock(primary)

    error_kind = state.get("error_kind")
    exit_code = exit_code_for(error_kind)
    if error_kind:
        outcome = "failed"
    elif state.get("installed"):
        outcome = "installed"
    else:
        outcome = "unchanged"

    final = state.get("final_validation") or state.get("existing")
    summary = dict(
        domain=primary,
        decision=state.get("decision"),
        outcome=outcome,
        validation=final.summary() if final else "absent",
        issuer_class=final.issuer_class.value if final else None,
        not_after=final.not_after.isoformat() if final and final.not_after else None,
        reloaded=state.get("reloaded", False),
        exit_code=exit_code,
    )
    for warning in state.get("warnings", []):
        log.warning("cycle warning", domain=primary, warning=warning)
    if error_kind:
        log.error("cycle failed", error=error_kind, errors=state.get("error_log", []), **summary)
    else:
        log.info("cycle complete", **summary)

    return {"outcome": outcome, "exit_code": exit_code}
