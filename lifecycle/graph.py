"""
LangGraph StateGraph for one certificate lifecycle cycle (one DomainSet).

Graph topology:
  START
    → material_scanner
    → lifecycle_decider
    → [conditional: skip → runtime_sync | act → lock_acquirer
                    blocked → cycle_reporter]
  runtime_sync
    → [conditional: in_sync → cycle_reporter | stale → lock_acquirer]
  lock_acquirer
    → [conditional: rescan → material_scanner (first acquisition only)
                    issue → acme_issuer | fallback → fallback_issuer
                    install → installer  | lock_failed → cycle_reporter]
  acme_issuer
    → [conditional: issued → installer | failed → issuance_failure_handler]
  issuance_failure_handler
    → [conditional: fallback → fallback_issuer
                    keep_existing → runtime_sync
                    abort → cycle_reporter]
  fallback_issuer
    → [conditional: issued → installer | failed → cycle_reporter]
  installer
    → [conditional: installed → reload_signaller | failed → cycle_reporter]
  reload_signaller → cycle_reporter → END

The writer lock is taken at lock_acquirer and released in cycle_reporter,
so a Skip whose runtime copy is already in sync never touches it.  Once
the lock is held the store entry is scanned and decided on again, and
only that second decision is acted upon.
"""
from __future__ import annotations

from typing import Iterable, Optional

from langgraph.graph import END, START, StateGraph

from lifecycle.nodes.decider import lifecycle_decider
from lifecycle.nodes.install import installer, runtime_sync
from lifecycle.nodes.issuance import acme_issuer, fallback_issuer, issuance_failure_handler
from lifecycle.nodes.lock import lock_acquirer, release_all_locks
from lifecycle.nodes.reload import reload_signaller
from lifecycle.nodes.reporter import cycle_reporter
from lifecycle.nodes.router import (
    decision_router,
    failure_action_router,
    install_router,
    issuance_router,
    lock_router,
    sync_router,
)
from lifecycle.nodes.scanner import material_scanner
from lifecycle.state import CycleState


def build_cycle_graph():
    """Build and compile the lifecycle StateGraph."""
    builder = StateGraph(CycleState)

    # ── Register nodes ────────────────────────────────────────────────────
    builder.add_node("material_scanner", material_scanner)
    builder.add_node("lifecycle_decider", lifecycle_decider)
    builder.add_node("runtime_sync", runtime_sync)
    builder.add_node("lock_acquirer", lock_acquirer)
    builder.add_node("acme_issuer", acme_issuer)
    builder.add_node("issuance_failure_handler", issuance_failure_handler)
    builder.add_node("fallback_issuer", fallback_issuer)
    builder.add_node("installer", installer)
    builder.add_node("reload_signaller", reload_signaller)
    builder.add_node("cycle_reporter", cycle_reporter)

    # ── Edges ─────────────────────────────────────────────────────────────
    builder.add_edge(START, "material_scanner")
    builder.add_edge("material_scanner", "lifecycle_decider")

    builder.add_conditional_edges(
        "lifecycle_decider",
        decision_router,
        {"skip": "runtime_sync", "act": "lock_acquirer", "blocked": "cycle_reporter"},
    )

    builder.add_conditional_edges(
        "runtime_sync",
        sync_router,
        {"in_sync": "cycle_reporter", "stale": "lock_acquirer"},
    )

    builder.add_conditional_edges(
        "lock_acquirer",
        lock_router,
        {
            "rescan": "material_scanner",
            "issue": "acme_issuer",
            "fallback": "fallback_issuer",
            "install": "installer",
            "lock_failed": "cycle_reporter",
        },
    )

    builder.add_conditional_edges(
        "acme_issuer",
        issuance_router,
        {"issued": "installer", "failed": "issuance_failure_handler"},
    )

    builder.add_conditional_edges(
        "issuance_failure_handler",
        failure_action_router,
        {
            "fallback": "fallback_issuer",
            "keep_existing": "runtime_sync",
            "abort": "cycle_reporter",
        },
    )

    builder.add_conditional_edges(
        "fallback_issuer",
        issuance_router,
        {"issued": "installer", "failed": "cycle_reporter"},
    )

    builder.add_conditional_edges(
        "installer",
        install_router,
        {"installed": "reload_signaller", "failed": "cycle_reporter"},
    )

    builder.add_edge("reload_signaller", "cycle_reporter")
    builder.add_edge("cycle_reporter", END)

    return builder.compile()


def initial_state(
    primary_domain: str,
    san_domains: Iterable[str] = (),
    contact_email: str = "",
    renewal_threshold_days: int = 30,
    force_renew: bool = False,
    public_ca_configured: bool = False,
    allow_fallback: bool = True,
    install_only: bool = False,
    lock_timeout: float = 0.0,
) -> CycleState:
    """
    Build the initial CycleState for one cycle.
    Callers can override any field by merging the returned dict.
    """
    return {
        "primary_domain": primary_domain,
        "san_domains": list(san_domains),
        "contact_email": contact_email,
        "renewal_threshold_days": renewal_threshold_days,
        "force_renew": force_renew,
        "public_ca_configured": public_ca_configured,
        "allow_fallback": allow_fallback,
        "install_only": install_only,
        "lock_timeout": lock_timeout,
        "existing": None,
        "decision": None,
        "pending_action": None,
        "lock_held": False,
        "rescan": False,
        "in_sync": False,
        "issued_source": None,
        "issuance_error": None,
        "failure_action": None,
        "installed": False,
        "reloaded": False,
        "final_validation": None,
        "error_kind": None,
        "exit_code": 0,
        "error_log": [],
        "warnings": [],
    }


def state_from_settings(
    force_renew: Optional[bool] = None,
    install_only: bool = False,
    primary_domain: Optional[str] = None,
    san_domains: Optional[Iterable[str]] = None,
) -> CycleState:
    """initial_state() filled from config.settings; explicit arguments win."""
    from config import settings  # noqa: PLC0415

    return initial_state(
        primary_domain=primary_domain or settings.PRIMARY_DOMAIN,
        san_domains=settings.SAN_DOMAINS if san_domains is None else san_domains,
        contact_email=settings.CONTACT_EMAIL,
        renewal_threshold_days=settings.RENEWAL_THRESHOLD_DAYS,
        force_renew=settings.FORCE_RENEW if force_renew is None else force_renew,
        public_ca_configured=settings.public_ca_configured,
        allow_fallback=settings.ALLOW_SELF_SIGNED_FALLBACK,
        install_only=install_only,
        lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
    )


def run_cycle(state: CycleState, graph=None) -> CycleState:
    """Invoke the graph once; any writer lock still held afterwards is released."""
    graph = graph or build_cycle_graph()
    try:
        return graph.invoke(state)
    finally:
        release_all_locks()
