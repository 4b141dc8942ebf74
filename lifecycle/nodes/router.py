"""
Conditional-edge functions for the lifecycle graph.

None of these are nodes; each is passed to graph.add_conditional_edges()
and returns one of the keys in that edge's mapping.
"""
from __future__ import annotations

from lifecycle.models import LifecycleDecision
from lifecycle.state import CycleState


def decision_router(state: CycleState) -> str:
    """After lifecycle_decider. Returns: "skip" | "act" | "blocked" """
    if state.get("error_kind"):
        return "blocked"
    return "skip" if state.get("decision") == LifecycleDecision.SKIP.value else "act"


def sync_router(state: CycleState) -> str:
    """After runtime_sync. Returns: "in_sync" | "stale" """
    return "in_sync" if state.get("in_sync") else "stale"


def lock_router(state: CycleState) -> str:
    """After lock_acquirer. Returns: "rescan" | "issue" | "fallback" | "install" | "lock_failed" """
    if not state.get("lock_held"):
        return "lock_failed"
    if state.get("rescan"):
        return "rescan"
    return state.get("pending_action") or "install"


def issuance_router(state: CycleState) -> str:
    """After acme_issuer / fallback_issuer. Returns: "issued" | "failed" """
    return "issued" if state.get("issued_source") else "failed"


def failure_action_router(state: CycleState) -> str:
    """After issuance_failure_handler. Returns: "fallback" | "keep_existing" | "abort" """
    return state.get("failure_action") or "abort"


def install_router(state: CycleState) -> str:
    """After installer. Returns: "installed" | "failed" """
    return "installed" if state.get("installed") else "failed"
