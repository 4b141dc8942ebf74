"""
Cycle state for the per-DomainSet lifecycle graph.

Key design decisions:
  - Certificate material (and above all private keys) is NOT stored in
    state.  Nodes that need material load it from the MaterialStore, which
    also guarantees the runtime copy is always derived from the store.
  - The writer lock handle is not in state either; lifecycle/nodes/lock.py
    keeps it in a module-level registry and state only records lock_held.
  - ValidationResult objects are fine here: they hold no secrets.
"""
from __future__ import annotations

from typing import List, Optional

from typing_extensions import TypedDict

from lifecycle.models import DomainSet, ValidationResult


class CycleState(TypedDict, total=False):
    # ── Configuration ──────────────────────────────────────────────────────
    primary_domain: str
    san_domains: List[str]
    contact_email: str
    renewal_threshold_days: int
    force_renew: bool
    public_ca_configured: bool
    allow_fallback: bool
    install_only: bool                 # startup mode: never contacts the CA
    lock_timeout: float

    # ── Scan / decision ────────────────────────────────────────────────────
    existing: Optional[ValidationResult]
    existing_source: Optional[str]     # Acme | SelfSigned | None (unknown/legacy)
    existing_layout: Optional[str]     # versioned | live | flat
    decision: Optional[str]            # LifecycleDecision value
    decision_reason: str
    pending_action: Optional[str]      # issue | fallback | install

    # ── Progress ───────────────────────────────────────────────────────────
    lock_held: bool
    rescan: bool                       # lock just taken: scan and decide again
    in_sync: bool
    issued_source: Optional[str]       # what this cycle stored, if anything
    issuance_error: Optional[str]      # IssuanceError kind
    failure_action: Optional[str]      # fallback | keep_existing | abort
    installed: bool
    reloaded: bool
    final_validation: Optional[ValidationResult]

    # ── Outcome ────────────────────────────────────────────────────────────
    outcome: str                       # unchanged | installed | failed
    error_kind: Optional[str]
    exit_code: int
    error_log: List[str]
    warnings: List[str]


def domain_set_of(state: CycleState) -> DomainSet:
    return DomainSet.of(state["primary_domain"], state.get("san_domains", []))


def record_error(state: CycleState, exc: Exception, kind: Optional[str] = None) -> dict:
    """State update for a failed step; the first error decides the exit code."""
    kind = kind or getattr(exc, "kind", type(exc).__name__)
    return {
        "error_kind": state.get("error_kind") or kind,
        "error_log": list(state.get("error_log", [])) + [str(exc)],
    }


def add_warning(state: CycleState, message: str) -> dict:
    return {"warnings": list(state.get("warnings", [])) + [message]}
