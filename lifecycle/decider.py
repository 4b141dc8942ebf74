"""
LifecycleDecider — the only place that answers "should we touch
certificates at all?" for a DomainSet.

Decision table, evaluated in order:
  1. no material, or Malformed / Unreadable / KeyMismatch  → Issue
  2. force renew                                           → Renew
  3. material does not cover every configured name         → Renew
  4. self-signed while a public CA path is configured      → Renew
  5. expires within the threshold (Expired included)       → Renew
  6. otherwise                                             → Skip

When no public CA path is configured nothing can issue, so Issue/Renew
become Fallback, except that a still-installable CA certificate is kept
(Skip) rather than replaced by a self-signed one.  With the fallback
switch off, any still-installable pair is kept; a Fallback decision then
only means "nothing installable", and the cycle refuses to act on it.
The result is a pure function of its inputs; nothing here reads files or
settings.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Tuple

from lifecycle.models import (
    DomainSet,
    IssuerClass,
    LifecycleDecision,
    ValidationFailureKind,
    ValidationResult,
)

_TREAT_AS_ABSENT = {
    ValidationFailureKind.MALFORMED,
    ValidationFailureKind.UNREADABLE,
    ValidationFailureKind.KEY_MISMATCH,
}


class LifecycleDecider:
    def __init__(
        self,
        renewal_threshold_days: int = 30,
        public_ca_configured: bool = True,
        allow_fallback: bool = True,
    ) -> None:
        self.threshold = timedelta(days=renewal_threshold_days)
        self.public_ca_configured = public_ca_configured
        self.allow_fallback = allow_fallback

    def decide(
        self,
        existing: Optional[ValidationResult],
        force_renew: bool = False,
        domain_set: Optional[DomainSet] = None,
        now: Optional[datetime] = None,
    ) -> LifecycleDecision:
        return self.decide_with_reason(existing, force_renew, domain_set, now)[0]

    def decide_with_reason(
        self,
        existing: Optional[ValidationResult],
        force_renew: bool = False,
        domain_set: Optional[DomainSet] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[LifecycleDecision, str]:
        decision, reason = self._table(existing, force_renew, domain_set, now)
        if decision in (LifecycleDecision.ISSUE, LifecycleDecision.RENEW) and not self.public_ca_configured:
            keep = existing is not None and existing.installable and (
                existing.issuer_class != IssuerClass.SELF_SIGNED or not self.allow_fallback
            )
            if keep:
                # A still-valid CA certificate beats a fresh self-signed one
                return LifecycleDecision.SKIP, f"{reason}; no public CA configured, keeping current certificate"
            return LifecycleDecision.FALLBACK, f"{reason}; no public CA configured"
        return decision, reason

    def _table(self, existing, force_renew, domain_set, now) -> Tuple[LifecycleDecision, str]:
        if existing is None:
            return LifecycleDecision.ISSUE, "no existing material"
        if existing.failure in _TREAT_AS_ABSENT:
            return LifecycleDecision.ISSUE, f"existing material is {existing.failure.value}"

        if force_renew:
            return LifecycleDecision.RENEW, "forced"

        if domain_set is not None and not existing.covers(domain_set):
            missing = sorted(set(domain_set.names()) - set(existing.names))
            return LifecycleDecision.RENEW, f"does not cover {', '.join(missing)}"

        if existing.issuer_class == IssuerClass.SELF_SIGNED and self.public_ca_configured:
            return LifecycleDecision.RENEW, "self-signed; upgrading to public CA"

        if existing.expires_within(self.threshold, now=now):
            days = existing.days_remaining(now=now)
            return LifecycleDecision.RENEW, f"expires in {days} day(s)"

        return LifecycleDecision.SKIP, "valid and not due"

    @staticmethod
    def decide_for_startup(existing: Optional[ValidationResult]) -> LifecycleDecision:
        """
        Decision used by startup installs, which never contact the CA:
        reuse whatever installable material the store holds, otherwise
        generate a fallback pair.
        """
        if existing is not None and existing.installable:
            return LifecycleDecision.SKIP
        return LifecycleDecision.FALLBACK
