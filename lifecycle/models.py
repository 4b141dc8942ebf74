"""
Value types shared by every lifecycle component.

  DomainSet            — primary name + SANs, identifies one certificate
  CertificateMaterial  — PEM full chain / key / intermediates
  ValidationResult     — derived verdict from PairValidator, never persisted
  StoreEntry           — what the MaterialStore persists for a DomainSet
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional, Tuple

_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
_HOSTNAME = re.compile(rf"^(\*\.)?({_LABEL}\.)*{_LABEL}$")


class IssuerClass(str, enum.Enum):
    PUBLIC_CA = "PublicCA"
    SELF_SIGNED = "SelfSigned"
    UNKNOWN = "Unknown"


class LifecycleDecision(str, enum.Enum):
    SKIP = "Skip"
    RENEW = "Renew"
    ISSUE = "Issue"
    FALLBACK = "Fallback"


class MaterialSource(str, enum.Enum):
    ACME = "Acme"
    SELF_SIGNED = "SelfSigned"


class ValidationFailureKind(str, enum.Enum):
    MALFORMED = "Malformed"
    KEY_MISMATCH = "KeyMismatch"
    EXPIRED = "Expired"
    UNREADABLE = "Unreadable"


def normalize_name(name: str) -> str:
    """Lower-case, strip a trailing dot, and check hostname syntax."""
    value = name.strip().lower().rstrip(".")
    if not _HOSTNAME.match(value):
        raise ValueError(f"Invalid DNS name: {name!r}")
    return value


@dataclass(frozen=True)
class DomainSet:
    primary: str
    sans: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, primary: str, sans: Iterable[str] = ()) -> "DomainSet":
        p = normalize_name(primary)
        if p.startswith("*."):
            raise ValueError("The primary domain cannot be a wildcard")
        extra = frozenset(normalize_name(s) for s in sans) - {p}
        return cls(primary=p, sans=extra)

    def names(self) -> list[str]:
        """Primary first, then SANs in a stable order."""
        return [self.primary] + sorted(self.sans)

    def __str__(self) -> str:
        return ",".join(self.names())


@dataclass(frozen=True)
class CertificateMaterial:
    full_chain: bytes
    private_key: bytes = field(repr=False)
    chain: Optional[bytes] = None


@dataclass(frozen=True)
class ValidationResult:
    well_formed: bool
    matches_key: bool
    not_after: Optional[datetime]
    issuer_class: IssuerClass
    failure: Optional[ValidationFailureKind] = None
    names: Tuple[str, ...] = ()
    issuer: str = ""
    detail: str = ""

    @property
    def installable(self) -> bool:
        return self.failure is None

    def expires_within(self, duration: timedelta, now: Optional[datetime] = None) -> bool:
        if self.not_after is None:
            return True
        now = now or datetime.now(tz=timezone.utc)
        return self.not_after - now <= duration

    def days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.not_after is None:
            return None
        now = now or datetime.now(tz=timezone.utc)
        return (self.not_after - now).days

    def covers(self, domain_set: DomainSet) -> bool:
        present = {n.lower() for n in self.names}
        return all(n in present for n in domain_set.names())

    def summary(self) -> str:
        return self.failure.value if self.failure else "ok"


@dataclass(frozen=True)
class StoreEntry:
    domain_set: DomainSet
    material: CertificateMaterial
    source: Optional[MaterialSource]
    installed_at: Optional[datetime]
    layout: str = "versioned"       # versioned | live | flat
    version: Optional[int] = None
