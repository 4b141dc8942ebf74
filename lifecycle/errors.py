"""
Error taxonomy for the certificate lifecycle.

Every failure that reaches the CLI is one of these; transport-level
exceptions (requests, ACME problem documents, DNS provider API errors) are
wrapped before they leave acme/issuer.py.  Each kind has its own process
exit code so a scheduler can tell failures apart without parsing logs.
"""
from __future__ import annotations

from typing import Optional

from lifecycle.models import ValidationFailureKind


class LifecycleError(Exception):
    kind = "LifecycleError"
    exit_code = 1

    def __init__(self, message: str, domain: Optional[str] = None) -> None:
        self.domain = domain
        prefix = f"[{domain}] " if domain else ""
        super().__init__(f"{prefix}{self.kind}: {message}")


class ConfigurationError(LifecycleError):
    kind = "ConfigurationError"
    exit_code = 2


# ─── Input / integrity ────────────────────────────────────────────────────────


class ValidationFailure(LifecycleError):
    kind = "ValidationFailure"
    exit_code = 10


class Malformed(ValidationFailure):
    kind = "Malformed"
    exit_code = 11


class KeyMismatch(ValidationFailure):
    kind = "KeyMismatch"
    exit_code = 12


class Expired(ValidationFailure):
    kind = "Expired"
    exit_code = 13


class Unreadable(ValidationFailure):
    kind = "Unreadable"
    exit_code = 14


# ─── Issuance ─────────────────────────────────────────────────────────────────


class IssuanceError(LifecycleError):
    kind = "IssuanceError"
    exit_code = 20


class ChallengeFailed(IssuanceError):
    kind = "ChallengeFailed"
    exit_code = 21


class PropagationTimeout(IssuanceError):
    kind = "PropagationTimeout"
    exit_code = 22


class RateLimited(IssuanceError):
    kind = "RateLimited"
    exit_code = 23


# ─── Install / reload / coordination ─────────────────────────────────────────


class InstallError(LifecycleError):
    kind = "InstallError"
    exit_code = 30


class ReloadError(LifecycleError):
    kind = "ReloadError"
    exit_code = 31


class LockHeldError(LifecycleError):
    kind = "LockHeld"
    exit_code = 40


_VALIDATION_ERRORS = {
    ValidationFailureKind.MALFORMED: Malformed,
    ValidationFailureKind.KEY_MISMATCH: KeyMismatch,
    ValidationFailureKind.EXPIRED: Expired,
    ValidationFailureKind.UNREADABLE: Unreadable,
}

EXIT_CODES = {
    cls.kind: cls.exit_code
    for cls in (
        ConfigurationError,
        Malformed, KeyMismatch, Expired, Unreadable,
        IssuanceError, ChallengeFailed, PropagationTimeout, RateLimited,
        InstallError, ReloadError, LockHeldError,
    )
}


def validation_error(kind: ValidationFailureKind, message: str, domain: Optional[str] = None) -> ValidationFailure:
    """Return the exception instance matching a ValidationResult failure kind."""
    return _VALIDATION_ERRORS[kind](message, domain=domain)


def exit_code_for(kind: Optional[str]) -> int:
    if kind is None:
        return 0
    return EXIT_CODES.get(kind, LifecycleError.exit_code)
