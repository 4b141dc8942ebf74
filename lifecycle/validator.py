"""
PairValidator — the single place a certificate/key pair is judged.

validate() answers four questions about a CertificateMaterial:
  * does the full chain parse as X.509 (leaf first) and the key as RSA/EC?
  * does the key belong to the leaf?  (RSA: modulus, EC: curve + point)
  * is the leaf expired?
  * who issued it?  (public CA / self-signed / unknown)

Failures are reported in the ValidationResult, never raised, so callers
(LifecycleDecider, Installer, diagnostics) choose what a failure means to
them.  A mismatched pair is reported as KeyMismatch; there is no retry with
another file pairing.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from lifecycle.models import CertificateMaterial, IssuerClass, ValidationFailureKind, ValidationResult

logger = logging.getLogger(__name__)

_STAGING_MARKER = "(STAGING)"


def _not_after(cert: x509.Certificate) -> datetime:
    # cryptography >= 42 exposes .not_valid_after_utc (timezone-aware)
    try:
        return cert.not_valid_after_utc
    except AttributeError:
        return cert.not_valid_after.replace(tzinfo=timezone.utc)


def _fingerprint(public_key) -> Optional[tuple]:
    if isinstance(public_key, rsa.RSAPublicKey):
        return ("rsa", public_key.public_numbers().n)
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        numbers = public_key.public_numbers()
        return ("ec", public_key.curve.name, numbers.x, numbers.y)
    return None


def _organization(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    return str(attrs[0].value) if attrs else ""


def _dns_names(cert: x509.Certificate) -> tuple[str, ...]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        return tuple(n.lower() for n in san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        cn = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return (str(cn[0].value).lower(),) if cn else ()


class PairValidator:
    def __init__(self, public_ca_organization: str = "Let's Encrypt") -> None:
        self.public_ca_organization = public_ca_organization

    def classify_issuer(self, cert: x509.Certificate) -> IssuerClass:
        # Checked before the organization: a self-signed pair may carry any O=
        if cert.issuer == cert.subject:
            return IssuerClass.SELF_SIGNED
        org = _organization(cert.issuer)
        if _STAGING_MARKER in org.upper():
            return IssuerClass.UNKNOWN
        if org and org.casefold() == self.public_ca_organization.casefold():
            return IssuerClass.PUBLIC_CA
        return IssuerClass.UNKNOWN

    def validate(self, material: CertificateMaterial, now: Optional[datetime] = None) -> ValidationResult:
        now = now or datetime.now(tz=timezone.utc)

        try:
            leaf = x509.load_pem_x509_certificate(material.full_chain)
        except ValueError as exc:
            return ValidationResult(
                well_formed=False,
                matches_key=False,
                not_after=None,
                issuer_class=IssuerClass.UNKNOWN,
                failure=ValidationFailureKind.MALFORMED,
                detail=f"certificate does not parse: {exc}",
            )

        not_after = _not_after(leaf)
        issuer_class = self.classify_issuer(leaf)
        base = dict(
            not_after=not_after,
            issuer_class=issuer_class,
            names=_dns_names(leaf),
            issuer=leaf.issuer.rfc4514_string(),
        )

        if b"CERTIFICATE-----" in material.private_key:
            return ValidationResult(
                well_formed=False, matches_key=False,
                failure=ValidationFailureKind.MALFORMED,
                detail="key file contains certificate material",
                **base,
            )

        try:
            key = serialization.load_pem_private_key(material.private_key, password=None)
        except (ValueError, TypeError) as exc:
            # An empty or corrupt key cannot be paired with the certificate
            return ValidationResult(
                well_formed=True, matches_key=False,
                failure=ValidationFailureKind.KEY_MISMATCH,
                detail=f"private key does not parse: {exc}",
                **base,
            )

        cert_fp = _fingerprint(leaf.public_key())
        key_fp = _fingerprint(key.public_key())
        if cert_fp is None or key_fp is None:
            return ValidationResult(
                well_formed=False, matches_key=False,
                failure=ValidationFailureKind.MALFORMED,
                detail="unsupported key type (RSA or EC required)",
                **base,
            )

        if cert_fp != key_fp:
            return ValidationResult(
                well_formed=True, matches_key=False,
                failure=ValidationFailureKind.KEY_MISMATCH,
                detail="private key does not match the certificate public key",
                **base,
            )

        if not_after < now:
            return ValidationResult(
                well_formed=True, matches_key=True,
                failure=ValidationFailureKind.EXPIRED,
                detail=f"certificate expired at {not_after.isoformat()}",
                **base,
            )

        return ValidationResult(well_formed=True, matches_key=True, **base)

    def validate_files(self, cert_path: Path, key_path: Path, now: Optional[datetime] = None) -> ValidationResult:
        """Read both files and validate them; unreadable files are reported, not raised."""
        try:
            material = CertificateMaterial(
                full_chain=Path(cert_path).read_bytes(),
                private_key=Path(key_path).read_bytes(),
            )
        except OSError as exc:
            return ValidationResult(
                well_formed=False,
                matches_key=False,
                not_after=None,
                issuer_class=IssuerClass.UNKNOWN,
                failure=ValidationFailureKind.UNREADABLE,
                detail=str(exc),
            )
        return self.validate(material, now=now)


def make_validator() -> PairValidator:
    from config import settings  # noqa: PLC0415

    return PairValidator(public_ca_organization=settings.PUBLIC_CA_ORGANIZATION)
