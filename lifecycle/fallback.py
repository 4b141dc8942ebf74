"""
FallbackIssuer — local self-signed pair that keeps TLS up when the public CA
path is unavailable.  The certificate covers every name in the DomainSet and
is signed by its own key, so PairValidator always classifies it SelfSigned
and the decider keeps trying to replace it.
"""
from __future__ import annotations

import logging

from acme.crypto import build_self_signed_certificate, generate_rsa_key, private_key_to_pem
from lifecycle.models import CertificateMaterial, DomainSet

logger = logging.getLogger(__name__)


class FallbackIssuer:
    def __init__(self, validity_days: int = 365, organization: str = "", key_size: int = 2048) -> None:
        self.validity_days = validity_days
        self.organization = organization
        self.key_size = key_size

    def generate(self, domain_set: DomainSet) -> CertificateMaterial:
        key = generate_rsa_key(self.key_size)
        cert_pem = build_self_signed_certificate(
            key,
            domain_set.names(),
            validity_days=self.validity_days,
            organization=self.organization,
        )
        logger.info("Generated self-signed fallback for %s (%d days)", domain_set, self.validity_days)
        return CertificateMaterial(full_chain=cert_pem, private_key=private_key_to_pem(key))


def make_fallback_issuer() -> FallbackIssuer:
    from config import settings  # noqa: PLC0415

    return FallbackIssuer(
        validity_days=settings.FALLBACK_VALIDITY_DAYS,
        organization=settings.FALLBACK_ORGANIZATION,
    )
