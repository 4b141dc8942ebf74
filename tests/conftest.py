"""
Shared pytest fixtures.

lifecycle_settings
------------------
Mutates the module-level `config.settings` singleton so every node in the
graph works inside tmp_path (store, account key, runtime location) and
restores the original values afterwards.

certs
-----
Builds certificate material on the fly with `cryptography`: a fake public CA
whose organization is "Let's Encrypt", self-signed pairs, and mismatched
pairs made from two different keys.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from acme.crypto import build_self_signed_certificate, private_key_to_pem
from lifecycle.models import CertificateMaterial


# ─── Settings patch ───────────────────────────────────────────────────────────

_PATCHED = (
    "PRIMARY_DOMAIN", "SAN_DOMAINS", "CONTACT_EMAIL",
    "CLOUDFLARE_API_TOKEN", "CLOUDFLARE_EMAIL", "CLOUDFLARE_API_KEY", "CLOUDFLARE_ZONE_ID",
    "DNS_PROPAGATION_SECONDS", "RENEWAL_THRESHOLD_DAYS", "FORCE_RENEW",
    "ALLOW_SELF_SIGNED_FALLBACK", "FALLBACK_VALIDITY_DAYS", "PUBLIC_CA_ORGANIZATION",
    "CERT_STORE_PATH", "ACCOUNT_KEY_PATH", "LOCK_TIMEOUT_SECONDS",
    "RUNTIME_CERT_PATH", "RUNTIME_KEY_PATH", "RUNTIME_OWNER",
    "RELOAD_MODE", "RELOAD_COMMAND", "PROXY_PID_FILE", "PROXY_CONFIG_TEST_COMMAND",
)


@pytest.fixture()
def lifecycle_settings(tmp_path: Path):
    """
    Point the live settings singleton at tmp_path with a public CA path
    configured (contact email + Cloudflare token); restore after the test.
    """
    from config import settings

    originals = {name: getattr(settings, name) for name in _PATCHED}

    runtime = tmp_path / "runtime"
    runtime.mkdir()

    settings.PRIMARY_DOMAIN = "example.com"
    settings.SAN_DOMAINS = ["*.example.com"]
    settings.CONTACT_EMAIL = "admin@example.com"
    settings.CLOUDFLARE_API_TOKEN = "cf-token"
    settings.CLOUDFLARE_EMAIL = ""
    settings.CLOUDFLARE_API_KEY = ""
    settings.CLOUDFLARE_ZONE_ID = "zone123"
    settings.DNS_PROPAGATION_SECONDS = 0
    settings.RENEWAL_THRESHOLD_DAYS = 30
    settings.FORCE_RENEW = False
    settings.ALLOW_SELF_SIGNED_FALLBACK = True
    settings.FALLBACK_VALIDITY_DAYS = 365
    settings.PUBLIC_CA_ORGANIZATION = "Let's Encrypt"
    settings.CERT_STORE_PATH = str(tmp_path / "certs")
    settings.ACCOUNT_KEY_PATH = str(tmp_path / "account.key")
    settings.LOCK_TIMEOUT_SECONDS = 0.0
    settings.RUNTIME_CERT_PATH = str(runtime / "fullchain.pem")
    settings.RUNTIME_KEY_PATH = str(runtime / "privkey.pem")
    settings.RUNTIME_OWNER = None
    settings.RELOAD_MODE = "none"
    settings.PROXY_PID_FILE = str(tmp_path / "nginx.pid")
    settings.PROXY_CONFIG_TEST_COMMAND = ""

    yield settings

    for name, value in originals.items():
        setattr(settings, name, value)


# ─── Certificate factories ────────────────────────────────────────────────────


def _name(cn: str, org: str = "") -> x509.Name:
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, cn)]
    if org:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, org))
    return x509.Name(attrs)


def _pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


class CertFactory:
    """Builds CertificateMaterial for tests.  Keys are reused to keep tests fast."""

    def __init__(self) -> None:
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_cert = self._ca("Let's Encrypt", "R3", self.ca_key)
        self.rsa_keys = [rsa.generate_private_key(public_exponent=65537, key_size=2048) for _ in range(2)]
        self.ec_keys = [ec.generate_private_key(ec.SECP256R1()) for _ in range(2)]

    @staticmethod
    def _ca(org: str, cn: str, key) -> x509.Certificate:
        now = datetime.now(tz=timezone.utc)
        name = _name(cn, org)
        return (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(key, hashes.SHA256())
        )

    def public(
        self,
        names=("example.com", "*.example.com"),
        days: float = 90,
        key=None,
        org: str = "Let's Encrypt",
    ) -> CertificateMaterial:
        """Leaf signed by the fake CA, full chain = leaf + CA cert."""
        key = key or self.rsa_keys[0]
        if org == "Let's Encrypt":
            ca_key, ca_cert = self.ca_key, self.ca_cert
        else:
            ca_key = ec.generate_private_key(ec.SECP256R1())
            ca_cert = self._ca(org, "Other CA", ca_key)
        now = datetime.now(tz=timezone.utc)
        leaf = (
            x509.CertificateBuilder()
            .subject_name(_name(names[0]))
            .issuer_name(ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=days))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(n) for n in names]), critical=False)
            .sign(ca_key, hashes.SHA256())
        )
        return CertificateMaterial(
            full_chain=_pem(leaf) + _pem(ca_cert),
            private_key=private_key_to_pem(key),
            chain=_pem(ca_cert),
        )

    def self_signed(self, names=("example.com", "*.example.com"), days: int = 365, key=None) -> CertificateMaterial:
        key = key or self.rsa_keys[0]
        cert = build_self_signed_certificate(key, list(names), validity_days=days, organization="Homelab Fallback")
        return CertificateMaterial(full_chain=cert, private_key=private_key_to_pem(key))

    def mismatched(self, names=("example.com", "*.example.com"), ec_keys: bool = False) -> CertificateMaterial:
        """Certificate for one key, private key from another."""
        keys = self.ec_keys if ec_keys else self.rsa_keys
        good = self.public(names, key=keys[0])
        return CertificateMaterial(full_chain=good.full_chain, private_key=private_key_to_pem(keys[1]))


@pytest.fixture(scope="session")
def certs() -> CertFactory:
    return CertFactory()


@pytest.fixture()
def validator():
    from lifecycle.validator import PairValidator

    return PairValidator(public_ca_organization="Let's Encrypt")
