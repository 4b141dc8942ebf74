"""
Domain private-key generation, CSR creation and self-signed certificates.

Boundary: this module owns everything cryptographic that is *domain*-specific.
Account-key operations (JWK, JWS) live in acme/jws.py.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

_PEM_END_CERT = b"-----END CERTIFICATE-----"


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key for a domain certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generate an EC P-256 private key (smaller, faster than RSA)."""
    return ec.generate_private_key(ec.SECP256R1())


def private_key_to_pem(key: PrivateKey) -> bytes:
    """Serialize a private key to unencrypted PKCS8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_csr(private_key: PrivateKey, domains: list[str]) -> bytes:
    """
    Create a DER-encoded CSR whose CN is the first name and whose SAN list
    holds every name (duplicates dropped, order kept).
    """
    names = list(dict.fromkeys(domains))
    if not names:
        raise ValueError("create_csr needs at least one domain")

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in names]),
            critical=False,
        )
    )
    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def build_self_signed_certificate(
    private_key: PrivateKey,
    domains: list[str],
    validity_days: int = 365,
    organization: str = "",
    now: datetime | None = None,
) -> bytes:
    """
    Return a PEM certificate signed by *private_key* itself.

    Subject and issuer are identical (CN = first domain, O = *organization*),
    which is what PairValidator keys on to classify it as self-signed.
    """
    names = list(dict.fromkeys(domains))
    now = now or datetime.now(tz=timezone.utc)

    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, names[0])]
    if organization:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    name = x509.Name(attrs)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in names]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def split_pem_chain(full_chain: bytes) -> tuple[bytes, bytes]:
    """
    Split a PEM chain into (leaf_cert_pem, intermediates_pem).

    ACME CAs return: [leaf] [intermediate1] [intermediate2] ...
    The first PEM block is the leaf; the rest form the chain.
    """
    blocks = []
    current: list[bytes] = []
    for line in full_chain.splitlines(keepends=True):
        current.append(line)
        if _PEM_END_CERT in line:
            blocks.append(b"".join(current))
            current = []

    if not blocks:
        return full_chain, b""

    return blocks[0], b"".join(blocks[1:])
