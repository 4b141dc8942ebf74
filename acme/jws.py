"""
JWK / JWS utilities for the ACME protocol (RFC 8555).

Uses *josepy* (the library powering Certbot) for key wrapping and thumbprints.

Responsibilities (boundary with acme/crypto.py):
  - Generate / load / save the **account** RSA key
  - Compute the JWK thumbprint and the DNS-01 key-authorization
  - Sign ACME POST bodies as JWS (with jwk or kid header)
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from josepy import b64
from josepy.jwk import JWKRSA
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from storage.atomic import atomic_write_bytes


# ─── Account key I/O ──────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return JWKRSA(key=private_key)


def save_account_key(jwk: JWKRSA, path: str | Path) -> None:
    """Persist the account key as PKCS8 PEM, owner-readable only."""
    pem = jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    atomic_write_bytes(Path(path), pem, mode=0o600)


def load_account_key(path: str | Path) -> JWKRSA:
    """Load an RSA account key from a PEM file."""
    pem = Path(path).read_bytes()
    private_key = serialization.load_pem_private_key(pem, password=None)
    return JWKRSA(key=private_key)


def load_or_create_account_key(path: str | Path) -> JWKRSA:
    """Return the account key at *path*, generating and saving one if absent."""
    if os.path.exists(path):
        return load_account_key(path)
    jwk = generate_account_key()
    save_account_key(jwk, path)
    return jwk


# ─── Thumbprint / key-authorization ───────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """Base64url SHA-256 thumbprint of the public JWK (RFC 7638)."""
    return b64.b64encode(jwk.public_key().thumbprint(hash_function=hashes.SHA256)).decode()


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """Return the key-authorization string for *token*: token + "." + thumbprint."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


# ─── JWS signing ─────────────────────────────────────────────────────────────


def public_jwk(account_key: JWKRSA) -> dict[str, Any]:
    jwk = account_key.public_key().fields_to_partial_json()
    jwk["kty"] = "RSA"
    return jwk


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the JWS dict to POST.

    If *account_url* is None the JWS header uses the full JWK (used for
    newAccount).  If *account_url* is set the header uses the shorter "kid"
    form (used for all subsequent requests).  A None payload produces the
    empty string used by POST-as-GET.
    """
    header: dict[str, Any] = {
        "alg": "RS256",
        "nonce": nonce,
        "url": url,
    }
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = public_jwk(account_key)

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = account_key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {
        "protected": protected,
        "payload": payload_b64,
        "signature": _b64url(signature),
    }


def _b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return b64.b64encode(data).decode()
