"""
Unit tests for the ACME protocol layer and the DNS-01 issuer.

HTTP calls are mocked with the `responses` library; the issuer tests drive a
MagicMock AcmeClient and DnsProvider, so no CA or DNS access is required.
Run with:  pytest tests/test_unit_acme.py -v
"""
from __future__ import annotations

import json
import os
import stat
from unittest.mock import MagicMock

import pytest
import requests
import responses as resp_lib
from cryptography import x509
from cryptography.x509.oid import NameOID
from josepy import b64

from acme import jws as jwslib
from acme.client import AcmeClient, AcmeError, AcmeTimeout
from acme.crypto import build_self_signed_certificate, create_csr, generate_ec_key, split_pem_chain
from acme.dns_challenge import DnsProviderError, compute_dns_txt_value
from acme.issuer import AcmeIssuer
from lifecycle.errors import ChallengeFailed, IssuanceError, PropagationTimeout, RateLimited
from lifecycle.models import DomainSet


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(scope="module")
def account_key():
    return jwslib.generate_account_key(key_size=2048)


@pytest.fixture(scope="module")
def domain_key():
    return generate_ec_key()


DIRECTORY_URL = "https://acme.test/directory"

FAKE_DIRECTORY = {
    "newNonce": "https://acme.test/newNonce",
    "newAccount": "https://acme.test/newAccount",
    "newOrder": "https://acme.test/newOrder",
    "revokeCert": "https://acme.test/revokeCert",
    "keyChange": "https://acme.test/keyChange",
}

FAKE_NONCE = "testnonce12345"


def _decode(part: str) -> dict:
    return json.loads(b64.b64decode(part)) if part else {}


def _register_basics() -> None:
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    resp_lib.add(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], headers={"Replay-Nonce": FAKE_NONCE})


def _client(account_key, **kwargs) -> AcmeClient:
    client = AcmeClient(DIRECTORY_URL, sleep=lambda _: None, **kwargs)
    client.account_key = account_key
    client.account_url = "https://acme.test/acct/1"
    return client


# ─── acme/jws.py ──────────────────────────────────────────────────────────────

def test_jwk_thumbprint_is_deterministic(account_key):
    t1 = jwslib.compute_jwk_thumbprint(account_key)
    t2 = jwslib.compute_jwk_thumbprint(account_key)
    assert t1 == t2
    assert "=" not in t1


def test_key_authorization(account_key):
    key_auth = jwslib.compute_key_authorization("sometoken", account_key)
    assert key_auth == f"sometoken.{jwslib.compute_jwk_thumbprint(account_key)}"


def test_sign_request_uses_jwk_without_account_url(account_key):
    body = jwslib.sign_request({"a": 1}, account_key, FAKE_NONCE, "https://acme.test/newAccount")
    header = _decode(body["protected"])
    assert header["alg"] == "RS256"
    assert header["nonce"] == FAKE_NONCE
    assert "jwk" in header and "kid" not in header
    assert _decode(body["payload"]) == {"a": 1}


def test_sign_request_uses_kid_and_empty_payload_for_post_as_get(account_key):
    body = jwslib.sign_request(None, account_key, FAKE_NONCE, "https://acme.test/order/1", "https://acme.test/acct/1")
    header = _decode(body["protected"])
    assert header["kid"] == "https://acme.test/acct/1"
    assert "jwk" not in header
    assert body["payload"] == ""


def test_account_key_roundtrip_is_owner_only(account_key, tmp_path):
    path = tmp_path / "account.key"
    jwslib.save_account_key(account_key, path)
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    loaded = jwslib.load_account_key(path)
    assert jwslib.compute_jwk_thumbprint(loaded) == jwslib.compute_jwk_thumbprint(account_key)


def test_load_or_create_account_key_reuses_existing(account_key, tmp_path):
    path = tmp_path / "account.key"
    jwslib.save_account_key(account_key, path)
    loaded = jwslib.load_or_create_account_key(path)
    assert jwslib.compute_jwk_thumbprint(loaded) == jwslib.compute_jwk_thumbprint(account_key)


# ─── acme/crypto.py ───────────────────────────────────────────────────────────

def test_csr_has_cn_and_deduplicated_sans(domain_key):
    der = create_csr(domain_key, ["example.com", "*.example.com", "example.com"])
    csr = x509.load_der_x509_csr(der)
    assert csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "example.com"
    san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert san.value.get_values_for_type(x509.DNSName) == ["example.com", "*.example.com"]


def test_csr_requires_a_domain(domain_key):
    with pytest.raises(ValueError):
        create_csr(domain_key, [])


def test_self_signed_certificate_issuer_equals_subject(domain_key):
    pem = build_self_signed_certificate(domain_key, ["example.com", "*.example.com"], organization="Fallback")
    cert = x509.load_pem_x509_certificate(pem)
    assert cert.issuer == cert.subject
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert set(san.value.get_values_for_type(x509.DNSName)) == {"example.com", "*.example.com"}


def test_split_pem_chain(certs):
    material = certs.public()
    leaf, chain = split_pem_chain(material.full_chain)
    assert leaf + chain == material.full_chain
    assert chain == material.chain
    assert leaf.count(b"BEGIN CERTIFICATE") == 1


def test_split_pem_chain_single_cert(certs):
    material = certs.self_signed()
    leaf, chain = split_pem_chain(material.full_chain)
    assert leaf == material.full_chain
    assert chain == b""


# ─── acme/client.py ───────────────────────────────────────────────────────────

@resp_lib.activate
def test_directory_is_fetched_once():
    resp_lib.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
    client = AcmeClient(DIRECTORY_URL)
    assert client.directory["newOrder"] == FAKE_DIRECTORY["newOrder"]
    assert client.directory["newNonce"] == FAKE_DIRECTORY["newNonce"]
    assert len(resp_lib.calls) == 1


@resp_lib.activate
def test_new_nonce():
    _register_basics()
    assert AcmeClient(DIRECTORY_URL).new_nonce() == FAKE_NONCE


@resp_lib.activate
def test_register_reuses_existing_account(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newAccount"],
        json={"status": "valid"}, status=200,
        headers={"Location": "https://acme.test/acct/7", "Replay-Nonce": "n2"},
    )
    client = AcmeClient(DIRECTORY_URL)

    url = client.register(account_key, "admin@example.com")

    assert url == "https://acme.test/acct/7"
    assert client.account_url == url
    sent = json.loads(resp_lib.calls[-1].request.body)
    assert _decode(sent["payload"]) == {"onlyReturnExisting": True}


@resp_lib.activate
def test_register_creates_account_when_none_exists(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newAccount"],
        json={"type": "urn:ietf:params:acme:error:accountDoesNotExist"}, status=400,
        headers={"Replay-Nonce": "n2"},
    )
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newAccount"],
        json={"status": "valid"}, status=201,
        headers={"Location": "https://acme.test/acct/8", "Replay-Nonce": "n3"},
    )
    client = AcmeClient(DIRECTORY_URL)

    assert client.register(account_key, "admin@example.com") == "https://acme.test/acct/8"
    payload = _decode(json.loads(resp_lib.calls[-1].request.body)["payload"])
    assert payload == {"termsOfServiceAgreed": True, "contact": ["mailto:admin@example.com"]}


@resp_lib.activate
def test_register_propagates_other_errors(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newAccount"],
        json={"type": "urn:ietf:params:acme:error:serverInternal"}, status=500,
    )
    with pytest.raises(AcmeError) as exc_info:
        AcmeClient(DIRECTORY_URL).register(account_key)
    assert exc_info.value.status_code == 500


@resp_lib.activate
def test_new_order_lists_every_name(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newOrder"],
        json={"status": "pending", "authorizations": ["https://acme.test/authz/1"], "finalize": "https://acme.test/fin/1"},
        status=201,
        headers={"Location": "https://acme.test/order/1", "Replay-Nonce": "n2"},
    )
    client = _client(account_key)

    order, order_url = client.new_order(["example.com", "*.example.com"])

    assert order_url == "https://acme.test/order/1"
    assert order["finalize"] == "https://acme.test/fin/1"
    payload = _decode(json.loads(resp_lib.calls[-1].request.body)["payload"])
    assert payload["identifiers"] == [
        {"type": "dns", "value": "example.com"},
        {"type": "dns", "value": "*.example.com"},
    ]


@resp_lib.activate
def test_bad_nonce_is_retried_with_the_returned_nonce(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, "https://acme.test/order/1",
        json={"type": "urn:ietf:params:acme:error:badNonce"}, status=400,
        headers={"Replay-Nonce": "fresh-nonce"},
    )
    resp_lib.add(
        resp_lib.POST, "https://acme.test/order/1",
        json={"status": "valid"}, status=200,
        headers={"Replay-Nonce": "n3"},
    )
    client = _client(account_key)

    assert client.get_order("https://acme.test/order/1") == {"status": "valid"}
    retried = _decode(json.loads(resp_lib.calls[-1].request.body)["protected"])
    assert retried["nonce"] == "fresh-nonce"


@resp_lib.activate
def test_rate_limit_problem_is_flagged(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, FAKE_DIRECTORY["newOrder"],
        json={"type": "urn:ietf:params:acme:error:rateLimited", "detail": "too many certificates"},
        status=429,
    )
    with pytest.raises(AcmeError) as exc_info:
        _client(account_key).new_order(["example.com"])
    assert exc_info.value.rate_limited
    assert "too many certificates" in str(exc_info.value)


@resp_lib.activate
def test_poll_authorization_invalid_raises(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, "https://acme.test/authz/1",
        json={
            "status": "invalid",
            "challenges": [{"type": "dns-01", "error": {"detail": "No TXT record found"}}],
        },
        headers={"Replay-Nonce": "n2"},
    )
    with pytest.raises(AcmeError) as exc_info:
        _client(account_key).poll_authorization("https://acme.test/authz/1")
    assert exc_info.value.status_code == 403
    assert "No TXT record found" in str(exc_info.value)
    assert not exc_info.value.rate_limited


@resp_lib.activate
def test_poll_authorization_times_out(account_key):
    _register_basics()
    resp_lib.add(
        resp_lib.POST, "https://acme.test/authz/1",
        json={"status": "pending"}, headers={"Replay-Nonce": "n2"},
    )
    sleeps = []
    client = AcmeClient(DIRECTORY_URL, max_polls=3, poll_interval=5, sleep=sleeps.append)
    client.account_key = account_key
    client.account_url = "https://acme.test/acct/1"

    with pytest.raises(AcmeTimeout):
        client.poll_authorization("https://acme.test/authz/1")
    assert sleeps == [5, 5, 5]


@resp_lib.activate
def test_poll_order_returns_certificate_url(account_key):
    _register_basics()
    resp_lib.add(resp_lib.POST, "https://acme.test/order/1", json={"status": "processing"}, headers={"Replay-Nonce": "a"})
    resp_lib.add(
        resp_lib.POST, "https://acme.test/order/1",
        json={"status": "valid", "certificate": "https://acme.test/cert/1"},
        headers={"Replay-Nonce": "b"},
    )
    assert _client(account_key).poll_order("https://acme.test/order/1") == "https://acme.test/cert/1"


@resp_lib.activate
def test_finalize_sends_base64url_csr(account_key, domain_key):
    _register_basics()
    resp_lib.add(resp_lib.POST, "https://acme.test/fin/1", json={"status": "processing"}, headers={"Replay-Nonce": "a"})
    csr = create_csr(domain_key, ["example.com"])

    _client(account_key).finalize_order("https://acme.test/fin/1", csr)

    payload = _decode(json.loads(resp_lib.calls[-1].request.body)["payload"])
    assert b64.b64decode(payload["csr"]) == csr


@resp_lib.activate
def test_download_certificate(account_key, certs):
    _register_basics()
    pem = certs.public().full_chain.decode()
    resp_lib.add(resp_lib.POST, "https://acme.test/cert/1", body=pem, headers={"Replay-Nonce": "a"})

    assert _client(account_key).download_certificate("https://acme.test/cert/1") == pem
    assert resp_lib.calls[-1].request.headers["Accept"] == "application/pem-certificate-chain"


def test_signed_request_requires_registration():
    with pytest.raises(AcmeError):
        AcmeClient(DIRECTORY_URL).get_order("https://acme.test/order/1")


# ─── acme/issuer.py ───────────────────────────────────────────────────────────

DOMAINS = DomainSet.of("example.com", ["*.example.com"])


def _authz(value: str, wildcard: bool = False, status: str = "pending", challenge_types=("http-01", "dns-01")) -> dict:
    authz = {
        "status": status,
        "identifier": {"type": "dns", "value": value},
        "challenges": [
            {"type": t, "url": f"https://acme.test/chall/{value}/{t}/{wildcard}", "token": f"tok-{value}-{wildcard}"}
            for t in challenge_types
        ],
    }
    if wildcard:
        authz["wildcard"] = True
    return authz


@pytest.fixture()
def fake_acme(certs):
    """A MagicMock client for an order with an apex and a wildcard authorization."""
    authzs = {
        "https://acme.test/authz/apex": _authz("example.com"),
        "https://acme.test/authz/wild": _authz("example.com", wildcard=True),
    }
    client = MagicMock()
    client.new_order.return_value = (
        {"authorizations": list(authzs), "finalize": "https://acme.test/fin/1"},
        "https://acme.test/order/1",
    )
    client.get_authorization.side_effect = lambda url: authzs[url]
    client.poll_order.return_value = "https://acme.test/cert/1"
    client.download_certificate.return_value = certs.public().full_chain.decode()
    client.authzs = authzs
    return client


@pytest.fixture()
def issuer_parts(fake_acme, account_key, domain_key, tmp_path):
    key_path = tmp_path / "account.key"
    jwslib.save_account_key(account_key, key_path)
    dns = MagicMock()
    sleeps = []
    issuer = AcmeIssuer(
        client=fake_acme,
        dns_provider=dns,
        account_key_path=key_path,
        propagation_seconds=45,
        sleep=sleeps.append,
        key_factory=lambda: domain_key,
    )
    return issuer, fake_acme, dns, sleeps


class TestAcmeIssuer:
    def test_successful_issuance_returns_material(self, issuer_parts, certs):
        issuer, client, dns, sleeps = issuer_parts

        material = issuer.issue(DOMAINS, "admin@example.com")

        assert material.full_chain == client.download_certificate.return_value.encode()
        assert material.chain and b"BEGIN CERTIFICATE" in material.chain
        assert b"PRIVATE KEY" in material.private_key
        client.new_order.assert_called_once_with(["example.com", "*.example.com"])
        dns.verify_credentials.assert_called_once()
        assert sleeps == [45]

    def test_wildcard_and_apex_records_are_published_and_withdrawn(self, issuer_parts, account_key):
        issuer, client, dns, _ = issuer_parts

        issuer.issue(DOMAINS, "admin@example.com")

        created = [c.args for c in dns.create_txt_record.call_args_list]
        assert [name for name, _ in created] == ["example.com", "*.example.com"]
        expected = compute_dns_txt_value(jwslib.compute_key_authorization("tok-example.com-True", account_key))
        assert created[1][1] == expected
        assert sorted(c.args for c in dns.delete_txt_record.call_args_list) == sorted(created)

    def test_only_dns01_challenges_are_answered(self, issuer_parts):
        issuer, client, _, _ = issuer_parts
        issuer.issue(DOMAINS, "admin@example.com")
        answered = [c.args[0] for c in client.respond_to_challenge.call_args_list]
        assert answered and all(url.endswith("/dns-01/False") or url.endswith("/dns-01/True") for url in answered)

    def test_valid_authorizations_are_skipped(self, issuer_parts):
        issuer, client, dns, sleeps = issuer_parts
        for authz in client.authzs.values():
            authz["status"] = "valid"

        issuer.issue(DOMAINS, "admin@example.com")

        dns.create_txt_record.assert_not_called()
        client.respond_to_challenge.assert_not_called()
        assert sleeps == []

    def test_records_withdrawn_when_validation_fails(self, issuer_parts):
        issuer, client, dns, _ = issuer_parts
        client.poll_authorization.side_effect = AcmeError(403, {"type": "urn:ietf:params:acme:error:unauthorized"})

        with pytest.raises(ChallengeFailed):
            issuer.issue(DOMAINS, "admin@example.com")

        assert dns.delete_txt_record.call_count == 2
        client.finalize_order.assert_not_called()

    def test_rate_limit_maps_to_rate_limited(self, issuer_parts):
        issuer, client, dns, _ = issuer_parts
        client.new_order.side_effect = AcmeError(429, {"type": "urn:ietf:params:acme:error:rateLimited"})

        with pytest.raises(RateLimited) as exc_info:
            issuer.issue(DOMAINS, "admin@example.com")
        assert exc_info.value.exit_code == 23
        dns.create_txt_record.assert_not_called()

    def test_poll_timeout_maps_to_propagation_timeout(self, issuer_parts):
        issuer, client, dns, _ = issuer_parts
        client.poll_authorization.side_effect = AcmeTimeout("still pending")

        with pytest.raises(PropagationTimeout):
            issuer.issue(DOMAINS, "admin@example.com")
        assert dns.delete_txt_record.call_count == 2

    def test_rejected_dns_credentials_stop_before_ca_traffic(self, issuer_parts):
        issuer, client, dns, _ = issuer_parts
        dns.verify_credentials.side_effect = DnsProviderError("token invalid")

        with pytest.raises(ChallengeFailed):
            issuer.issue(DOMAINS, "admin@example.com")
        client.register.assert_not_called()
        client.new_order.assert_not_called()

    def test_transport_error_maps_to_challenge_failed(self, issuer_parts):
        issuer, client, _, _ = issuer_parts
        client.register.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(ChallengeFailed):
            issuer.issue(DOMAINS, "admin@example.com")

    def test_missing_dns01_challenge(self, issuer_parts):
        issuer, client, dns, _ = issuer_parts
        client.authzs["https://acme.test/authz/apex"]["challenges"] = [
            {"type": "http-01", "url": "https://acme.test/chall/x", "token": "t"}
        ]

        with pytest.raises(ChallengeFailed):
            issuer.issue(DOMAINS, "admin@example.com")

    def test_unreadable_account_key_is_an_issuance_error(self, issuer_parts, tmp_path):
        issuer, client, _, _ = issuer_parts
        issuer.account_key_path.write_bytes(b"not a key")

        with pytest.raises(IssuanceError) as exc_info:
            issuer.issue(DOMAINS, "admin@example.com")
        assert type(exc_info.value) is IssuanceError
        client.register.assert_not_called()
