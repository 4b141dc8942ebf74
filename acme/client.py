"""
Low-level ACME RFC 8555 HTTP client.

The client keeps the protocol bookkeeping for one issuance on the instance:
the directory document, the current anti-replay nonce, the account key and
the account URL.  AcmeIssuer drives it; nothing here knows about DNS or
the certificate store.

RFC 8555 compliance notes
--------------------------
* POST-as-GET: orders, authorizations and certificates are fetched with a
  signed empty payload, never plain GET.
* badNonce retry: ACME servers return a fresh `Replay-Nonce` header even on
  error responses.  `_post_signed` re-signs and retries up to
  `_NONCE_RETRIES` times.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import requests
from josepy import b64
from josepy.jwk import JWKRSA

from acme import jws as jwslib

logger = logging.getLogger(__name__)

_NONCE_RETRIES = 3


class AcmeError(Exception):
    """Raised when the ACME server returns an error response."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        problem_type = body.get("type", "unknown")
        detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {problem_type} — {detail}")

    @property
    def problem_type(self) -> str:
        return self.body.get("type", "")

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429 or self.problem_type.endswith(":rateLimited")


class AcmeTimeout(AcmeError):
    """A poll loop ran out of attempts before the object settled."""

    def __init__(self, detail: str) -> None:
        super().__init__(0, {"type": "timeout", "detail": detail})


class AcmeClient:
    """
    Implements the RFC 8555 ACME protocol against any compliant directory
    (Let's Encrypt production/staging, Pebble for local tests).
    """

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
        poll_interval: float = 2.0,
        max_polls: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "certlifecycle/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

        self._directory: Optional[dict] = None
        self._nonce: Optional[str] = None
        self.account_key: Optional[JWKRSA] = None
        self.account_url: Optional[str] = None

    # ── Directory & nonce ─────────────────────────────────────────────────

    @property
    def directory(self) -> dict:
        """GET /directory once — discover ACME endpoint URLs."""
        if self._directory is None:
            resp = self._session.get(self.directory_url, timeout=self.timeout)
            resp.raise_for_status()
            self._directory = resp.json()
        return self._directory

    def new_nonce(self) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        resp = self._session.head(self.directory["newNonce"], timeout=self.timeout)
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def register(self, account_key: JWKRSA, contact_email: str = "") -> str:
        """
        Find the account for *account_key*, creating it if the CA has none.
        Returns the account URL (also kept on the client for kid signing).
        """
        self.account_key = account_key
        url = self.directory["newAccount"]
        try:
            resp = self._post_signed({"onlyReturnExisting": True}, url, use_kid=False)
            self.account_url = resp.headers.get("Location", "")
            logger.debug("Reusing ACME account %s", self.account_url)
            return self.account_url
        except AcmeError as exc:
            # accountDoesNotExist comes back as 400; anything else is real
            if exc.status_code != 400:
                raise

        payload: dict = {"termsOfServiceAgreed": True}
        if contact_email:
            payload["contact"] = [f"mailto:{contact_email}"]
        resp = self._post_signed(payload, url, use_kid=False)
        self.account_url = resp.headers.get("Location", "")
        logger.info("Registered ACME account %s", self.account_url)
        return self.account_url

    # ── Orders ────────────────────────────────────────────────────────────

    def new_order(self, domains: list[str]) -> tuple[dict, str]:
        """POST /newOrder for every name in *domains*. Returns (order, order_url)."""
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(payload, self.directory["newOrder"])
        return resp.json(), resp.headers.get("Location", "")

    def get_order(self, order_url: str) -> dict:
        return self._post_signed(None, order_url).json()

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(self, auth_url: str) -> dict:
        """POST-as-GET an authorization object (RFC 8555 §7.5)."""
        return self._post_signed(None, auth_url).json()

    def respond_to_challenge(self, challenge_url: str) -> dict:
        """POST {} to the challenge URL to ask the CA to validate it."""
        return self._post_signed({}, challenge_url).json()

    def poll_authorization(self, auth_url: str) -> dict:
        """
        Poll an authorization until it is 'valid'.
        Raises AcmeError on 'invalid' and AcmeTimeout when polls run out.
        """
        for _ in range(self.max_polls):
            authz = self.get_authorization(auth_url)
            status = authz.get("status", "pending")
            if status == "valid":
                return authz
            if status == "invalid":
                raise AcmeError(
                    403,
                    {
                        "type": "urn:ietf:params:acme:error:unauthorized",
                        "detail": f"Authorization invalid: {_challenge_error(authz)}",
                    },
                )
            self._sleep(self.poll_interval)

        raise AcmeTimeout(f"Authorization {auth_url} did not become valid after {self.max_polls} polls")

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(self, finalize_url: str, csr_der: bytes) -> dict:
        """POST /finalize with the DER CSR."""
        return self._post_signed({"csr": b64.b64encode(csr_der).decode()}, finalize_url).json()

    def poll_order(self, order_url: str) -> str:
        """Poll the order until 'valid' and return the certificate URL."""
        for _ in range(self.max_polls):
            order = self.get_order(order_url)
            status = order.get("status")
            if status == "valid":
                cert_url = order.get("certificate")
                if not cert_url:
                    raise AcmeError(0, {"detail": "Order valid but no certificate URL"})
                return cert_url
            if status == "invalid":
                raise AcmeError(0, {"type": "invalid", "detail": f"Order became invalid: {order}"})
            self._sleep(self.poll_interval)

        raise AcmeTimeout("Order did not become valid (certificate not issued)")

    def download_certificate(self, cert_url: str) -> str:
        """POST-as-GET the certificate URL and return the PEM chain (leaf first)."""
        resp = self._post_signed(None, cert_url, accept="application/pem-certificate-chain")
        return resp.text

    # ── Internal ──────────────────────────────────────────────────────────

    def _post_signed(
        self,
        payload: dict | None,
        url: str,
        use_kid: bool = True,
        accept: str = "application/json",
    ) -> requests.Response:
        """
        Sign *payload* with the account key and POST to *url*, retrying up to
        `_NONCE_RETRIES` times on `badNonce` responses.

        The nonce carried by each response is kept for the next request, so a
        fresh HEAD /newNonce is only needed for the first one.
        """
        if self.account_key is None:
            raise AcmeError(0, {"detail": "register() must be called before signed requests"})
        kid = self.account_url if use_kid else None

        for attempt in range(_NONCE_RETRIES):
            nonce = self._nonce or self.new_nonce()
            self._nonce = None
            body = jwslib.sign_request(payload, self.account_key, nonce, url, kid)
            resp = self._session.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/jose+json",
                    "Accept": accept,
                },
                timeout=self.timeout,
            )
            self._nonce = resp.headers.get("Replay-Nonce") or None
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}

            if "badNonce" in error_body.get("type", "") and attempt < _NONCE_RETRIES - 1:
                logger.debug("badNonce from %s, retrying (%d)", url, attempt + 1)
                continue

            raise AcmeError(resp.status_code, error_body, self._nonce or "")

        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})


def _challenge_error(authz: dict) -> str:
    for challenge in authz.get("challenges", []):
        if challenge.get("error"):
            return challenge["error"].get("detail", str(challenge["error"]))
    return authz.get("status", "invalid")


def make_client() -> AcmeClient:
    """
    Create an AcmeClient from the current application settings.
    Late-imports config to avoid circular imports at module load time.
    """
    from config import settings  # noqa: PLC0415

    return AcmeClient(
        directory_url=settings.ACME_DIRECTORY_URL,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
