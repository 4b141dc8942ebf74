"""
DNS-01 challenge support.

Provides:
  compute_dns_txt_value(key_authorization) -> str
      base64url(SHA-256(key_authorization)), the TXT record value

  DnsProvider (ABC)
      Interface the AcmeIssuer drives to publish and withdraw TXT records.

  CloudflareDnsProvider — uses the `cloudflare` library (>=3.0)

  make_dns_provider() -> DnsProvider
      Factory that reads settings and returns the configured provider.

DNS-01 protocol (RFC 8555 §8.4):
  1. key_authorization = token + "." + jwk_thumbprint
  2. TXT record value = base64url(SHA-256(key_authorization))
  3. DNS name = _acme-challenge.{domain}, with any "*." label removed, so the
     apex and the wildcard of one domain share a record name (two values)
  4. Create records → wait for propagation → POST challenge URLs → poll
"""
from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod

import cloudflare
from josepy import b64

logger = logging.getLogger(__name__)


class DnsProviderError(Exception):
    """Raised when the DNS provider rejects credentials or a record change."""


# ─── TXT value computation ─────────────────────────────────────────────────────


def compute_dns_txt_value(key_authorization: str) -> str:
    """Return base64url(SHA-256(key_authorization)) with no padding."""
    digest = hashlib.sha256(key_authorization.encode("ascii")).digest()
    return b64.b64encode(digest).decode("ascii")


def challenge_record_name(domain: str) -> str:
    """Return the _acme-challenge name for *domain* (wildcards share the apex's)."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"_acme-challenge.{domain}"


# ─── Provider ABC ─────────────────────────────────────────────────────────────


class DnsProvider(ABC):
    """Abstract base for DNS-01 TXT record management."""

    @abstractmethod
    def verify_credentials(self) -> None:
        """Raise DnsProviderError if the configured credentials are rejected."""

    @abstractmethod
    def create_txt_record(self, domain: str, txt_value: str) -> None:
        """Create the challenge TXT record for *domain*.

        Idempotent: an existing record with the same value is left alone.
        Other values under the same name are kept, since the apex and its
        wildcard need two records at once.
        """

    @abstractmethod
    def delete_txt_record(self, domain: str, txt_value: str) -> None:
        """Delete the challenge TXT record with the given value.

        Best-effort: a missing record or API failure is logged, not raised.
        """


# ─── Cloudflare ───────────────────────────────────────────────────────────────


class CloudflareDnsProvider(DnsProvider):
    """DNS-01 provider backed by the Cloudflare API (cloudflare>=3.0).

    Authenticates with a scoped API token when one is given, otherwise with
    the account email + global API key pair.
    """

    def __init__(
        self,
        api_token: str = "",
        api_email: str = "",
        api_key: str = "",
        zone_id: str = "",
        ttl: int = 60,
    ) -> None:
        self._api_token = api_token
        self._api_email = api_email
        self._api_key = api_key
        self._explicit_zone_id = zone_id
        self._ttl = ttl
        self._zone_cache: dict[str, str] = {}

    def _get_client(self) -> cloudflare.Cloudflare:
        if self._api_token:
            return cloudflare.Cloudflare(api_token=self._api_token)
        return cloudflare.Cloudflare(api_email=self._api_email, api_key=self._api_key)

    def verify_credentials(self) -> None:
        if not self._api_token and not (self._api_email and self._api_key):
            raise DnsProviderError(
                "Cloudflare credentials missing: set CLOUDFLARE_API_TOKEN, "
                "or CLOUDFLARE_EMAIL and CLOUDFLARE_API_KEY"
            )
        cf = self._get_client()
        try:
            if self._api_token:
                result = cf.user.tokens.verify()
                status = getattr(result, "status", "active")
                if status != "active":
                    raise DnsProviderError(f"Cloudflare API token is {status}")
            else:
                cf.user.get()
        except cloudflare.APIError as exc:
            raise DnsProviderError(f"Cloudflare credentials rejected: {exc}") from exc
        logger.debug("Cloudflare credentials verified")

    def _resolve_zone_id(self, domain: str) -> str:
        """Return zone ID — uses explicit value if set, else auto-discovers."""
        if self._explicit_zone_id:
            return self._explicit_zone_id
        if domain.startswith("*."):
            domain = domain[2:]
        if domain in self._zone_cache:
            return self._zone_cache[domain]

        cf = self._get_client()
        # Walk from most-specific to least-specific label group
        parts = domain.split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:])
            zone_list = list(cf.zones.list(name=candidate))
            if zone_list:
                self._zone_cache[domain] = zone_list[0].id
                return zone_list[0].id

        raise DnsProviderError(f"Could not discover Cloudflare zone for domain: {domain}")

    def create_txt_record(self, domain: str, txt_value: str) -> None:
        name = challenge_record_name(domain)
        try:
            cf = self._get_client()
            zone_id = self._resolve_zone_id(domain)

            existing = list(cf.dns.records.list(zone_id=zone_id, name=name, type="TXT"))
            for record in existing:
                if getattr(record, "content", None) == txt_value:
                    logger.debug("TXT record %s already exists — skipping create", name)
                    return

            cf.dns.records.create(
                zone_id=zone_id,
                type="TXT",
                name=name,
                content=txt_value,
                ttl=self._ttl,
            )
        except cloudflare.APIError as exc:
            raise DnsProviderError(f"Failed to create TXT record {name}: {exc}") from exc
        logger.info("Created Cloudflare TXT record %s", name)

    def delete_txt_record(self, domain: str, txt_value: str) -> None:
        name = challenge_record_name(domain)
        try:
            cf = self._get_client()
            zone_id = self._resolve_zone_id(domain)

            records = list(cf.dns.records.list(zone_id=zone_id, name=name, type="TXT"))
            for record in records:
                if getattr(record, "content", None) == txt_value:
                    cf.dns.records.delete(record.id, zone_id=zone_id)
                    logger.info("Deleted Cloudflare TXT record %s", name)
                    return
            logger.debug("TXT record %s not found — nothing to delete", name)
        except (cloudflare.APIError, DnsProviderError) as exc:
            logger.warning("Failed to delete Cloudflare TXT record for %s: %s", domain, exc)


# ─── Factory ──────────────────────────────────────────────────────────────────


def make_dns_provider() -> DnsProvider:
    """Instantiate and return the configured DNS provider.

    Reads settings at call time (mirrors make_client()).
    """
    from config import settings  # late import to avoid circular dependency

    if settings.DNS_PROVIDER == "cloudflare":
        return CloudflareDnsProvider(
            api_token=settings.CLOUDFLARE_API_TOKEN,
            api_email=settings.CLOUDFLARE_EMAIL,
            api_key=settings.CLOUDFLARE_API_KEY,
            zone_id=settings.CLOUDFLARE_ZONE_ID,
        )
    raise ValueError(f"Unknown DNS_PROVIDER: {settings.DNS_PROVIDER!r}. Must be: cloudflare")
