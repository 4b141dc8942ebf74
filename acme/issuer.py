"""
AcmeIssuer — one complete DNS-01 issuance against a public ACME CA.

Flow for a DomainSet (primary + SANs, wildcards included):
  1. verify DNS provider credentials (no CA traffic if they are rejected)
  2. load/create the account key and find/register the account
  3. generate the domain key locally (it never leaves the process)
  4. newOrder for every name in the set
  5. publish one TXT record per dns-01 challenge
  6. sleep the fixed propagation interval
  7. respond to each challenge and poll its authorization
  8. finalize with a CSR and download the chain
  9. withdraw every TXT record that was published, success or not

Only CertificateMaterial comes out; the issuer never touches the store, so a
failed attempt cannot overwrite anything.  Transport and protocol errors are
translated into the IssuanceError family before they leave issue().
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

import requests

from acme import jws as jwslib
from acme.client import AcmeClient, AcmeError, AcmeTimeout
from acme.crypto import create_csr, generate_rsa_key, private_key_to_pem, split_pem_chain
from acme.dns_challenge import DnsProvider, DnsProviderError, compute_dns_txt_value
from lifecycle.errors import ChallengeFailed, IssuanceError, PropagationTimeout, RateLimited
from lifecycle.models import CertificateMaterial, DomainSet

logger = logging.getLogger(__name__)


class AcmeIssuer:
    def __init__(
        self,
        client: AcmeClient,
        dns_provider: DnsProvider,
        account_key_path: str | Path,
        propagation_seconds: int = 60,
        sleep: Callable[[float], None] = time.sleep,
        key_factory: Callable = generate_rsa_key,
    ) -> None:
        self.client = client
        self.dns = dns_provider
        self.account_key_path = Path(account_key_path)
        self.propagation_seconds = propagation_seconds
        self._sleep = sleep
        self._key_factory = key_factory

    def issue(self, domain_set: DomainSet, contact_email: str) -> CertificateMaterial:
        domain = domain_set.primary
        try:
            return self._issue(domain_set, contact_email)
        except IssuanceError:
            raise
        except AcmeTimeout as exc:
            raise PropagationTimeout(str(exc), domain=domain) from exc
        except AcmeError as exc:
            if exc.rate_limited:
                raise RateLimited(str(exc), domain=domain) from exc
            raise ChallengeFailed(str(exc), domain=domain) from exc
        except DnsProviderError as exc:
            raise ChallengeFailed(f"DNS provider: {exc}", domain=domain) from exc
        except requests.RequestException as exc:
            raise ChallengeFailed(f"ACME transport: {exc}", domain=domain) from exc
        except (OSError, ValueError) as exc:
            raise IssuanceError(f"account key {self.account_key_path}: {exc}", domain=domain) from exc

    def _issue(self, domain_set: DomainSet, contact_email: str) -> CertificateMaterial:
        names = domain_set.names()

        self.dns.verify_credentials()

        account_key = jwslib.load_or_create_account_key(self.account_key_path)
        self.client.register(account_key, contact_email)

        domain_key = self._key_factory()

        order, order_url = self.client.new_order(names)
        logger.info("ACME order created for %s: %s", domain_set, order_url)

        published: list[tuple[str, str]] = []
        try:
            pending: list[tuple[str, str]] = []
            for auth_url in order.get("authorizations", []):
                authz = self.client.get_authorization(auth_url)
                if authz.get("status") == "valid":
                    continue
                identifier = authz["identifier"]["value"]
                if authz.get("wildcard"):
                    identifier = f"*.{identifier}"
                challenge = _dns01_challenge(authz)
                if challenge is None:
                    raise ChallengeFailed(f"CA offered no dns-01 challenge for {identifier}", domain=domain_set.primary)

                key_auth = jwslib.compute_key_authorization(challenge["token"], account_key)
                txt_value = compute_dns_txt_value(key_auth)
                self.dns.create_txt_record(identifier, txt_value)
                published.append((identifier, txt_value))
                pending.append((auth_url, challenge["url"]))

            if pending:
                logger.info(
                    "Waiting %ss for DNS propagation (%d record(s))",
                    self.propagation_seconds, len(published),
                )
                self._sleep(self.propagation_seconds)

            for auth_url, challenge_url in pending:
                self.client.respond_to_challenge(challenge_url)
                self.client.poll_authorization(auth_url)

            csr_der = create_csr(domain_key, names)
            self.client.finalize_order(order["finalize"], csr_der)
            cert_url = self.client.poll_order(order_url)
            full_chain = self.client.download_certificate(cert_url).encode()
        finally:
            for identifier, txt_value in published:
                self.dns.delete_txt_record(identifier, txt_value)

        _, chain = split_pem_chain(full_chain)
        logger.info("Certificate issued for %s", domain_set)
        return CertificateMaterial(
            full_chain=full_chain,
            private_key=private_key_to_pem(domain_key),
            chain=chain or None,
        )


def _dns01_challenge(authz: dict) -> dict | None:
    for challenge in authz.get("challenges", []):
        if challenge.get("type") == "dns-01":
            return challenge
    return None


def make_acme_issuer() -> AcmeIssuer:
    """Build an AcmeIssuer from the current application settings."""
    from acme.client import make_client  # noqa: PLC0415
    from acme.dns_challenge import make_dns_provider  # noqa: PLC0415
    from config import settings  # noqa: PLC0415

    return AcmeIssuer(
        client=make_client(),
        dns_provider=make_dns_provider(),
        account_key_path=settings.ACCOUNT_KEY_PATH,
        propagation_seconds=settings.DNS_PROPAGATION_SECONDS,
    )
