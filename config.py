"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

import re
from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings ≥2.7 calls json.loads() on complex-typed fields
    (e.g. List[str]) before field_validators run.  A plain comma-separated
    value like ``*.example.com,*.lan.example.com`` is not valid JSON, so the
    raw string is passed through and split by the field validators instead.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


_DIRECTORY_PRESETS = {
    "letsencrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "letsencrypt_staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
}

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Domain set ─────────────────────────────────────────────────────────
    PRIMARY_DOMAIN: str = ""
    # Explicit: nothing (not even *.PRIMARY_DOMAIN) is added implicitly.
    SAN_DOMAINS: List[str] = []
    CONTACT_EMAIL: str = ""

    # ── CA ─────────────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "custom"] = "letsencrypt"
    # Only consulted when CA_PROVIDER="custom"
    ACME_DIRECTORY_URL: str = ""
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (Pebble only)
    PUBLIC_CA_ORGANIZATION: str = "Let's Encrypt"

    # ── DNS-01 ─────────────────────────────────────────────────────────────
    DNS_PROVIDER: Literal["cloudflare"] = "cloudflare"
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_EMAIL: str = ""     # Global API key auth (legacy)
    CLOUDFLARE_API_KEY: str = ""
    CLOUDFLARE_ZONE_ID: str = ""   # Auto-discovered when empty
    DNS_PROPAGATION_SECONDS: int = 60

    # ── Lifecycle policy ───────────────────────────────────────────────────
    RENEWAL_THRESHOLD_DAYS: int = 30
    FORCE_RENEW: bool = False
    ALLOW_SELF_SIGNED_FALLBACK: bool = True
    FALLBACK_VALIDITY_DAYS: int = 365
    FALLBACK_ORGANIZATION: str = "Homelab Fallback"

    # ── Storage ────────────────────────────────────────────────────────────
    CERT_STORE_PATH: str = "./certs"
    ACCOUNT_KEY_PATH: str = "./account.key"
    LOCK_TIMEOUT_SECONDS: float = 0.0

    # ── Runtime location read by the proxy ─────────────────────────────────
    RUNTIME_CERT_PATH: str = "/etc/nginx/ssl/fullchain.pem"
    RUNTIME_KEY_PATH: str = "/etc/nginx/ssl/privkey.pem"
    RUNTIME_OWNER: Optional[str] = None   # "user" or "user:group"

    # ── Proxy reload ───────────────────────────────────────────────────────
    RELOAD_MODE: Literal["none", "pidfile", "docker", "command"] = "none"
    PROXY_PID_FILE: str = "/run/nginx.pid"
    PROXY_CONTAINER: str = "nginx"
    RELOAD_COMMAND: str = ""
    PROXY_CONFIG_TEST_COMMAND: str = ""

    # ── Scheduling ─────────────────────────────────────────────────────────
    SCHEDULE_TIMES: List[str] = ["00:00", "12:00"]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("SAN_DOMAINS", "SCHEDULE_TIMES", mode="before")
    @classmethod
    def parse_csv(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("SCHEDULE_TIMES")
    @classmethod
    def validate_schedule_times(cls, v: List[str]) -> List[str]:
        bad = [t for t in v if not _HHMM.match(t)]
        if bad:
            raise ValueError(f"SCHEDULE_TIMES entries must be HH:MM, got {bad}")
        return v

    @field_validator("RENEWAL_THRESHOLD_DAYS", "FALLBACK_VALIDITY_DAYS")
    @classmethod
    def validate_positive_days(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("day counts must be positive")
        return v

    @field_validator("DNS_PROPAGATION_SECONDS")
    @classmethod
    def validate_propagation(cls, v: int) -> int:
        if v < 0:
            raise ValueError("DNS_PROPAGATION_SECONDS cannot be negative")
        return v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in _DIRECTORY_PRESETS:
            self.ACME_DIRECTORY_URL = _DIRECTORY_PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self

    @model_validator(mode="after")
    def validate_reload(self) -> "Settings":
        if self.RELOAD_MODE == "command" and not self.RELOAD_COMMAND:
            raise ValueError("RELOAD_COMMAND must be set when RELOAD_MODE='command'")
        return self

    # ── Derived ────────────────────────────────────────────────────────────

    @property
    def dns_credentials_present(self) -> bool:
        if self.CLOUDFLARE_API_TOKEN:
            return True
        return bool(self.CLOUDFLARE_EMAIL and self.CLOUDFLARE_API_KEY)

    @property
    def public_ca_configured(self) -> bool:
        """True when an ACME DNS-01 issuance can at least be attempted."""
        return bool(self.CONTACT_EMAIL) and self.dns_credentials_present


# Module-level singleton — import and use everywhere.
settings = Settings()
