"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

import os
import tempfile
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ACME_DIRECTORIES = {
    "production": "https://acme-v02.api.letsencrypt.org/directory",
    "staging":    "https://acme-staging-v02.api.letsencrypt.org/directory",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Domains ────────────────────────────────────────────────────────────
    MONGO_DOMAIN: str = "mongodb.example.com"
    APP_DOMAIN: str = "apps.example.com"
    ORG_NAME: str = "Frontdoor"

    # ── Storage ────────────────────────────────────────────────────────────
    CERTS_DIR: str = "./certs"
    ACME_ACCOUNT_KEY_PATH: str = "./certs/acme/account.key"
    CONFIG_BACKUP_DIR: str = "./backups"
    LOCKS_DIR: str = os.path.join(tempfile.gettempdir(), "frontdoor_locks")

    # ── Private CA ─────────────────────────────────────────────────────────
    CA_VALIDITY_DAYS: int = 3650
    LEAF_VALIDITY_DAYS: int = 365
    CA_KEY_SIZE: int = 2048
    # Regenerating the CA silently breaks the trust chain of every issued leaf.
    CA_REGENERATE_ON_CORRUPT: bool = False

    # ── ACME (public wildcard certificate) ─────────────────────────────────
    ENVIRONMENT: Literal["development", "staging", "production"] = "development"
    ACME_DIRECTORY_URL: str = ""
    ACME_EMAIL: str = ""
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)

    # ── DNS-01 provider ────────────────────────────────────────────────────
    DNS_PROVIDER: Literal["cloudflare", "route53"] = "cloudflare"
    CLOUDFLARE_API_TOKEN: str = ""
    CLOUDFLARE_ZONE_ID: str = ""
    AWS_ROUTE53_HOSTED_ZONE_ID: str = ""
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    DNS_RECORD_TTL: int = 120
    # Fixed wait rather than resolver polling; an approximation in both directions.
    DNS_PROPAGATION_WAIT_SECONDS: int = 60

    # ── Renewal scheduling ─────────────────────────────────────────────────
    RENEWAL_THRESHOLD_DAYS: int = 30
    RENEWAL_CHECK_INTERVAL_MINUTES: int = 1440
    RENEWAL_INITIAL_DELAY_SECONDS: int = 60
    RENEWAL_LOCK_NAME: str = "cert_renewal_process"
    RENEWAL_LOCK_TIMEOUT_SECONDS: float = 30.0
    AUTO_RENEW_CERTIFICATES: bool = True

    # ── Proxy configuration API (HAProxy Data Plane API) ───────────────────
    HAPROXY_API_URL: str = "http://haproxy:5555/v2"
    HAPROXY_API_USER: str = "admin"
    HAPROXY_API_PASS: str = "admin"
    HAPROXY_API_TIMEOUT: int = 15
    HAPROXY_CONTAINER: str = "haproxy"
    HTTP_FRONTEND: str = "https-in"
    TCP_FRONTEND: str = "tcp-in"
    STALE_TRANSACTION_MINUTES: int = 10
    CONFIG_BACKUP_KEEP: int = 10

    # ── Retry / resilience ─────────────────────────────────────────────────
    MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 30.0

    @field_validator(
        "RENEWAL_THRESHOLD_DAYS",
        "RENEWAL_CHECK_INTERVAL_MINUTES",
        "CA_VALIDITY_DAYS",
        "LEAF_VALIDITY_DAYS",
        "MAX_RETRIES",
    )
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("CA_KEY_SIZE")
    @classmethod
    def validate_key_size(cls, v: int) -> int:
        if v < 2048:
            raise ValueError("CA_KEY_SIZE must be at least 2048 bits")
        return v

    @field_validator("MONGO_DOMAIN", "APP_DOMAIN")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().rstrip(".").lower()

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if not self.ACME_DIRECTORY_URL:
            key = "production" if self.ENVIRONMENT == "production" else "staging"
            self.ACME_DIRECTORY_URL = _ACME_DIRECTORIES[key]
        return self


# Module-level singleton, imported by from_settings() factories
settings = Settings()
