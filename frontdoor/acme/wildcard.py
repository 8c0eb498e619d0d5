"""
Public wildcard certificate for the proxy's domain, obtained over ACME with
DNS-01 validation.

State machine for the single wildcard certificate:

    ABSENT ──issue──▶ ISSUING ──ok──▶ VALID ──renew──▶ RENEWING ──ok──▶ VALID
                         │                                │
                         └──error──▶ ABSENT               └──error──▶ VALID

Files are written only after the whole ACME exchange succeeded, so a failed
issuance never replaces (or partially replaces) the installed certificate:

    <certsDir>/live/<domain>/fullchain.pem   (0644)
    <certsDir>/live/<domain>/privkey.pem     (0600)
    <certsDir>/fullchain.pem                 chain + key bundle for the proxy (0600)
    <certsDir>/mongodb.pem                   same bundle, TCP frontend (0600)
"""
from __future__ import annotations

import enum
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import requests
from josepy.jwk import JWKRSA

from frontdoor import crypto
from frontdoor.acme import jws as jwslib
from frontdoor.acme.client import AcmeClient, AcmeError
from frontdoor.acme.dns_challenge import DnsChallengeSolver
from frontdoor.errors import RecoverableInfrastructureError, WildcardIssuanceError
from frontdoor.storage.atomic import discard_staged, stage_bytes
from frontdoor.storage.filesystem import CERT_MODE, KEY_MODE, live_dir, read_text_or_none, write_file_set

logger = logging.getLogger(__name__)

FULLCHAIN_FILE = "fullchain.pem"
PRIVKEY_FILE = "privkey.pem"
PROXY_BUNDLE_FILES = ("fullchain.pem", "mongodb.pem")


class WildcardState(str, enum.Enum):
    ABSENT = "absent"
    ISSUING = "issuing"
    VALID = "valid"
    RENEWING = "renewing"


@dataclass
class WildcardCertificate:
    domain: str
    full_chain_path: Path
    private_key_path: Path
    bundle_path: Path
    not_after: datetime

    @property
    def days_remaining(self) -> int:
        return crypto.days_until_expiry(self.not_after)


@dataclass
class WildcardRenewalResult:
    renewed: bool
    certificate: Optional[WildcardCertificate] = None
    days_remaining: Optional[int] = None


class WildcardCertificateManager:
    def __init__(
        self,
        domain: str,
        certs_dir: str | Path,
        account_key_path: str | Path,
        client: AcmeClient,
        solver: DnsChallengeSolver,
        email: str = "",
        renewal_threshold_days: int = 30,
        propagation_wait_seconds: float = 60,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.domain = domain.rstrip(".").lower()
        self.certs_dir = Path(certs_dir)
        self.account_key_path = Path(account_key_path)
        self.client = client
        self.solver = solver
        self.email = email
        self.renewal_threshold_days = renewal_threshold_days
        self.propagation_wait_seconds = propagation_wait_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._account_key: Optional[JWKRSA] = None
        self.state = WildcardState.VALID if self.current_certificate() else WildcardState.ABSENT

    @classmethod
    def from_settings(cls, solver: Optional[DnsChallengeSolver] = None) -> "WildcardCertificateManager":
        from frontdoor.acme.client import make_client
        from frontdoor.acme.dns_challenge import make_solver
        from frontdoor.config import settings

        return cls(
            domain=settings.MONGO_DOMAIN,
            certs_dir=settings.CERTS_DIR,
            account_key_path=settings.ACME_ACCOUNT_KEY_PATH,
            client=make_client(),
            solver=solver or make_solver(),
            email=settings.ACME_EMAIL,
            renewal_threshold_days=settings.RENEWAL_THRESHOLD_DAYS,
            propagation_wait_seconds=settings.DNS_PROPAGATION_WAIT_SECONDS,
        )

    @property
    def full_chain_path(self) -> Path:
        return live_dir(self.certs_dir, self.domain) / FULLCHAIN_FILE

    @property
    def private_key_path(self) -> Path:
        return live_dir(self.certs_dir, self.domain) / PRIVKEY_FILE

    # ── Account ───────────────────────────────────────────────────────────

    def ensure_account(self) -> JWKRSA:
        """Load the ACME account key, generating and saving it on first use."""
        if self._account_key is not None:
            return self._account_key

        if jwslib.account_key_exists(self.account_key_path):
            self._account_key = jwslib.load_account_key(self.account_key_path)
            logger.debug("Loaded ACME account key from %s", self.account_key_path)
        else:
            self._account_key = jwslib.generate_account_key()
            jwslib.save_account_key(self._account_key, self.account_key_path)
            logger.info("Generated new ACME account key at %s", self.account_key_path)
        return self._account_key

    # ── Inspection ────────────────────────────────────────────────────────

    def current_certificate(self) -> Optional[WildcardCertificate]:
        """Return the installed certificate, or None if missing or unreadable."""
        pem = read_text_or_none(self.full_chain_path)
        if pem is None:
            return None
        try:
            not_after = crypto.parse_expiry(pem)
        except ValueError:
            return None
        return WildcardCertificate(
            domain=self.domain,
            full_chain_path=self.full_chain_path,
            private_key_path=self.private_key_path,
            bundle_path=self.certs_dir / PROXY_BUNDLE_FILES[1],
            not_after=not_after,
        )

    def needs_renewal(self) -> bool:
        """True if the certificate is missing, unreadable or inside the renewal threshold."""
        cert = self.current_certificate()
        if cert is None:
            logger.info("No readable wildcard certificate for %s", self.domain)
            return True
        days = cert.days_remaining
        logger.debug("Wildcard certificate for %s expires in %d days", self.domain, days)
        return days < self.renewal_threshold_days

    def renew_if_needed(self) -> WildcardRenewalResult:
        """Issue a new certificate only when needs_renewal() says so."""
        if not self.needs_renewal():
            cert = self.current_certificate()
            return WildcardRenewalResult(renewed=False, certificate=cert, days_remaining=cert.days_remaining)
        cert = self.issue_certificate()
        return WildcardRenewalResult(renewed=True, certificate=cert, days_remaining=cert.days_remaining)

    # ── Issuance ──────────────────────────────────────────────────────────

    def issue_certificate(self) -> WildcardCertificate:
        """
        Run the full ACME DNS-01 exchange for ``<domain>`` + ``*.<domain>``.

        Raises WildcardIssuanceError for protocol failures and
        RecoverableInfrastructureError when the DNS provider kept failing.
        On any error the previously installed certificate stays in place.
        """
        with self._lock:
            prior = self.state
            self.state = WildcardState.RENEWING if prior == WildcardState.VALID else WildcardState.ISSUING
            logger.info("Wildcard certificate for %s: %s", self.domain, self.state.value)
            try:
                cert = self._issue()
            except RecoverableInfrastructureError:
                self.state = prior
                raise
            except (AcmeError, requests.RequestException, OSError, ValueError, KeyError) as exc:
                self.state = prior
                logger.error("Wildcard issuance for %s failed: %s", self.domain, exc)
                raise WildcardIssuanceError(self.domain, str(exc)) from exc
            self.state = WildcardState.VALID
            return cert

    def _issue(self) -> WildcardCertificate:
        account_key = self.ensure_account()
        client = self.client

        directory = client.get_directory()
        nonce = client.get_nonce(directory)
        account_url, nonce = client.create_account(account_key, nonce, directory, email=self.email)

        identifiers = [self.domain, f"*.{self.domain}"]
        order, order_url, nonce = client.create_order(identifiers, account_key, account_url, nonce, directory)
        logger.info("Created ACME order %s for %s", order_url, identifiers)

        published: set[str] = set()
        try:
            pending: list[tuple[str, str]] = []
            for auth_url in order["authorizations"]:
                authz = client.get_authorization(auth_url, account_key, account_url)
                if authz.get("status") == "valid":
                    # RFC 8555 §7.5: the CA may reuse a recent authorization
                    logger.info("Authorization %s already valid", auth_url)
                    continue
                challenge = _dns_challenge(authz)
                identifier = authz["identifier"]["value"]
                key_auth = jwslib.compute_key_authorization(challenge["token"], account_key)
                published.add(identifier)
                self.solver.create_challenge_record(identifier, key_auth)
                pending.append((auth_url, challenge["url"]))

            if pending:
                if self.propagation_wait_seconds > 0:
                    logger.info("Waiting %s seconds for DNS propagation...", self.propagation_wait_seconds)
                    self._sleep(self.propagation_wait_seconds)
                for auth_url, challenge_url in pending:
                    _, nonce = client.respond_to_challenge(challenge_url, account_key, account_url, nonce)
                    client.poll_authorization(auth_url, account_key, account_url)
                    logger.info("Authorization %s is VALID", auth_url)
        finally:
            for identifier in published:
                self.solver.remove_challenge_record(identifier)

        private_key = crypto.generate_rsa_key(2048)
        csr_der = crypto.create_csr(private_key, self.domain, [f"*.{self.domain}"])
        if not nonce:
            nonce = client.get_nonce(directory)
        _, nonce = client.finalize_order(order["finalize"], csr_der, account_key, account_url, nonce)
        cert_url = client.poll_order_for_certificate(order_url, account_key, account_url)
        if not nonce:
            nonce = client.get_nonce(directory)
        chain_pem, _ = client.download_certificate(cert_url, account_key, account_url, nonce)

        return self._install(private_key, chain_pem)

    def _install(self, private_key, chain_pem: str) -> WildcardCertificate:
        blocks = crypto.split_pem_chain(chain_pem)
        if not blocks:
            raise ValueError("ACME server returned no certificate")
        leaf = crypto.load_certificate(blocks[0])
        if leaf.public_key().public_numbers() != private_key.public_key().public_numbers():
            raise ValueError("Issued certificate does not match the generated private key")

        fullchain = "".join(blocks)
        key_pem = crypto.private_key_to_pem(private_key)
        bundle = fullchain + key_pem

        # Bundles are staged before the live swap and renamed in after it
        staged: list[tuple[Path, Path]] = []
        try:
            for name in PROXY_BUNDLE_FILES:
                target = self.certs_dir / name
                staged.append((stage_bytes(target, bundle.encode("utf-8"), mode=KEY_MODE), target))
            write_file_set(live_dir(self.certs_dir, self.domain), {
                FULLCHAIN_FILE: (fullchain, CERT_MODE),
                PRIVKEY_FILE: (key_pem, KEY_MODE),
            })
        except Exception:
            discard_staged(temp for temp, _ in staged)
            raise
        for temp, target in staged:
            os.replace(temp, target)

        cert = self.current_certificate()
        logger.info(
            "Installed wildcard certificate for %s (expires %s)",
            self.domain, cert.not_after.date().isoformat(),
        )
        return cert


def _dns_challenge(authz: dict) -> dict:
    for challenge in authz.get("challenges", []):
        if challenge.get("type") == "dns-01":
            return challenge
    offered = [c.get("type") for c in authz.get("challenges", [])]
    raise AcmeError(0, {"type": "unsupportedChallenge", "detail": f"No dns-01 challenge offered (got {offered})"})
