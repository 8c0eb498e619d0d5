"""
Per-agent leaf certificate issuance, renewal and revocation.

Each agent gets a certificate for ``<agentId>.<mongoDomain>`` signed by the
private CA, written to ``<certsDir>/agents/<agentId>/``.  Issued certificates
are cached in memory keyed by (agentId, targetAddress); a cache hit is only
returned while the certificate on disk still matches it.
"""
from __future__ import annotations

import ipaddress
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from frontdoor import crypto
from frontdoor.errors import CertificateIssuanceError, InputValidationError
from frontdoor.pki.ca import CertificateAuthority
from frontdoor.storage.filesystem import (
    CERT_MODE,
    KEY_MODE,
    agent_dir,
    agents_dir,
    read_text_or_none,
    remove_tree,
    write_file_set,
)

logger = logging.getLogger(__name__)

AGENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,62}$")
_HOSTNAME_LABEL_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")

LOOPBACK_HOST = "localhost"
LOOPBACK_IP = "127.0.0.1"

KEY_FILE = "server.key"
CERT_FILE = "server.crt"
BUNDLE_FILE = "server.pem"


@dataclass
class LeafCertificate:
    agent_id: str
    domain: str
    target_address: Optional[str]
    key_pem: str
    cert_pem: str
    bundle_pem: str
    ca_pem: str
    key_path: Path
    cert_path: Path
    bundle_path: Path
    issued_at: datetime
    expires_at: datetime

    def is_on_disk(self) -> bool:
        return read_text_or_none(self.cert_path) == self.cert_pem


@dataclass
class DueCertificate:
    agent_id: str
    target_address: Optional[str]
    days_remaining: Optional[int]   # None: certificate unreadable
    san: list[str] = field(default_factory=list)


# ─── Input validation ──────────────────────────────────────────────────────────


def validate_agent_id(agent_id: str) -> str:
    if not isinstance(agent_id, str) or not AGENT_ID_RE.match(agent_id):
        raise InputValidationError(
            f"Invalid agent id {agent_id!r}: letters, digits and '-' only, 1-63 chars, "
            "must not start with '-'"
        )
    return agent_id


def normalize_target_address(target: Optional[str]) -> Optional[str]:
    """
    Return the canonical form of *target*, or None when it adds no SAN.

    IP literals are canonicalized and hostnames lower-cased.  Loopback
    targets (``127.0.0.0/8``, ``::1``, ``localhost``) return None because the
    loopback entries are always present anyway.
    """
    if target is None:
        return None
    target = target.strip()
    if not target:
        return None

    try:
        ip = ipaddress.ip_address(target)
    except ValueError:
        host = target.rstrip(".").lower()
        if host == LOOPBACK_HOST:
            return None
        labels = host.split(".")
        if (
            len(host) > 253
            or not all(_HOSTNAME_LABEL_RE.match(label) for label in labels)
            or labels[-1].isdigit()  # malformed IP literal such as 10.0.0.256
        ):
            raise InputValidationError(f"Invalid target address {target!r}")
        return host

    if ip.is_loopback:
        return None
    return str(ip)


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


# ─── Issuer ────────────────────────────────────────────────────────────────────


class AgentCertificateIssuer:
    def __init__(
        self,
        ca: CertificateAuthority,
        certs_dir: str | Path,
        mongo_domain: str,
        validity_days: int = 365,
        key_size: int = 2048,
    ) -> None:
        self.ca = ca
        self.certs_dir = Path(certs_dir)
        self.mongo_domain = mongo_domain.rstrip(".").lower()
        self.validity_days = validity_days
        self.key_size = key_size
        self._cache: dict[tuple[str, Optional[str]], LeafCertificate] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, ca: Optional[CertificateAuthority] = None) -> "AgentCertificateIssuer":
        from frontdoor.config import settings

        return cls(
            ca=ca or CertificateAuthority.from_settings(),
            certs_dir=settings.CERTS_DIR,
            mongo_domain=settings.MONGO_DOMAIN,
            validity_days=settings.LEAF_VALIDITY_DAYS,
        )

    def agent_domain(self, agent_id: str) -> str:
        return f"{agent_id}.{self.mongo_domain}"

    @staticmethod
    def _cache_key(agent_id: str, target: Optional[str]) -> tuple[str, Optional[str]]:
        return agent_id, target

    # ── Issue ──────────────────────────────────────────────────────────────

    def issue_agent_certificate(self, agent_id: str, target_address: Optional[str] = None) -> LeafCertificate:
        """
        Return a valid certificate for the agent, issuing one if needed.

        A cached result is reused only if its certificate file still exists
        with the same content; otherwise the cache entry is dropped and a new
        key pair and certificate are generated.
        """
        validate_agent_id(agent_id)
        target = normalize_target_address(target_address)
        key = self._cache_key(agent_id, target)

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                if cached.is_on_disk():
                    logger.debug("Using cached certificate for agent %s", agent_id)
                    return cached
                logger.info("Cached certificate for agent %s is gone from disk; reissuing", agent_id)
                del self._cache[key]

            return self._issue(agent_id, target)

    def renew_agent_certificate(self, agent_id: str, target_address: Optional[str] = None) -> LeafCertificate:
        """Unconditionally issue a fresh certificate, bypassing the cache."""
        validate_agent_id(agent_id)
        target = normalize_target_address(target_address)
        with self._lock:
            self._purge(agent_id)
            return self._issue(agent_id, target)

    def _issue(self, agent_id: str, target: Optional[str]) -> LeafCertificate:
        domain = self.agent_domain(agent_id)
        directory = agent_dir(self.certs_dir, agent_id)

        dns_names = [domain, f"*.{domain}", LOOPBACK_HOST]
        ip_addresses = [LOOPBACK_IP]
        if target is not None:
            if _is_ip(target):
                ip_addresses.append(target)
            else:
                dns_names.append(target)

        try:
            private_key = crypto.generate_rsa_key(self.key_size)
            cert = self.ca.sign(
                private_key,
                common_name=domain,
                san=crypto.build_san(dns_names=dns_names, ip_addresses=ip_addresses),
                validity_days=self.validity_days,
            )
            key_pem = crypto.private_key_to_pem(private_key)
            cert_pem = crypto.certificate_to_pem(cert)
            bundle_pem = key_pem + cert_pem
            ca_pem = self.ca.ca_cert_pem()

            write_file_set(directory, {
                KEY_FILE: (key_pem, KEY_MODE),
                CERT_FILE: (cert_pem, CERT_MODE),
                BUNDLE_FILE: (bundle_pem, KEY_MODE),
            })
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Certificate issuance failed for agent %s: %s", agent_id, exc)
            raise CertificateIssuanceError(agent_id, str(exc)) from exc

        leaf = LeafCertificate(
            agent_id=agent_id,
            domain=domain,
            target_address=target,
            key_pem=key_pem,
            cert_pem=cert_pem,
            bundle_pem=bundle_pem,
            ca_pem=ca_pem,
            key_path=directory / KEY_FILE,
            cert_path=directory / CERT_FILE,
            bundle_path=directory / BUNDLE_FILE,
            issued_at=datetime.now(tz=timezone.utc),
            expires_at=crypto.parse_expiry(cert_pem),
        )

        # The agent directory was replaced, so entries under other targets are stale.
        self._purge(agent_id)
        self._cache[self._cache_key(agent_id, target)] = leaf
        logger.info(
            "Issued certificate for %s (target=%s, expires %s)",
            domain, target or "none", leaf.expires_at.date().isoformat(),
        )
        return leaf

    # ── Revoke ─────────────────────────────────────────────────────────────

    def revoke_agent_certificate(self, agent_id: str) -> bool:
        """
        Delete the agent's certificate directory and every cache entry for it.

        Returns False when there was nothing on disk; that is not an error.
        """
        validate_agent_id(agent_id)
        with self._lock:
            removed = remove_tree(agent_dir(self.certs_dir, agent_id))
            purged = self._purge(agent_id)
        if removed:
            logger.info("Revoked certificate for agent %s (%d cache entries purged)", agent_id, purged)
        else:
            logger.info("No certificate on disk for agent %s; nothing to revoke", agent_id)
        return removed

    def _purge(self, agent_id: str) -> int:
        stale = [k for k in self._cache if k[0] == agent_id]
        for k in stale:
            del self._cache[k]
        return len(stale)

    # ── Inspection ─────────────────────────────────────────────────────────

    def list_agents(self) -> list[str]:
        root = agents_dir(self.certs_dir)
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir() and AGENT_ID_RE.match(p.name))

    def get_certificate_info(self, agent_id: str) -> Optional[dict]:
        """Describe the agent's certificate on disk, or None if it has none."""
        validate_agent_id(agent_id)
        cert_path = agent_dir(self.certs_dir, agent_id) / CERT_FILE
        pem = read_text_or_none(cert_path)
        if pem is None:
            return None

        cert = crypto.load_certificate(pem)
        expires_at = crypto.parse_expiry(pem)
        dns_names, ips = crypto.san_entries(cert)
        days = crypto.days_until_expiry(expires_at)
        return {
            "agent_id": agent_id,
            "domain": self.agent_domain(agent_id),
            "cert_path": str(cert_path),
            "expires_at": expires_at.isoformat(),
            "days_remaining": days,
            "is_expired": expires_at <= datetime.now(tz=timezone.utc),
            "san": dns_names + ips,
        }

    def certificates_due(self, threshold_days: int) -> list[DueCertificate]:
        """
        Scan every agent certificate on disk and return those with fewer than
        *threshold_days* days left, or that cannot be read at all.

        The target address is recovered from the certificate's SAN so a
        renewal keeps binding the same address.
        """
        due: list[DueCertificate] = []
        for agent_id in self.list_agents():
            pem = read_text_or_none(agent_dir(self.certs_dir, agent_id) / CERT_FILE)
            try:
                if pem is None:
                    raise ValueError("certificate file missing")
                cert = crypto.load_certificate(pem)
                days = crypto.days_until_expiry(crypto.parse_expiry(pem))
            except ValueError as exc:
                logger.warning("Agent %s certificate unreadable (%s); scheduling reissue", agent_id, exc)
                due.append(DueCertificate(agent_id=agent_id, target_address=None, days_remaining=None))
                continue

            if days >= threshold_days:
                continue
            dns_names, ips = crypto.san_entries(cert)
            due.append(DueCertificate(
                agent_id=agent_id,
                target_address=self._recover_target(agent_id, dns_names, ips),
                days_remaining=days,
                san=dns_names + ips,
            ))
        return due

    def _recover_target(self, agent_id: str, dns_names: list[str], ips: list[str]) -> Optional[str]:
        for ip in ips:
            if not ipaddress.ip_address(ip).is_loopback:
                return ip
        domain = self.agent_domain(agent_id)
        fixed = {domain, f"*.{domain}", LOOPBACK_HOST}
        for name in dns_names:
            if name not in fixed:
                return name
        return None
