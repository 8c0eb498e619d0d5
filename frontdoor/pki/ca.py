"""
Private certificate authority.

The root key pair is created lazily on first use and persisted as
<certsDir>/ca.key (0600) and <certsDir>/ca.crt (0644).  Once written, both
files are read-only for the lifetime of the deployment: every agent leaf
chains to this root, so replacing it invalidates all of them.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509

from frontdoor import crypto
from frontdoor.errors import CaCorruptedError
from frontdoor.storage.atomic import atomic_write_text
from frontdoor.storage.filesystem import CERT_MODE, KEY_MODE

logger = logging.getLogger(__name__)


class CertificateAuthority:
    """Owns the root key pair and signs agent leaf certificates."""

    def __init__(
        self,
        certs_dir: str | Path,
        org_name: str = "Frontdoor",
        validity_days: int = 3650,
        key_size: int = 2048,
        regenerate_on_corrupt: bool = False,
    ) -> None:
        self.certs_dir = Path(certs_dir)
        self.org_name = org_name
        self.validity_days = validity_days
        self.key_size = key_size
        self.regenerate_on_corrupt = regenerate_on_corrupt
        self.key_path = self.certs_dir / "ca.key"
        self.cert_path = self.certs_dir / "ca.crt"

        self._lock = threading.Lock()
        self._key: Optional[crypto.PrivateKey] = None
        self._cert: Optional[x509.Certificate] = None
        self._cert_pem: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "CertificateAuthority":
        from frontdoor.config import settings

        return cls(
            certs_dir=settings.CERTS_DIR,
            org_name=settings.ORG_NAME,
            validity_days=settings.CA_VALIDITY_DAYS,
            key_size=settings.CA_KEY_SIZE,
            regenerate_on_corrupt=settings.CA_REGENERATE_ON_CORRUPT,
        )

    @property
    def common_name(self) -> str:
        return f"{self.org_name} CA"

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def ensure_ca(self) -> bool:
        """
        Make sure a usable root CA exists.  Returns True if one was created.

        Both files present and loadable: no-op, files untouched.
        Either file missing: generate a new pair.
        Both present but unloadable: raise CaCorruptedError, unless
        regenerate_on_corrupt is set, in which case a new root is generated
        and every previously issued leaf stops verifying.
        """
        with self._lock:
            if self._key is not None and self.key_path.exists() and self.cert_path.exists():
                return False

            if self.key_path.exists() and self.cert_path.exists():
                try:
                    self._load()
                    logger.debug("CA loaded from %s", self.cert_path)
                    return False
                except (OSError, ValueError) as exc:
                    if not self.regenerate_on_corrupt:
                        raise CaCorruptedError(
                            f"CA material at {self.certs_dir} is unreadable: {exc}"
                        ) from exc
                    logger.error(
                        "CA material at %s is unreadable (%s); regenerating. "
                        "All previously issued agent certificates no longer chain to this CA.",
                        self.certs_dir, exc,
                    )
            elif self.key_path.exists() or self.cert_path.exists():
                logger.warning("Incomplete CA material in %s; generating a new CA", self.certs_dir)

            self._generate()
            return True

    def _load(self) -> None:
        key_pem = self.key_path.read_bytes()
        cert_pem = self.cert_path.read_text()
        key = crypto.load_private_key(key_pem)
        cert = crypto.load_certificate(cert_pem)
        if cert.public_key().public_numbers() != key.public_key().public_numbers():
            raise ValueError("CA certificate does not match CA private key")
        self._key, self._cert, self._cert_pem = key, cert, cert_pem

    def _generate(self) -> None:
        logger.info("Generating root CA %r (%d-bit RSA, %d days)", self.common_name, self.key_size, self.validity_days)
        key = crypto.generate_rsa_key(self.key_size)
        cert = crypto.self_signed_ca(key, self.common_name, self.org_name, self.validity_days)
        cert_pem = crypto.certificate_to_pem(cert)

        atomic_write_text(self.key_path, crypto.private_key_to_pem(key), mode=KEY_MODE)
        atomic_write_text(self.cert_path, cert_pem, mode=CERT_MODE)

        self._key, self._cert, self._cert_pem = key, cert, cert_pem
        logger.info("Root CA written to %s", self.cert_path)

    # ── Signing ────────────────────────────────────────────────────────────

    def sign(
        self,
        subject_key,
        common_name: str,
        san: x509.SubjectAlternativeName,
        validity_days: int,
    ) -> x509.Certificate:
        """Sign a leaf certificate for *subject_key* with the root key."""
        self.ensure_ca()
        return crypto.sign_certificate(
            subject_key=subject_key,
            common_name=common_name,
            san=san,
            issuer_cert=self._cert,
            issuer_key=self._key,
            validity_days=validity_days,
            organization=self.org_name,
        )

    def ca_cert_pem(self) -> str:
        self.ensure_ca()
        return self._cert_pem

    def certificate(self) -> x509.Certificate:
        self.ensure_ca()
        return self._cert

    def expires_at(self) -> datetime:
        return crypto.parse_expiry(self.ca_cert_pem())
