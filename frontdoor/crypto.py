"""
Key generation, certificate signing and PEM helpers.

Boundary: everything cryptographic that is *certificate*-specific lives here
(private CA, agent leaves, wildcard CSR).  Account-key operations for ACME
(JWK, JWS) live in frontdoor/acme/jws.py.
"""
from __future__ import annotations

import ipaddress
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----",
    re.DOTALL,
)


# ─── Keys ──────────────────────────────────────────────────────────────────────


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key."""
    if key_size < 2048:
        raise ValueError("RSA keys shorter than 2048 bits are not accepted")
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key to an unencrypted PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_private_key(pem: str | bytes) -> PrivateKey:
    """Load an unencrypted PEM private key.  Raises ValueError if malformed."""
    data = pem.encode() if isinstance(pem, str) else pem
    return serialization.load_pem_private_key(data, password=None)


# ─── Certificates ──────────────────────────────────────────────────────────────


def certificate_to_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def load_certificate(pem: str | bytes) -> x509.Certificate:
    """Load a single PEM certificate (the first one if *pem* holds a chain)."""
    data = pem.encode() if isinstance(pem, str) else pem
    return x509.load_pem_x509_certificate(data)


def split_pem_chain(pem_bundle: str) -> list[str]:
    """Split a PEM chain into individual certificate blocks, preserving order."""
    return [m.group(0) + "\n" for m in _PEM_CERT_RE.finditer(pem_bundle)]


def build_san(dns_names: Iterable[str] = (), ip_addresses: Iterable[str] = ()) -> x509.SubjectAlternativeName:
    """Build a SubjectAlternativeName from DNS names and IP literals, dropping duplicates."""
    names: list[x509.GeneralName] = []
    for name in dict.fromkeys(dns_names):
        names.append(x509.DNSName(name))
    for addr in dict.fromkeys(ip_addresses):
        names.append(x509.IPAddress(ipaddress.ip_address(addr)))
    return x509.SubjectAlternativeName(names)


def san_entries(cert: x509.Certificate) -> tuple[list[str], list[str]]:
    """Return (dns_names, ip_addresses) from a certificate's SAN extension."""
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return [], []
    dns_names = ext.value.get_values_for_type(x509.DNSName)
    ips = [str(ip) for ip in ext.value.get_values_for_type(x509.IPAddress)]
    return dns_names, ips


def create_csr(private_key: PrivateKey, domain: str, san_domains: list[str] | None = None) -> bytes:
    """
    Create a DER-encoded CSR for *domain*.

    *domain* is always included in the SAN list; *san_domains* are appended
    (wildcard certificates pass ``["*.<domain>"]``).
    """
    all_domains = list(dict.fromkeys([domain] + (san_domains or [])))

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(build_san(dns_names=all_domains), critical=False)
        .sign(private_key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def self_signed_ca(
    private_key: PrivateKey,
    common_name: str,
    organization: str,
    validity_days: int,
) -> x509.Certificate:
    """Self-sign a root CA certificate (cA=true, keyCertSign + cRLSign)."""
    name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
    ])
    now = datetime.now(tz=timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
            critical=False,
        )
    )
    return builder.sign(private_key, hashes.SHA256())


def sign_certificate(
    *,
    subject_key,
    common_name: str,
    san: x509.SubjectAlternativeName,
    issuer_cert: x509.Certificate,
    issuer_key: PrivateKey,
    validity_days: int,
    organization: str | None = None,
) -> x509.Certificate:
    """
    Issue an end-entity certificate for *subject_key*'s public half.

    The serial number is 159 random bits, so it is unique across the issuer's
    lifetime without persisted counter state.
    """
    attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if organization:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))

    now = datetime.now(tz=timezone.utc)
    public_key = subject_key.public_key()
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name(attrs))
        .issuer_name(issuer_cert.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
        .add_extension(san, critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )
    return builder.sign(issuer_key, hashes.SHA256())


# ─── Expiry ────────────────────────────────────────────────────────────────────


def parse_expiry(pem_text: str) -> datetime:
    """Parse the notAfter field from a PEM certificate and return a UTC datetime."""
    cert = load_certificate(pem_text)
    # cryptography >= 42 exposes .not_valid_after_utc (timezone-aware)
    try:
        return cert.not_valid_after_utc
    except AttributeError:
        return cert.not_valid_after.replace(tzinfo=timezone.utc)


def days_until_expiry(expiry: datetime) -> int:
    """Return integer days until expiry (negative if already expired)."""
    now = datetime.now(tz=timezone.utc)
    return (expiry - now).days
