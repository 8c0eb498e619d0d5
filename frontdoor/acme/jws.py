"""
ACME account key handling and request signing.

The account key lives at ACME_ACCOUNT_KEY_PATH as PKCS8 PEM and is wrapped
in a josepy JWKRSA.  Leaf and CA keys belong to frontdoor/crypto.py; only
the account key is handled here.
"""
from __future__ import annotations

import base64
import hashlib
import json
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA

from frontdoor.storage.atomic import atomic_write_bytes
from frontdoor.storage.filesystem import KEY_MODE


# ─── Account key I/O ──────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return JWKRSA(key=private_key)


def save_account_key(jwk: JWKRSA, path: str | Path) -> None:
    """Write the key atomically with mode 0600."""
    pem = jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    atomic_write_bytes(Path(path), pem, mode=KEY_MODE)


def load_account_key(path: str | Path) -> JWKRSA:
    pem = Path(path).read_bytes()
    private_key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError(f"Account key at {path} is not an RSA key")
    return JWKRSA(key=private_key)


def account_key_exists(path: str | Path) -> bool:
    return Path(path).exists()


# ─── Key authorization ────────────────────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    # RFC 7638 thumbprint of the public half
    return _b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


def compute_dns_txt_value(key_authorization: str) -> str:
    """Value to publish under _acme-challenge for a dns-01 challenge."""
    return _b64url(hashlib.sha256(key_authorization.encode()).digest())


# ─── JWS signing ─────────────────────────────────────────────────────────────


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the flattened JWS dict to POST.

    Without *account_url* the protected header carries the full public JWK
    (newAccount); with it, the shorter ``kid`` form.  A None payload produces
    an empty payload string, which is how RFC 8555 spells POST-as-GET.
    """
    header: dict[str, Any] = {"alg": "RS256", "nonce": nonce, "url": url}
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = account_key.public_key().to_partial_json()

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())

    signature = account_key.key.sign(f"{protected}.{payload_b64}".encode(), padding.PKCS1v15(), hashes.SHA256())
    return {"protected": protected, "payload": payload_b64, "signature": _b64url(signature)}


# ─── Internal helpers ─────────────────────────────────────────────────────────


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()
