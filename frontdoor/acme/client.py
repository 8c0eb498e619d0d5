"""
ACME (RFC 8555) transport used to obtain the public wildcard certificate.

The client keeps no account or nonce state of its own; WildcardCertificateManager
threads both through each call.  Orders and authorizations are read with
POST-as-GET.  Unsigned discovery calls (directory, newNonce) are retried on
network errors; signed calls are only re-sent after a badNonce answer, using
the Replay-Nonce that came back with the error.
"""
from __future__ import annotations

import base64
import logging
import time
from typing import Callable

import requests
from josepy.jwk import JWKRSA

from frontdoor.acme import jws as jwslib
from frontdoor.retry import with_retry

logger = logging.getLogger(__name__)

_NONCE_RETRIES = 3


class AcmeError(Exception):
    """Problem document (or synthetic error) from the ACME server."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        problem_type = body.get("type", "unknown")
        detail = body.get("detail", str(body))
        super().__init__(f"ACME error {status_code} ({problem_type}): {detail}")


class AcmeClient:
    """Talks to the Let's Encrypt directory selected by ENVIRONMENT."""

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._sleep = sleep
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "frontdoor-cert-manager/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Discovery ───────────────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """Fetch the directory object (endpoint URLs)."""

        def fetch() -> dict:
            resp = self._session.get(self.directory_url, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()

        return with_retry(
            fetch,
            retry_on=(requests.ConnectionError, requests.Timeout),
            description="ACME directory fetch",
            sleep=self._sleep,
        )

    def get_nonce(self, directory: dict) -> str:
        """Get a Replay-Nonce from newNonce."""
        resp = with_retry(
            lambda: self._session.head(directory["newNonce"], timeout=self.timeout),
            retry_on=(requests.ConnectionError, requests.Timeout),
            description="ACME nonce fetch",
            sleep=self._sleep,
        )
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "newNonce answered without a Replay-Nonce"})
        return nonce

    # ── Account registration ────────────────────────────────────────────────

    def create_account(
        self,
        account_key: JWKRSA,
        nonce: str,
        directory: dict,
        email: str = "",
    ) -> tuple[str, str]:
        """
        POST /newAccount.  Idempotent: for a key that is already registered
        the server answers 200 with the existing account's Location.
        Returns (account_url, new_nonce).
        """
        payload: dict = {"termsOfServiceAgreed": True}
        if email:
            payload["contact"] = [f"mailto:{email}"]

        resp = self._post_signed(payload, account_key, nonce, directory["newAccount"], directory=directory)
        return resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    # ── Order lifecycle ─────────────────────────────────────────────────────

    def create_order(
        self,
        domains: list[str],
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: dict,
    ) -> tuple[dict, str, str]:
        """
        POST /newOrder for one or more DNS identifiers.
        Returns (order_body, order_url, new_nonce).
        """
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(payload, account_key, nonce, directory["newOrder"], account_url, directory=directory)
        return resp.json(), resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def get_order(self, order_url: str, account_key: JWKRSA, account_url: str) -> dict:
        return self._post_as_get(order_url, account_key, account_url).json()

    # ── Validation ──────────────────────────────────────────────────────────

    def get_authorization(self, auth_url: str, account_key: JWKRSA, account_url: str) -> dict:
        return self._post_as_get(auth_url, account_key, account_url).json()

    def respond_to_challenge(
        self,
        challenge_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST the challenge URL with payload {} to ask the CA to validate.
        Returns (challenge_body, new_nonce).
        """
        resp = self._post_signed({}, account_key, nonce, challenge_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_authorization(
        self,
        auth_url: str,
        account_key: JWKRSA,
        account_url: str,
        max_attempts: int = 30,
        poll_interval: float = 2.0,
    ) -> str:
        """
        Poll an authorization until it is 'valid'.
        Raises AcmeError when it turns 'invalid' or the attempts run out.
        """
        for _ in range(max_attempts):
            authz = self.get_authorization(auth_url, account_key, account_url)
            status = authz.get("status", "pending")
            if status == "valid":
                return status
            if status == "invalid":
                raise AcmeError(
                    200,
                    {
                        "type": "urn:ietf:params:acme:error:unauthorized",
                        "detail": f"Authorization invalid: {_challenge_error(authz)}",
                    },
                )
            self._sleep(poll_interval)

        raise AcmeError(
            0,
            {
                "type": "timeout",
                "detail": f"Authorization {auth_url} still pending after {max_attempts} checks",
            },
        )

    # ── Issuance ────────────────────────────────────────────────────────────

    def finalize_order(
        self,
        finalize_url: str,
        csr_der: bytes,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST /finalize with the DER-encoded CSR.
        Returns (order_body, new_nonce).
        """
        csr_b64 = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        resp = self._post_signed({"csr": csr_b64}, account_key, nonce, finalize_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_order_for_certificate(
        self,
        order_url: str,
        account_key: JWKRSA,
        account_url: str,
        max_attempts: int = 20,
        poll_interval: float = 3.0,
    ) -> str:
        """Poll the order until it is 'valid' and return the certificate URL."""
        for _ in range(max_attempts):
            order = self.get_order(order_url, account_key, account_url)
            status = order.get("status")
            if status == "valid":
                cert_url = order.get("certificate")
                if not cert_url:
                    raise AcmeError(0, {"detail": f"Order {order_url} is valid but has no certificate link"})
                return cert_url
            if status == "invalid":
                raise AcmeError(0, {"type": "invalid", "detail": f"Order became invalid: {order}"})
            self._sleep(poll_interval)

        raise AcmeError(
            0,
            {"type": "timeout", "detail": f"Order {order_url} not valid after {max_attempts} checks"},
        )

    def download_certificate(
        self,
        cert_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[str, str]:
        """POST-as-GET the certificate URL and return (full_chain_pem, new_nonce)."""
        resp = self._post_signed(
            None, account_key, nonce, cert_url, account_url,
            accept="application/pem-certificate-chain",
        )
        return resp.text, resp.headers.get("Replay-Nonce", "")

    # ── Signing ─────────────────────────────────────────────────────────────

    def _post_as_get(self, url: str, account_key: JWKRSA, account_url: str) -> requests.Response:
        # Fresh nonce per call so pollers don't thread it through every iteration.
        directory = self.get_directory()
        nonce = self.get_nonce(directory)
        return self._post_signed(None, account_key, nonce, url, account_url, directory=directory)

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWKRSA,
        nonce: str,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
        directory: dict | None = None,
    ) -> requests.Response:
        """
        JWS-sign *payload* and POST it to *url*.

        A badNonce answer is re-signed with the nonce it carried (or a newly
        fetched one if it carried none), at most _NONCE_RETRIES sends in all.
        """
        current_nonce = nonce
        headers = {"Content-Type": "application/jose+json", "Accept": accept}
        for attempt in range(_NONCE_RETRIES):
            body = jwslib.sign_request(payload, account_key, current_nonce, url, account_url)
            resp = self._session.post(url, json=body, headers=headers, timeout=self.timeout)
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"type": "", "detail": resp.text}

            if "badNonce" in error_body.get("type", "") and attempt < _NONCE_RETRIES - 1:
                logger.debug("badNonce from %s, retrying (attempt %d)", url, attempt + 1)
                fresh = resp.headers.get("Replay-Nonce")
                if fresh:
                    current_nonce = fresh
                    continue
                if directory is None:
                    directory = self.get_directory()
                current_nonce = self.get_nonce(directory)
                continue

            raise AcmeError(resp.status_code, error_body, resp.headers.get("Replay-Nonce", ""))

        raise AcmeError(0, {"detail": f"Gave up on {url} after {_NONCE_RETRIES} badNonce answers"})


def _challenge_error(authz: dict) -> str:
    for challenge in authz.get("challenges", []):
        error = challenge.get("error")
        if error:
            return error.get("detail", str(error))
    return f"status={authz.get('status')}"


def make_client() -> AcmeClient:
    """Build an AcmeClient for the configured directory and TLS trust settings."""
    from frontdoor.config import settings

    return AcmeClient(
        directory_url=settings.ACME_DIRECTORY_URL,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
