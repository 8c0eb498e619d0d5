"""
Thin HTTP client for the HAProxy Data Plane API (v2).

Every call goes through request(): basic auth, JSON in/out, and a
ProxyApiError for any non-2xx answer.  Connection errors and timeouts from
`requests` propagate unchanged so the retry layer can classify them.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from frontdoor.errors import ProxyApiError

logger = logging.getLogger(__name__)

TRANSACTIONS_PATH = "/services/haproxy/transactions"
CONFIG_PATH = "/services/haproxy/configuration"


class ProxyApiClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: int = 15,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.auth = (username, password)
        self._session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": "frontdoor-control-plane/1.0",
        })

    @classmethod
    def from_settings(cls) -> "ProxyApiClient":
        from frontdoor.config import settings

        return cls(
            base_url=settings.HAPROXY_API_URL,
            username=settings.HAPROXY_API_USER,
            password=settings.HAPROXY_API_PASS,
            timeout=settings.HAPROXY_API_TIMEOUT,
        )

    # ── Transport ─────────────────────────────────────────────────────────

    def request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Any = None,
        raw: bool = False,
    ) -> Any:
        """
        Perform one API call and return the decoded body.

        Configuration endpoints wrap results as ``{"_version": n, "data": ...}``;
        the wrapper is kept so callers can read ``_version`` when they need it.
        With *raw* the response text is returned undecoded.
        """
        url = f"{self.base_url}{path}"
        resp = self._session.request(method, url, params=params, json=json, timeout=self.timeout)
        if not resp.ok:
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            raise ProxyApiError(method, path, resp.status_code, body)

        logger.debug("%s %s -> %d", method, path, resp.status_code)
        if raw:
            return resp.text
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: Any = None, params: Optional[dict] = None) -> Any:
        return self.request("POST", path, params=params, json=json)

    def put(self, path: str, json: Any = None, params: Optional[dict] = None) -> Any:
        return self.request("PUT", path, params=params, json=json)

    def delete(self, path: str, params: Optional[dict] = None) -> Any:
        return self.request("DELETE", path, params=params)

    # ── Helpers ───────────────────────────────────────────────────────────

    def configuration_version(self) -> int:
        return int(self.get(f"{CONFIG_PATH}/version"))

    def raw_configuration(self) -> str:
        """Return the live configuration file text."""
        body = self.get(f"{CONFIG_PATH}/raw")
        if isinstance(body, dict):
            return body.get("data", "")
        return body or ""


def unwrap(body: Any) -> Any:
    """Return the ``data`` member of a Data Plane API envelope, or *body* itself."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body
