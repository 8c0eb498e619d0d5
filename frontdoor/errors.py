"""
Exception hierarchy for the control plane.

  InputValidationError            — rejected before any side effect
  RecoverableInfrastructureError  — transient failure, retries exhausted; caller may retry later
  CertificateIssuanceError        — signing / persistence failure for one leaf certificate
  CaCorruptedError                — CA material present but unreadable
  WildcardIssuanceError           — ACME order for the wildcard certificate failed
  ProxyApiError                   — non-2xx answer from the proxy configuration API
  TransactionError                — a proxy transaction could not be committed
  RouteNotFoundError              — removal of a route the cache does not know

Lock contention is deliberately not an exception: the renewal scheduler
reports it as a skipped run.
"""
from __future__ import annotations

from typing import Any


class FrontdoorError(Exception):
    """Base class for all control-plane errors."""


class InputValidationError(FrontdoorError, ValueError):
    """Malformed agent ID, address, or subdomain."""


class RecoverableInfrastructureError(FrontdoorError):
    """A transient operation failed on every attempt."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class CertificateIssuanceError(FrontdoorError):
    """Raised when a leaf certificate cannot be generated or persisted."""

    def __init__(self, agent_id: str, reason: str) -> None:
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Certificate issuance failed for agent {agent_id}: {reason}")


class CaCorruptedError(FrontdoorError):
    """CA key or certificate exists on disk but cannot be loaded."""


class WildcardIssuanceError(FrontdoorError):
    """The ACME exchange for the wildcard certificate did not complete."""

    def __init__(self, domain: str, reason: str) -> None:
        self.domain = domain
        self.reason = reason
        super().__init__(f"Wildcard certificate issuance failed for {domain}: {reason}")


class ProxyApiError(FrontdoorError):
    """Raised when the proxy configuration API returns an error response."""

    def __init__(self, method: str, path: str, status_code: int, body: Any = None) -> None:
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body
        super().__init__(f"{method} {path} failed with HTTP {status_code}: {body}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_transient(self) -> bool:
        # 409: transaction version conflict, another writer committed first
        return self.status_code in (409, 429) or self.status_code >= 500


class TransactionError(FrontdoorError):
    """A proxy configuration transaction failed to commit."""

    def __init__(self, transaction_id: str, reason: str, transient: bool = False) -> None:
        self.transaction_id = transaction_id
        self.transient = transient
        super().__init__(f"Transaction {transaction_id} failed: {reason}")


class RouteNotFoundError(FrontdoorError):
    """Raised when removing a route that is not in the route cache."""
