"""
Proxy reload signal.

HAProxy only re-reads certificate files on reload, so after TLS material
changes the container gets SIGUSR2 (hitless reload in master-worker mode).
If signalling fails the container is restarted instead.
"""
from __future__ import annotations

import logging
import subprocess
from typing import Callable, Sequence

from frontdoor.errors import RecoverableInfrastructureError

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class ProxyReloader:
    def __init__(self, container: str, timeout: float = 30.0, runner: Runner = subprocess.run) -> None:
        self.container = container
        self.timeout = timeout
        self._run = runner

    @classmethod
    def from_settings(cls) -> "ProxyReloader":
        from frontdoor.config import settings

        return cls(container=settings.HAPROXY_CONTAINER)

    def _docker(self, args: Sequence[str]) -> None:
        self._run(
            ["docker", *args],
            check=True,
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )

    def reload(self) -> str:
        """
        Reload the proxy.  Returns "signal" or "restart" for the method used.

        Raises RecoverableInfrastructureError when both attempts fail.
        """
        try:
            self._docker(["kill", "--signal=SIGUSR2", self.container])
            logger.info("Sent SIGUSR2 to proxy container %s", self.container)
            return "signal"
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("Graceful reload of %s failed (%s); restarting container", self.container, _describe(exc))

        try:
            self._docker(["restart", self.container])
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            raise RecoverableInfrastructureError(
                f"Could not reload proxy container {self.container}: {_describe(exc)}",
                attempts=2,
            ) from exc
        logger.info("Restarted proxy container %s", self.container)
        return "restart"


def _describe(exc: Exception) -> str:
    stderr = getattr(exc, "stderr", None)
    if stderr:
        return f"{exc} ({stderr.strip()})"
    return str(exc)
