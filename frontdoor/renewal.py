"""
Certificate renewal scheduler.

A background thread (driven by the `schedule` library) runs
perform_renewal_check() once shortly after start-up and then on a fixed
interval.  Every check first takes a named cross-process FileLock; when
another process already holds it the check is skipped, not queued.

One check:
  1. Report the root CA if it is inside the threshold (rotation is manual)
  2. Reissue every agent certificate inside the threshold
  3. Renew the public wildcard certificate if due
  4. Signal the proxy to reload when any TLS material changed
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import schedule

from frontdoor import crypto
from frontdoor.acme.wildcard import WildcardCertificateManager
from frontdoor.errors import FrontdoorError, RecoverableInfrastructureError
from frontdoor.pki.issuer import AgentCertificateIssuer
from frontdoor.proxy.reload import ProxyReloader
from frontdoor.storage.lock import FileLock

logger = logging.getLogger(__name__)


@dataclass
class RenewalReport:
    skipped: bool = False
    checked: int = 0
    renewed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    wildcard: Optional[str] = None      # "valid" | "renewed" | "failed" | None (not managed)
    ca_needs_manual_renewal: bool = False
    reloaded: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.renewed) or self.wildcard == "renewed"


class RenewalScheduler:
    def __init__(
        self,
        issuer: AgentCertificateIssuer,
        locks_dir: str,
        wildcard: Optional[WildcardCertificateManager] = None,
        reloader: Optional[ProxyReloader] = None,
        threshold_days: int = 30,
        interval_minutes: int = 1440,
        initial_delay_seconds: int = 60,
        lock_name: str = "cert_renewal_process",
        lock_timeout: float = 30.0,
    ) -> None:
        self.issuer = issuer
        self.locks_dir = locks_dir
        self.wildcard = wildcard
        self.reloader = reloader
        self.threshold_days = threshold_days
        self.interval_minutes = interval_minutes
        self.initial_delay_seconds = initial_delay_seconds
        self.lock_name = lock_name
        self.lock_timeout = lock_timeout

        self._scheduler = schedule.Scheduler()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        issuer: AgentCertificateIssuer,
        wildcard: Optional[WildcardCertificateManager] = None,
        reloader: Optional[ProxyReloader] = None,
    ) -> "RenewalScheduler":
        from frontdoor.config import settings

        return cls(
            issuer=issuer,
            locks_dir=settings.LOCKS_DIR,
            wildcard=wildcard,
            reloader=reloader,
            threshold_days=settings.RENEWAL_THRESHOLD_DAYS,
            interval_minutes=settings.RENEWAL_CHECK_INTERVAL_MINUTES,
            initial_delay_seconds=settings.RENEWAL_INITIAL_DELAY_SECONDS,
            lock_name=settings.RENEWAL_LOCK_NAME,
            lock_timeout=settings.RENEWAL_LOCK_TIMEOUT_SECONDS,
        )

    # ── Timer ─────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_minutes: Optional[int] = None) -> None:
        """
        (Re)start the timer.  Any previous timer is cancelled first, so
        calling start() twice never leaves two loops running.
        """
        with self._state_lock:
            self._stop_locked()
            if interval_minutes is not None:
                if interval_minutes < 1:
                    raise ValueError("interval_minutes must be >= 1")
                self.interval_minutes = interval_minutes

            self._scheduler.clear()
            if self.initial_delay_seconds > 0:
                self._scheduler.every(self.initial_delay_seconds).seconds.do(self._initial_job)
            self._scheduler.every(self.interval_minutes).minutes.do(self._job)

            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event, self.initial_delay_seconds <= 0),
                name="renewal-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            "Renewal scheduler started: first check in %ds, then every %d min",
            max(self.initial_delay_seconds, 0), self.interval_minutes,
        )

    def stop(self) -> None:
        with self._state_lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        self._thread = None
        self._scheduler.clear()
        logger.info("Renewal scheduler stopped")

    def _loop(self, stop_event: threading.Event, run_immediately: bool) -> None:
        if run_immediately:
            self._job()
        while not stop_event.wait(1.0):
            self._scheduler.run_pending()

    def _initial_job(self):
        self._job()
        return schedule.CancelJob

    def _job(self) -> None:
        try:
            self.perform_renewal_check()
        except Exception as exc:
            logger.exception("Scheduled renewal check failed: %s", exc)

    # ── Check ─────────────────────────────────────────────────────────────

    def perform_renewal_check(self) -> RenewalReport:
        """
        Run one renewal pass under the cross-process lock.

        Returns a report with skipped=True, without touching any certificate,
        when the lock could not be acquired within the timeout.  Individual
        agent or wildcard failures are recorded in the report and do not stop
        the remaining renewals.
        """
        lock = FileLock(self.lock_name, self.locks_dir, timeout=self.lock_timeout)
        if not lock.acquire():
            logger.info("Renewal check already running elsewhere (lock %s held); skipping", self.lock_name)
            return RenewalReport(skipped=True)

        try:
            report = RenewalReport()
            self._check_ca(report)
            self._renew_agents(report)
            self._renew_wildcard(report)
            self._reload(report)
        finally:
            lock.release()

        logger.info(
            "Renewal check complete: checked=%d renewed=%s failed=%s wildcard=%s",
            report.checked, report.renewed or "none", list(report.failed) or "none", report.wildcard or "n/a",
        )
        return report

    def _check_ca(self, report: RenewalReport) -> None:
        ca = self.issuer.ca
        if not ca.cert_path.exists():
            return
        days = crypto.days_until_expiry(ca.expires_at())
        if days < self.threshold_days:
            report.ca_needs_manual_renewal = True
            logger.warning(
                "Root CA expires in %d days; CA rotation requires manual intervention "
                "and reissuing every agent certificate", days,
            )

    def _renew_agents(self, report: RenewalReport) -> None:
        report.checked = len(self.issuer.list_agents())
        for due in self.issuer.certificates_due(self.threshold_days):
            try:
                self.issuer.renew_agent_certificate(due.agent_id, due.target_address)
                report.renewed.append(due.agent_id)
            except FrontdoorError as exc:
                logger.error("Renewal failed for agent %s: %s", due.agent_id, exc)
                report.failed[due.agent_id] = str(exc)

    def _renew_wildcard(self, report: RenewalReport) -> None:
        if self.wildcard is None:
            return
        try:
            result = self.wildcard.renew_if_needed()
        except FrontdoorError as exc:
            logger.error("Wildcard renewal failed: %s", exc)
            report.wildcard = "failed"
            report.failed[self.wildcard.domain] = str(exc)
            return
        report.wildcard = "renewed" if result.renewed else "valid"

    def _reload(self, report: RenewalReport) -> None:
        if self.reloader is None or not report.changed:
            return
        try:
            self.reloader.reload()
            report.reloaded = True
        except RecoverableInfrastructureError as exc:
            logger.warning("Proxy reload after renewal failed: %s", exc)
