"""
Transactional configuration updates against the proxy configuration API.

    with_transaction(fn)
        1. delete stale transactions (older than STALE_TRANSACTION_MINUTES)
        2. back up the live configuration (best-effort)
        3. POST /services/haproxy/transactions          -> transaction id
        4. fn(tx)  — every mutation carries ?transaction_id=<id>
        5. PUT /services/haproxy/transactions/<id>     (commit)
           or DELETE /services/haproxy/transactions/<id> on any error (abort)

At most one transaction is current per manager: calls are serialized by a
lock, and the current pointer is cleared on every exit path so a failed
transaction never blocks the next one.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import requests

from frontdoor.errors import ProxyApiError, TransactionError
from frontdoor.proxy.client import TRANSACTIONS_PATH, ProxyApiClient, unwrap
from frontdoor.storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_SIZE = 50


@dataclass
class Mutation:
    method: str
    path: str
    params: dict
    body: Any = None


@dataclass
class ProxyTransaction:
    """Handle passed to mutation functions; all calls are scoped to ``id``."""

    id: str
    opened_at: datetime
    client: ProxyApiClient = field(repr=False)
    mutations: list[Mutation] = field(default_factory=list)
    status: str = "in_progress"     # in_progress | committed | aborted

    def _params(self, params: Optional[dict]) -> dict:
        return {**(params or {}), "transaction_id": self.id}

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        return self.client.get(path, params=self._params(params))

    def post(self, path: str, body: Any = None, params: Optional[dict] = None) -> Any:
        scoped = self._params(params)
        result = self.client.post(path, json=body, params=scoped)
        self.mutations.append(Mutation("POST", path, scoped, body))
        return result

    def put(self, path: str, body: Any = None, params: Optional[dict] = None) -> Any:
        scoped = self._params(params)
        result = self.client.put(path, json=body, params=scoped)
        self.mutations.append(Mutation("PUT", path, scoped, body))
        return result

    def delete(self, path: str, params: Optional[dict] = None) -> Any:
        scoped = self._params(params)
        result = self.client.delete(path, params=scoped)
        self.mutations.append(Mutation("DELETE", path, scoped))
        return result

    def delete_if_exists(self, path: str, params: Optional[dict] = None) -> bool:
        """DELETE, treating 404 as already gone.  Returns whether something was deleted."""
        try:
            self.delete(path, params=params)
        except ProxyApiError as exc:
            if exc.is_not_found:
                return False
            raise
        return True


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RouteTransactionManager:
    def __init__(
        self,
        client: ProxyApiClient,
        backup_dir: Optional[str | Path] = None,
        backup_keep: int = 10,
        stale_after_minutes: int = 10,
    ) -> None:
        self.client = client
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.backup_keep = backup_keep
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.history: deque[ProxyTransaction] = deque(maxlen=HISTORY_SIZE)
        self._current: Optional[ProxyTransaction] = None
        self._serial = threading.Lock()
        self._owner: Optional[int] = None

    @classmethod
    def from_settings(cls, client: Optional[ProxyApiClient] = None) -> "RouteTransactionManager":
        from frontdoor.config import settings

        return cls(
            client=client or ProxyApiClient.from_settings(),
            backup_dir=settings.CONFIG_BACKUP_DIR,
            backup_keep=settings.CONFIG_BACKUP_KEEP,
            stale_after_minutes=settings.STALE_TRANSACTION_MINUTES,
        )

    @property
    def current(self) -> Optional[ProxyTransaction]:
        return self._current

    # ── Protocol ──────────────────────────────────────────────────────────

    def with_transaction(self, fn: Callable[[ProxyTransaction], T]) -> T:
        """
        Run *fn* inside a fresh transaction and commit it.

        Any exception from *fn* aborts the transaction and propagates
        unchanged.  A failed commit aborts too and raises TransactionError.
        Calling it again from inside *fn* raises RuntimeError.
        """
        if self._owner == threading.get_ident():
            raise RuntimeError("with_transaction is not re-entrant; a transaction is already open on this thread")
        with self._serial:
            self._owner = threading.get_ident()
            try:
                tx = self._begin()
            except BaseException:
                self._owner = None
                raise
            self._current = tx
            try:
                try:
                    result = fn(tx)
                except BaseException:
                    self._abort(tx)
                    raise

                try:
                    self._commit(tx)
                except ProxyApiError as exc:
                    self._abort(tx)
                    raise TransactionError(tx.id, str(exc), transient=exc.is_transient) from exc
                except requests.RequestException:
                    self._abort(tx)
                    raise
                return result
            finally:
                self._current = None
                self._owner = None
                self.history.append(tx)

    def _begin(self) -> ProxyTransaction:
        self.cleanup_stale_transactions()
        self.backup_configuration()

        version = self.client.configuration_version()
        body = unwrap(self.client.post(TRANSACTIONS_PATH, params={"version": version}))
        tx = ProxyTransaction(
            id=str(body["id"]),
            opened_at=datetime.now(tz=timezone.utc),
            client=self.client,
        )
        logger.debug("Started transaction %s (config version %s)", tx.id, version)
        return tx

    def _commit(self, tx: ProxyTransaction) -> None:
        self.client.put(f"{TRANSACTIONS_PATH}/{tx.id}")
        tx.status = "committed"
        logger.info("Committed transaction %s (%d mutations)", tx.id, len(tx.mutations))

    def _abort(self, tx: ProxyTransaction) -> None:
        """DELETE the transaction.  Never raises: the caller's error takes precedence."""
        tx.status = "aborted"
        try:
            self.client.delete(f"{TRANSACTIONS_PATH}/{tx.id}")
            logger.info("Aborted transaction %s", tx.id)
        except (ProxyApiError, requests.RequestException) as exc:
            # Left for stale-transaction cleanup to reap
            logger.error("Failed to abort transaction %s: %s", tx.id, exc)

    # ── Housekeeping ──────────────────────────────────────────────────────

    def cleanup_stale_transactions(self) -> int:
        """
        Delete server-side transactions older than the stale threshold.

        Best-effort: returns the number deleted, logs and returns 0 on failure.
        Transactions without a creation timestamp are left alone.
        """
        try:
            transactions = unwrap(self.client.get(TRANSACTIONS_PATH)) or []
        except (ProxyApiError, requests.RequestException) as exc:
            logger.error("Failed to list transactions: %s", exc)
            return 0

        cutoff = datetime.now(tz=timezone.utc) - self.stale_after
        removed = 0
        for tx in transactions:
            created = _parse_timestamp(tx.get("created_at"))
            if created is None or created >= cutoff:
                continue
            logger.warning("Cleaning up stale transaction %s from %s", tx.get("id"), tx.get("created_at"))
            try:
                self.client.delete(f"{TRANSACTIONS_PATH}/{tx['id']}")
                removed += 1
            except (ProxyApiError, requests.RequestException) as exc:
                logger.error("Failed to delete stale transaction %s: %s", tx.get("id"), exc)
        return removed

    def backup_configuration(self) -> Optional[Path]:
        """
        Save the live configuration to ``haproxy_config_<timestamp>.cfg`` and
        prune to the newest ``backup_keep`` files.  Best-effort: returns None
        on failure or when no backup directory is configured.
        """
        if self.backup_dir is None:
            return None
        try:
            config_text = self.client.raw_configuration()
            stamp = datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
            path = self.backup_dir / f"haproxy_config_{stamp}.cfg"
            atomic_write_text(path, config_text, mode=0o640)
            self._prune_backups()
        except (ProxyApiError, requests.RequestException, OSError) as exc:
            logger.error("Failed to back up proxy configuration: %s", exc)
            return None
        logger.info("Proxy configuration backed up to %s", path)
        return path

    def _prune_backups(self) -> None:
        backups = sorted(self.backup_dir.glob("haproxy_config_*.cfg"), reverse=True)
        for old in backups[self.backup_keep:]:
            old.unlink(missing_ok=True)
