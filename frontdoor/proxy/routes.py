"""
HTTP and MongoDB route management on top of RouteTransactionManager.

Naming on the proxy:
  HTTP     backend  <agentId>-<subdomain>-backend
           server   <agentId>-<subdomain>-server
           rule     host-<agentId>-<subdomain>  on HTTP_FRONTEND, Host == <subdomain>.<appDomain>
  MongoDB  backend  <agentId>-mongodb-backend
           server   <agentId>-mongodb-server
           rule     backend switching on TCP_FRONTEND, SNI == <agentId>.<mongoDomain>

Each add/remove is one transaction wrapped in a bounded retry.  The route
cache is a read-through copy of what the proxy holds: it is rebuilt from the
live configuration by load_routes() and only updated after a commit.
"""
from __future__ import annotations

import ipaddress
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import urlsplit

import requests

from frontdoor.errors import (
    InputValidationError,
    ProxyApiError,
    RouteNotFoundError,
    TransactionError,
)
from frontdoor.pki.issuer import AgentCertificateIssuer, validate_agent_id, AGENT_ID_RE
from frontdoor.proxy.client import CONFIG_PATH, unwrap
from frontdoor.proxy.reload import ProxyReloader
from frontdoor.proxy.transactions import ProxyTransaction, RouteTransactionManager
from frontdoor.retry import with_retry

logger = logging.getLogger(__name__)

HTTP = "http"
MONGODB = "mongodb"

BACKENDS_PATH = f"{CONFIG_PATH}/backends"
SERVERS_PATH = f"{CONFIG_PATH}/servers"
HTTP_RULES_PATH = f"{CONFIG_PATH}/http_request_rules"
SWITCHING_RULES_PATH = f"{CONFIG_PATH}/backend_switching_rules"

DEFAULT_MONGO_PORT = 27017

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_HOST_COND_RE = re.compile(r"hdr\(host\)\s+-i\s+(\S+)")
_SNI_COND_RE = re.compile(r"req_ssl_sni\s+-i\s+(\S+)")
_MONGO_BACKEND_RE = re.compile(r"^(?P<agent>[A-Za-z0-9-]+)-mongodb-backend$")
_HTTP_BACKEND_RE = re.compile(r"^(?P<agent>[\w-]+)-(?P<sub>[\w-]+)-backend$")


@dataclass
class RouteCacheEntry:
    type: str
    agent_id: str
    name: str               # subdomain (http) or agent domain (mongodb)
    domain: str
    backend_name: str
    target_address: str     # host:port
    tls: bool = False
    last_updated: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        return data


def http_cache_key(agent_id: str, subdomain: str) -> str:
    return f"{HTTP}:{agent_id}:{subdomain}"


def mongo_cache_key(agent_id: str) -> str:
    return f"{MONGODB}:{agent_id}"


def is_transient(exc: BaseException) -> bool:
    """Whether a failed proxy operation is worth retrying."""
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, ProxyApiError):
        return exc.is_transient
    if isinstance(exc, TransactionError):
        return exc.transient
    return False


# ─── Input validation ─────────────────────────────────────────────────────────


def validate_subdomain(subdomain: str) -> str:
    if not isinstance(subdomain, str) or not _LABEL_RE.match(subdomain):
        raise InputValidationError(f"Invalid subdomain {subdomain!r}: one lower-case DNS label expected")
    return subdomain


def validate_host(host: str) -> str:
    if not host:
        raise InputValidationError("Target host is required")
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        pass
    name = host.rstrip(".").lower()
    labels = name.split(".")
    if len(name) > 253 or not all(_LABEL_RE.match(label) for label in labels) or labels[-1].isdigit():
        raise InputValidationError(f"Invalid target host {host!r}")
    return name


def validate_port(port: int) -> int:
    if not isinstance(port, int) or not 0 < port < 65536:
        raise InputValidationError(f"Invalid port {port!r}")
    return port


def parse_target_url(target_url: str) -> tuple[str, str, int]:
    """Split ``[scheme://]host[:port]`` into (scheme, host, port)."""
    if not target_url:
        raise InputValidationError("Target URL is required")
    if "://" not in target_url:
        target_url = f"http://{target_url}"
    parts = urlsplit(target_url)
    if parts.scheme not in ("http", "https"):
        raise InputValidationError(f"Unsupported target scheme {parts.scheme!r}")
    try:
        port = parts.port
    except ValueError as exc:
        raise InputValidationError(f"Invalid target URL {target_url!r}: {exc}") from exc
    host = validate_host(parts.hostname or "")
    if port is None:
        port = 443 if parts.scheme == "https" else 80
    return parts.scheme, host, validate_port(port)


# ─── Route manager ────────────────────────────────────────────────────────────


class RouteManager:
    def __init__(
        self,
        transactions: RouteTransactionManager,
        app_domain: str,
        mongo_domain: str,
        http_frontend: str = "https-in",
        tcp_frontend: str = "tcp-in",
        issuer: Optional[AgentCertificateIssuer] = None,
        reloader: Optional[ProxyReloader] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transactions = transactions
        self.client = transactions.client
        self.app_domain = app_domain.rstrip(".").lower()
        self.mongo_domain = mongo_domain.rstrip(".").lower()
        self.http_frontend = http_frontend
        self.tcp_frontend = tcp_frontend
        self.issuer = issuer
        self.reloader = reloader
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._cache: dict[str, RouteCacheEntry] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        transactions: Optional[RouteTransactionManager] = None,
        issuer: Optional[AgentCertificateIssuer] = None,
        reloader: Optional[ProxyReloader] = None,
    ) -> "RouteManager":
        from frontdoor.config import settings

        return cls(
            transactions=transactions or RouteTransactionManager.from_settings(),
            app_domain=settings.APP_DOMAIN,
            mongo_domain=settings.MONGO_DOMAIN,
            http_frontend=settings.HTTP_FRONTEND,
            tcp_frontend=settings.TCP_FRONTEND,
            issuer=issuer,
            reloader=reloader,
            max_attempts=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    def _in_transaction(self, mutate: Callable[[ProxyTransaction], None], description: str) -> None:
        with_retry(
            lambda: self.transactions.with_transaction(mutate),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retry_on=(ProxyApiError, TransactionError, requests.RequestException),
            should_retry=is_transient,
            description=description,
            sleep=self._sleep,
        )

    # ── HTTP ──────────────────────────────────────────────────────────────

    def add_http_route(
        self,
        agent_id: str,
        subdomain: str,
        target_url: str,
        use_tls: Optional[bool] = None,
        check: bool = True,
    ) -> RouteCacheEntry:
        """
        Route ``<subdomain>.<appDomain>`` to *target_url*.

        Re-adding an existing route replaces it.  TLS to the backend defaults
        to on for https:// targets.
        """
        validate_agent_id(agent_id)
        validate_subdomain(subdomain)
        scheme, host, port = parse_target_url(target_url)
        tls = scheme == "https" if use_tls is None else use_tls

        backend = f"{agent_id}-{subdomain}-backend"
        domain = f"{subdomain}.{self.app_domain}"
        logger.info("Adding HTTP route %s -> %s:%d", domain, host, port)

        def mutate(tx: ProxyTransaction) -> None:
            self._replace_backend(tx, backend, mode="http")
            tx.post(SERVERS_PATH, {
                "name": f"{agent_id}-{subdomain}-server",
                "address": host,
                "port": port,
                "check": "enabled" if check else "disabled",
                "ssl": "enabled" if tls else "disabled",
                "maxconn": 100,
            }, params={"backend": backend})
            tx.post(HTTP_RULES_PATH, {
                "index": 0,
                "name": f"host-{agent_id}-{subdomain}",
                "type": "use_backend",
                "backend": backend,
                "cond": "if",
                "cond_test": f"{{ hdr(host) -i {domain} }}",
            }, params=self._http_rule_params())

        self._in_transaction(mutate, f"add HTTP route {domain}")

        entry = RouteCacheEntry(
            type=HTTP,
            agent_id=agent_id,
            name=subdomain,
            domain=domain,
            backend_name=backend,
            target_address=f"{host}:{port}",
            tls=tls,
        )
        with self._lock:
            self._cache[http_cache_key(agent_id, subdomain)] = entry
        return entry

    # ── MongoDB ───────────────────────────────────────────────────────────

    def add_mongo_route(
        self,
        agent_id: str,
        target_host: str,
        target_port: int = DEFAULT_MONGO_PORT,
        use_tls: Optional[bool] = None,
    ) -> RouteCacheEntry:
        """
        Route TLS connections for ``<agentId>.<mongoDomain>`` (by SNI) to the
        agent's database.

        With TLS (the default when an issuer is configured) the agent
        certificate is issued first, the server entry references its files,
        and the proxy is reloaded after the commit so it picks them up.
        """
        validate_agent_id(agent_id)
        host = validate_host(target_host)
        port = validate_port(target_port)
        tls = (self.issuer is not None) if use_tls is None else use_tls
        if tls and self.issuer is None:
            raise InputValidationError("TLS requested for MongoDB route but no certificate issuer is configured")

        backend = f"{agent_id}-mongodb-backend"
        domain = f"{agent_id}.{self.mongo_domain}"
        logger.info("Adding MongoDB route %s -> %s:%d (tls=%s)", domain, host, port, tls)

        server = {
            "name": f"{agent_id}-mongodb-server",
            "address": host,
            "port": port,
            "check": "enabled",
            "ssl": "disabled",
        }
        if tls:
            leaf = self.issuer.issue_agent_certificate(agent_id, host)
            server.update({
                "ssl": "enabled",
                "verify": "required",
                "ca_file": str(self.issuer.ca.cert_path),
                "ssl_certificate": str(leaf.bundle_path),
            })

        def mutate(tx: ProxyTransaction) -> None:
            self._replace_backend(tx, backend, mode="tcp")
            tx.post(SERVERS_PATH, server, params={"backend": backend})
            tx.post(SWITCHING_RULES_PATH, {
                "index": 0,
                "name": backend,
                "cond": "if",
                "cond_test": f"{{ req_ssl_sni -i {domain} }}",
            }, params={"frontend": self.tcp_frontend})

        self._in_transaction(mutate, f"add MongoDB route {domain}")

        entry = RouteCacheEntry(
            type=MONGODB,
            agent_id=agent_id,
            name=domain,
            domain=domain,
            backend_name=backend,
            target_address=f"{host}:{port}",
            tls=tls,
        )
        with self._lock:
            self._cache[mongo_cache_key(agent_id)] = entry

        if tls and self.reloader is not None:
            self.reloader.reload()
        return entry

    # ── Removal ───────────────────────────────────────────────────────────

    def remove_route(self, agent_id: str, subdomain: Optional[str] = None, route_type: str = HTTP) -> RouteCacheEntry:
        """Remove a cached route from the proxy.  Raises RouteNotFoundError if unknown."""
        validate_agent_id(agent_id)
        if route_type == HTTP:
            if not subdomain:
                raise InputValidationError("Subdomain is required for HTTP routes")
            key = http_cache_key(agent_id, validate_subdomain(subdomain))
        elif route_type == MONGODB:
            key = mongo_cache_key(agent_id)
        else:
            raise InputValidationError(f"Unsupported route type {route_type!r}")

        with self._lock:
            entry = self._cache.get(key)
        if entry is None:
            raise RouteNotFoundError(f"Route not found: {key}")

        logger.info("Removing %s route %s (%s)", route_type, entry.domain, entry.backend_name)

        def mutate(tx: ProxyTransaction) -> None:
            self._remove_rules_for(tx, entry.backend_name, route_type)
            tx.delete_if_exists(f"{BACKENDS_PATH}/{entry.backend_name}")

        self._in_transaction(mutate, f"remove {route_type} route {entry.domain}")

        with self._lock:
            self._cache.pop(key, None)
        return entry

    # ── Mutation helpers ──────────────────────────────────────────────────

    def _http_rule_params(self) -> dict:
        return {"parent_name": self.http_frontend, "parent_type": "frontend"}

    def _replace_backend(self, tx: ProxyTransaction, backend: str, mode: str) -> None:
        """Delete any backend of this name (and rules pointing at it), then create it."""
        self._remove_rules_for(tx, backend, HTTP if mode == "http" else MONGODB)
        if tx.delete_if_exists(f"{BACKENDS_PATH}/{backend}"):
            logger.debug("Deleted existing backend %s", backend)
        tx.post(BACKENDS_PATH, {
            "name": backend,
            "mode": mode,
            "balance": {"algorithm": "roundrobin"},
        })

    def _remove_rules_for(self, tx: ProxyTransaction, backend: str, route_type: str) -> None:
        if route_type == HTTP:
            path, params = HTTP_RULES_PATH, self._http_rule_params()
        else:
            path, params = SWITCHING_RULES_PATH, {"frontend": self.tcp_frontend}

        try:
            rules = unwrap(tx.get(path, params=params)) or []
        except ProxyApiError as exc:
            if exc.is_not_found:
                return
            raise
        # Highest index first: deleting shifts the indexes after it
        matching = sorted(
            (r for r in rules if r.get("backend") == backend or r.get("name") == backend),
            key=lambda r: r.get("index", 0),
            reverse=True,
        )
        for rule in matching:
            tx.delete(f"{path}/{rule['index']}", params=params)
            logger.debug("Removed rule %s for backend %s", rule.get("index"), backend)

    # ── Cache ─────────────────────────────────────────────────────────────

    def load_routes(self) -> int:
        """
        Rebuild the route cache from the proxy's live configuration.

        Backends that do not follow the naming scheme are ignored.  Returns
        the number of routes found.
        """
        backends = unwrap(self.client.get(BACKENDS_PATH)) or []
        host_by_backend = self._rule_domains(HTTP_RULES_PATH, self._http_rule_params(), _HOST_COND_RE)
        sni_by_backend = self._rule_domains(SWITCHING_RULES_PATH, {"frontend": self.tcp_frontend}, _SNI_COND_RE)

        cache: dict[str, RouteCacheEntry] = {}
        for backend in backends:
            name = backend.get("name", "")
            entry = self._entry_from_backend(name, host_by_backend, sni_by_backend)
            if entry is None:
                continue
            entry.target_address, entry.tls = self._first_server(name)
            key = mongo_cache_key(entry.agent_id) if entry.type == MONGODB else http_cache_key(entry.agent_id, entry.name)
            cache[key] = entry
            logger.debug("Found %s route %s for %s", entry.type, name, entry.domain)

        with self._lock:
            self._cache = cache
        logger.info("Loaded %d routes from proxy configuration", len(cache))
        return len(cache)

    def _rule_domains(self, path: str, params: dict, pattern: re.Pattern) -> dict[str, str]:
        try:
            rules = unwrap(self.client.get(path, params=params)) or []
        except ProxyApiError as exc:
            if exc.is_not_found:
                return {}
            raise
        domains = {}
        for rule in rules:
            match = pattern.search(rule.get("cond_test", ""))
            target = rule.get("backend") or rule.get("name")
            if match and target:
                domains[target] = match.group(1).lower()
        return domains

    def _entry_from_backend(
        self,
        name: str,
        host_by_backend: dict[str, str],
        sni_by_backend: dict[str, str],
    ) -> Optional[RouteCacheEntry]:
        mongo = _MONGO_BACKEND_RE.match(name)
        if mongo and AGENT_ID_RE.match(mongo.group("agent")):
            agent_id = mongo.group("agent")
            domain = sni_by_backend.get(name, f"{agent_id}.{self.mongo_domain}")
            return RouteCacheEntry(MONGODB, agent_id, domain, domain, name, "")

        suffix = f".{self.app_domain}"
        domain = host_by_backend.get(name, "")
        if domain.endswith(suffix):
            subdomain = domain[: -len(suffix)]
            tail = f"-{subdomain}-backend"
            if name.endswith(tail) and AGENT_ID_RE.match(name[: -len(tail)]):
                return RouteCacheEntry(HTTP, name[: -len(tail)], subdomain, domain, name, "")

        # No routing rule to disambiguate: the subdomain is the last dash-separated part
        match = _HTTP_BACKEND_RE.match(name)
        if match and AGENT_ID_RE.match(match.group("agent")):
            subdomain = match.group("sub")
            return RouteCacheEntry(HTTP, match.group("agent"), subdomain, f"{subdomain}.{self.app_domain}", name, "")
        return None

    def _first_server(self, backend: str) -> tuple[str, bool]:
        servers = unwrap(self.client.get(SERVERS_PATH, params={"backend": backend})) or []
        if not servers:
            return "", False
        server = servers[0]
        address = server.get("address", "")
        if server.get("port"):
            address = f"{address}:{server['port']}"
        return address, server.get("ssl") == "enabled"

    def get_agent_routes(self, agent_id: str) -> list[RouteCacheEntry]:
        with self._lock:
            return [e for e in self._cache.values() if e.agent_id == agent_id]

    def list_routes(self) -> list[RouteCacheEntry]:
        with self._lock:
            return list(self._cache.values())
