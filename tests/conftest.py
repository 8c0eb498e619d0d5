"""
Shared pytest fixtures.

Every component takes explicit constructor arguments, so tests build them
directly against tmp_path instead of patching the settings singleton.  The
proxy configuration API is mocked with `responses`; DNS providers are
replaced by the in-memory FakeDnsProvider below.
"""
from __future__ import annotations

import copy
import itertools
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest
import responses

from frontdoor.acme.dns_challenge import DnsChallengeSolver, DnsProvider, TxtRecord
from frontdoor.pki.ca import CertificateAuthority
from frontdoor.pki.issuer import AgentCertificateIssuer

MONGO_DOMAIN = "mongo.example"
APP_DOMAIN = "apps.example"
PROXY_URL = "http://haproxy.test:5555/v2"


# ─── PKI ──────────────────────────────────────────────────────────────────────

@pytest.fixture()
def certs_dir(tmp_path: Path) -> Path:
    path = tmp_path / "certs"
    path.mkdir()
    return path


@pytest.fixture()
def ca(certs_dir: Path) -> CertificateAuthority:
    authority = CertificateAuthority(certs_dir, org_name="Test Org", validity_days=3650)
    authority.ensure_ca()
    return authority


@pytest.fixture()
def issuer(ca: CertificateAuthority, certs_dir: Path) -> AgentCertificateIssuer:
    return AgentCertificateIssuer(ca, certs_dir, mongo_domain=MONGO_DOMAIN)


# ─── DNS ──────────────────────────────────────────────────────────────────────

class FakeDnsProvider(DnsProvider):
    """In-memory zone.  ``fail_creates`` makes the next N creates raise ConnectionError."""

    def __init__(self, zone_id: str = "zone-1") -> None:
        self.zone_id = zone_id
        self.records: dict[str, TxtRecord] = {}
        self.fail_creates = 0
        self.create_calls = 0
        self._ids = itertools.count(1)

    def find_zone_id(self, domain: str) -> str:
        return self.zone_id

    def create_txt_record(self, zone_id: str, name: str, value: str, ttl: int) -> TxtRecord:
        self.create_calls += 1
        if self.fail_creates:
            self.fail_creates -= 1
            raise ConnectionError("DNS API unreachable")
        for record in self.records.values():
            if record.name == name and record.value == value:
                return record
        record = TxtRecord(record_id=f"rec-{next(self._ids)}", name=name, value=value, zone_id=zone_id)
        self.records[record.record_id] = record
        return record

    def list_txt_records(self, zone_id: str, name: str) -> list[TxtRecord]:
        return [r for r in self.records.values() if r.name == name]

    def delete_txt_record(self, record: TxtRecord) -> None:
        self.records.pop(record.record_id, None)

    def values_at(self, name: str) -> set[str]:
        return {r.value for r in self.records.values() if r.name == name}


@pytest.fixture()
def dns_provider() -> FakeDnsProvider:
    return FakeDnsProvider()


@pytest.fixture()
def solver(dns_provider: FakeDnsProvider) -> DnsChallengeSolver:
    return DnsChallengeSolver(dns_provider, ttl=60, max_attempts=3, base_delay=0.01, sleep=lambda _s: None)


# ─── Proxy API ────────────────────────────────────────────────────────────────

@pytest.fixture()
def proxy_api():
    """responses mock for the proxy configuration API; unmatched calls fail the test."""
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


class FakeDataPlane:
    """
    Stateful stand-in for the HAProxy Data Plane API, served through
    `responses` callbacks.

    Each transaction works on a deep copy of the live configuration; commit
    swaps it in and bumps the version, abort throws it away.  Writes outside
    a transaction are rejected.  ``fail(method, fragment, status, times)``
    injects error answers for matching requests.
    """

    TX = "/services/haproxy/transactions"
    CFG = "/services/haproxy/configuration"

    def __init__(self, rsps: responses.RequestsMock, base_url: str = PROXY_URL) -> None:
        self.base_path = urlsplit(base_url).path
        self.version = 1
        self.config: dict = {"backends": {}, "servers": {}, "http_request_rules": {}, "backend_switching_rules": {}}
        self.transactions: dict[str, dict] = {}
        self.requests: list[tuple[str, str, dict]] = []
        self._failures: list[list] = []
        self._ids = itertools.count(1)
        pattern = re.compile(re.escape(base_url) + r"/.*")
        for method in ("GET", "POST", "PUT", "DELETE"):
            rsps.add_callback(method, pattern, callback=self._handle)

    def fail(self, method: str, fragment: str, status: int = 500, times: int = 1) -> None:
        self._failures.append([method, fragment, status, times])

    def add_transaction(self, created_at: str | None) -> str:
        tx_id = f"tx-{next(self._ids)}"
        self.transactions[tx_id] = {
            "id": tx_id, "status": "in_progress", "_version": self.version,
            "created_at": created_at, "config": copy.deepcopy(self.config),
        }
        return tx_id

    def writes(self) -> list[tuple[str, str, dict]]:
        return [r for r in self.requests if r[0] != "GET"]

    # ── Dispatch ──────────────────────────────────────────────────────────

    def _handle(self, request):
        parts = urlsplit(request.url)
        path = parts.path[len(self.base_path):]
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}
        self.requests.append((request.method, path, params))

        for failure in self._failures:
            method, fragment, status, remaining = failure
            if remaining > 0 and request.method == method and fragment in path:
                failure[3] -= 1
                return status, {}, json.dumps({"code": status, "message": "injected failure"})

        body = json.loads(request.body) if request.body else None
        try:
            status, payload = self._route(request.method, path, params, body)
        except (KeyError, IndexError) as exc:
            return 404, {}, json.dumps({"code": 404, "message": f"missing {exc}"})
        if payload is None:
            return status, {}, ""
        return status, {"Content-Type": "application/json"}, json.dumps(payload)

    def _route(self, method: str, path: str, params: dict, body):
        if path == f"{self.CFG}/version":
            return 200, self.version
        if path == f"{self.CFG}/raw":
            return 200, {"_version": self.version, "data": f"# configuration version {self.version}\n"}
        if path == self.TX:
            if method == "GET":
                return 200, [{k: v for k, v in tx.items() if k != "config"} for tx in self.transactions.values()]
            if int(params["version"]) != self.version:
                return 409, {"code": 409, "message": "version mismatch"}
            tx_id = self.add_transaction(created_at=datetime.now(tz=timezone.utc).isoformat())
            return 201, {"id": tx_id, "status": "in_progress", "_version": self.version}
        if path.startswith(self.TX + "/"):
            tx_id = path.rsplit("/", 1)[1]
            tx = self.transactions[tx_id]
            if method == "DELETE":
                del self.transactions[tx_id]
                return 204, None
            if tx["_version"] != self.version:
                return 409, {"code": 409, "message": "version mismatch"}
            del self.transactions[tx_id]
            self.config = tx["config"]
            self.version += 1
            return 200, {"id": tx_id, "status": "success"}
        return self._configuration(method, path[len(self.CFG) + 1:], params, body)

    def _configuration(self, method: str, path: str, params: dict, body):
        if "transaction_id" in params:
            config = self.transactions[params["transaction_id"]]["config"]
        elif method == "GET":
            config = self.config
        else:
            return 400, {"code": 400, "message": "transaction_id required"}

        resource, _, key = path.partition("/")
        envelope = lambda data: {"_version": self.version, "data": data}  # noqa: E731

        if resource == "backends":
            backends = config["backends"]
            if method == "GET":
                return 200, envelope(list(backends.values()))
            if method == "DELETE":
                del backends[key]
                config["servers"].pop(key, None)
                return 204, None
            if body["name"] in backends:
                return 409, {"code": 409, "message": "backend exists"}
            backends[body["name"]] = body
            config["servers"][body["name"]] = []
            return 201, body

        if resource == "servers":
            servers = config["servers"][params["backend"]]
            if method == "GET":
                return 200, envelope(servers)
            servers.append(body)
            return 201, body

        parent = params["parent_name"] if resource == "http_request_rules" else params["frontend"]
        rules = config[resource].setdefault(parent, [])
        if method == "GET":
            return 200, envelope(rules)
        if method == "DELETE":
            rules.pop(int(key))
        else:
            rules.insert(body.get("index", len(rules)), dict(body))
        for i, rule in enumerate(rules):
            rule["index"] = i
        return (204, None) if method == "DELETE" else (201, body)


@pytest.fixture()
def dataplane(proxy_api) -> FakeDataPlane:
    return FakeDataPlane(proxy_api)


@pytest.fixture()
def proxy_client():
    from frontdoor.proxy.client import ProxyApiClient

    return ProxyApiClient(PROXY_URL, "admin", "secret", timeout=5)
