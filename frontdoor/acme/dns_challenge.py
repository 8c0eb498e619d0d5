"""
DNS-01 challenge support for the wildcard certificate manager.

Provides:
  DnsProvider (ABC)
      Zone lookup plus create / list / delete of TXT records.
  CloudflareDnsProvider — uses the `cloudflare` library (>=3.0)
  Route53DnsProvider    — uses `boto3`
  DnsChallengeSolver
      create_challenge_record(domain, key_authorization)  — retried
      remove_challenge_record(domain)                     — best-effort, never raises
  make_dns_provider() / make_solver()
      Factories that read settings at call time.

DNS-01 protocol (RFC 8555 §8.4):
  1. key_authorization = token + "." + jwk_thumbprint
  2. TXT value = base64url(SHA-256(key_authorization))
  3. DNS name = _acme-challenge.{domain}
  4. Create record → wait for propagation → POST challenge URL → poll → delete record
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from frontdoor.acme.jws import compute_dns_txt_value
from frontdoor.retry import with_retry

logger = logging.getLogger(__name__)


def base_domain(domain: str) -> str:
    """Drop a single leading ``*.`` wildcard label."""
    return domain[2:] if domain.startswith("*.") else domain


def acme_record_name(domain: str) -> str:
    """Return the _acme-challenge DNS name for *domain* (wildcards stripped)."""
    return f"_acme-challenge.{base_domain(domain)}"


@dataclass(frozen=True)
class TxtRecord:
    record_id: str
    name: str
    value: str
    zone_id: str


@dataclass(frozen=True)
class AcmeChallengeRecord:
    dns_record_name: str
    dns_record_value: str
    zone_id: str
    record_id: str


# ─── Provider ABC ─────────────────────────────────────────────────────────────


class DnsProvider(ABC):
    """Abstract base for TXT record management at a DNS provider.

    Implementations raise on API failure; retry and best-effort policy is the
    solver's job.
    """

    @abstractmethod
    def find_zone_id(self, domain: str) -> str:
        """Return the ID of the zone that owns *domain*."""

    @abstractmethod
    def create_txt_record(self, zone_id: str, name: str, value: str, ttl: int) -> TxtRecord:
        """Create a TXT record.  Idempotent for an identical name/value pair."""

    @abstractmethod
    def list_txt_records(self, zone_id: str, name: str) -> list[TxtRecord]:
        """Return every TXT record with exactly this name."""

    @abstractmethod
    def delete_txt_record(self, record: TxtRecord) -> None:
        """Delete one TXT record."""


# ─── Cloudflare ───────────────────────────────────────────────────────────────


class CloudflareDnsProvider(DnsProvider):
    """DNS provider backed by the Cloudflare API (cloudflare>=3.0)."""

    def __init__(self, api_token: str, zone_id: str = "") -> None:
        try:
            import cloudflare as cf_mod
        except ImportError as exc:
            raise ImportError(
                "cloudflare package is required for DNS_PROVIDER='cloudflare'. "
                "Install it with: pip install 'frontdoor[dns-cloudflare]'"
            ) from exc

        self._cf_mod = cf_mod
        self._api_token = api_token
        self._explicit_zone_id = zone_id

    def _get_client(self):
        return self._cf_mod.Cloudflare(api_token=self._api_token)

    def find_zone_id(self, domain: str) -> str:
        if self._explicit_zone_id:
            return self._explicit_zone_id

        cf = self._get_client()
        # Most-specific label group first
        parts = base_domain(domain).split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:])
            zones = list(cf.zones.list(name=candidate))
            if zones:
                return zones[0].id

        raise ValueError(f"Could not discover Cloudflare zone for domain: {domain}")

    def create_txt_record(self, zone_id: str, name: str, value: str, ttl: int) -> TxtRecord:
        for record in self.list_txt_records(zone_id, name):
            if record.value == value:
                logger.debug("TXT record %s already exists — skipping create", name)
                return record

        cf = self._get_client()
        created = cf.dns.records.create(zone_id=zone_id, type="TXT", name=name, content=value, ttl=ttl)
        logger.info("Created Cloudflare TXT record %s", name)
        return TxtRecord(record_id=created.id, name=name, value=value, zone_id=zone_id)

    def list_txt_records(self, zone_id: str, name: str) -> list[TxtRecord]:
        cf = self._get_client()
        return [
            TxtRecord(record_id=r.id, name=name, value=(r.content or "").strip('"'), zone_id=zone_id)
            for r in cf.dns.records.list(zone_id=zone_id, name=name, type="TXT")
        ]

    def delete_txt_record(self, record: TxtRecord) -> None:
        cf = self._get_client()
        cf.dns.records.delete(record.record_id, zone_id=record.zone_id)
        logger.info("Deleted Cloudflare TXT record %s", record.name)


# ─── Route 53 ─────────────────────────────────────────────────────────────────


class Route53DnsProvider(DnsProvider):
    """
    DNS provider backed by AWS Route 53 (boto3).

    Route 53 stores all TXT values for a name in one record set, so creating
    and deleting individual values rewrites that set.  The record ID of a
    value is the value itself.
    """

    def __init__(
        self,
        hosted_zone_id: str = "",
        region: str = "us-east-1",
        access_key_id: str = "",
        secret_access_key: str = "",
    ) -> None:
        try:
            import boto3
        except ImportError as exc:
            raise ImportError(
                "boto3 package is required for DNS_PROVIDER='route53'. "
                "Install it with: pip install 'frontdoor[dns-route53]'"
            ) from exc

        self._boto3 = boto3
        self._explicit_zone_id = hosted_zone_id
        self._region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key

    def _get_client(self):
        kwargs: dict = {"region_name": self._region}
        if self._access_key_id:
            kwargs["aws_access_key_id"] = self._access_key_id
        if self._secret_access_key:
            kwargs["aws_secret_access_key"] = self._secret_access_key
        return self._boto3.client("route53", **kwargs)

    def find_zone_id(self, domain: str) -> str:
        if self._explicit_zone_id:
            return self._explicit_zone_id

        client = self._get_client()
        parts = base_domain(domain).split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:]) + "."
            response = client.list_hosted_zones_by_name(DNSName=candidate, MaxItems="1")
            zones = response.get("HostedZones", [])
            if zones and zones[0]["Name"] == candidate:
                # "/hostedzone/ZXXXXX" -> "ZXXXXX"
                return zones[0]["Id"].split("/")[-1]

        raise ValueError(f"Could not discover Route53 hosted zone for domain: {domain}")

    def _current_set(self, client, zone_id: str, fqdn: str) -> tuple[list[str], int]:
        """Return (values, ttl) of the TXT record set at *fqdn*; ([], 0) if absent."""
        response = client.list_resource_record_sets(
            HostedZoneId=zone_id, StartRecordName=fqdn, StartRecordType="TXT", MaxItems="1",
        )
        for rrset in response.get("ResourceRecordSets", []):
            if rrset["Name"] == fqdn and rrset["Type"] == "TXT":
                values = [rr["Value"].strip('"') for rr in rrset.get("ResourceRecords", [])]
                return values, int(rrset.get("TTL", 0))
        return [], 0

    @staticmethod
    def _change(client, zone_id: str, action: str, fqdn: str, values: list[str], ttl: int) -> None:
        client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": fqdn,
                            "Type": "TXT",
                            "TTL": ttl,
                            # Route53 requires TXT values wrapped in double quotes
                            "ResourceRecords": [{"Value": f'"{v}"'} for v in values],
                        },
                    }
                ]
            },
        )

    def create_txt_record(self, zone_id: str, name: str, value: str, ttl: int) -> TxtRecord:
        client = self._get_client()
        fqdn = name.rstrip(".") + "."
        values, _ = self._current_set(client, zone_id, fqdn)
        if value not in values:
            self._change(client, zone_id, "UPSERT", fqdn, values + [value], ttl)
            logger.info("Created/updated Route53 TXT record %s", fqdn)
        return TxtRecord(record_id=value, name=name, value=value, zone_id=zone_id)

    def list_txt_records(self, zone_id: str, name: str) -> list[TxtRecord]:
        client = self._get_client()
        fqdn = name.rstrip(".") + "."
        values, _ = self._current_set(client, zone_id, fqdn)
        return [TxtRecord(record_id=v, name=name, value=v, zone_id=zone_id) for v in values]

    def delete_txt_record(self, record: TxtRecord) -> None:
        client = self._get_client()
        fqdn = record.name.rstrip(".") + "."
        values, ttl = self._current_set(client, record.zone_id, fqdn)
        if record.value not in values:
            return
        remaining = [v for v in values if v != record.value]
        if remaining:
            self._change(client, record.zone_id, "UPSERT", fqdn, remaining, ttl)
        else:
            # DELETE must match the existing set exactly
            self._change(client, record.zone_id, "DELETE", fqdn, values, ttl)
        logger.info("Deleted Route53 TXT value from %s", fqdn)


# ─── Solver ───────────────────────────────────────────────────────────────────


class DnsChallengeSolver:
    """
    Publishes and removes DNS-01 TXT records through a DnsProvider.

    Records created by this solver are tracked per DNS name, so one call to
    remove_challenge_record() deletes every value published for a domain
    (a wildcard order for ``example.com`` + ``*.example.com`` publishes two
    values under the same name).
    """

    def __init__(
        self,
        provider: DnsProvider,
        ttl: int = 120,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._created: dict[str, list[AcmeChallengeRecord]] = {}
        self._lock = threading.Lock()

    def create_challenge_record(self, domain: str, key_authorization: str) -> AcmeChallengeRecord:
        """
        Publish ``_acme-challenge.<domain>`` TXT = base64url(SHA-256(key_authorization)).

        Retried with exponential backoff; raises RecoverableInfrastructureError
        once every attempt has failed.
        """
        name = acme_record_name(domain)
        value = compute_dns_txt_value(key_authorization)

        def create() -> AcmeChallengeRecord:
            zone_id = self.provider.find_zone_id(domain)
            record = self.provider.create_txt_record(zone_id, name, value, self.ttl)
            return AcmeChallengeRecord(
                dns_record_name=name,
                dns_record_value=value,
                zone_id=zone_id,
                record_id=record.record_id,
            )

        challenge = with_retry(
            create,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            description=f"create TXT record {name}",
            sleep=self._sleep,
        )
        with self._lock:
            self._created.setdefault(name, []).append(challenge)
        logger.info("Published DNS-01 challenge record %s", name)
        return challenge

    def remove_challenge_record(self, domain: str) -> int:
        """
        Delete the challenge TXT records for *domain*.  Returns how many were
        deleted.

        Deletes the values this solver published; when it has no record of
        any (e.g. after a restart) every TXT record at the challenge name is
        removed, since nothing else lives under ``_acme-challenge``.
        Best-effort: failures are logged and never raised.
        """
        name = acme_record_name(domain)
        with self._lock:
            tracked = self._created.pop(name, [])
        wanted = {c.dns_record_value for c in tracked}

        removed = 0
        try:
            zone_id = tracked[0].zone_id if tracked else self.provider.find_zone_id(domain)
            records = self.provider.list_txt_records(zone_id, name)
        except Exception as exc:
            logger.warning("Failed to look up TXT record %s: %s", name, exc)
            return 0

        matching = [r for r in records if not wanted or r.value in wanted]
        if not matching:
            logger.warning("No TXT record %s found to remove", name)
            return 0
        for record in matching:
            try:
                self.provider.delete_txt_record(record)
            except Exception as exc:
                logger.warning("Failed to remove TXT record %s (%s): %s", name, record.record_id, exc)
                continue
            removed += 1

        logger.info("Removed %d of %d DNS-01 challenge record(s) %s", removed, len(matching), name)
        return removed


# ─── Factories ────────────────────────────────────────────────────────────────


def make_dns_provider() -> DnsProvider:
    """Instantiate and return the configured DNS provider.

    Reads settings at call time (mirrors make_client()).
    Raises ValueError for unknown DNS_PROVIDER values.
    """
    from frontdoor.config import settings  # late import to avoid circular dependency

    provider = settings.DNS_PROVIDER

    if provider == "cloudflare":
        return CloudflareDnsProvider(
            api_token=settings.CLOUDFLARE_API_TOKEN,
            zone_id=settings.CLOUDFLARE_ZONE_ID,
        )
    elif provider == "route53":
        return Route53DnsProvider(
            hosted_zone_id=settings.AWS_ROUTE53_HOSTED_ZONE_ID,
            region=settings.AWS_REGION,
            access_key_id=settings.AWS_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        )
    else:
        raise ValueError(
            f"Unknown DNS_PROVIDER: {provider!r}. "
            "Must be one of: cloudflare, route53"
        )


def make_solver(provider: DnsProvider | None = None) -> DnsChallengeSolver:
    from frontdoor.config import settings

    return DnsChallengeSolver(
        provider or make_dns_provider(),
        ttl=settings.DNS_RECORD_TTL,
        max_attempts=settings.MAX_RETRIES,
    )
