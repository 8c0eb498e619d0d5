"""
Unit tests for DNS-01 challenge support.

Tests cover:
  - acme_record_name() — wildcard stripping
  - make_dns_provider() — dispatch and unknown provider
  - CloudflareDnsProvider — zone discovery, idempotent create, delete (SDK mocked)
  - Route53DnsProvider — UPSERT of the value union, DELETE of the last value (boto3 mocked)
  - DnsChallengeSolver — create/remove round trip, retry, best-effort removal

No real DNS credentials required — all provider calls are mocked.
"""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from frontdoor.acme.dns_challenge import (
    CloudflareDnsProvider,
    DnsChallengeSolver,
    Route53DnsProvider,
    TxtRecord,
    acme_record_name,
    base_domain,
    make_dns_provider,
)
from frontdoor.acme.jws import compute_dns_txt_value
from frontdoor.errors import RecoverableInfrastructureError


# ─── Record names ─────────────────────────────────────────────────────────────

class TestRecordName:
    def test_plain_domain(self):
        assert acme_record_name("example.com") == "_acme-challenge.example.com"

    def test_wildcard_shares_base_name(self):
        assert acme_record_name("*.example.com") == "_acme-challenge.example.com"

    @pytest.mark.parametrize("domain, expected", [
        ("*.example.com", "example.com"),
        ("example.com", "example.com"),
        ("*example.com", "*example.com"),
        ("*.*.example.com", "*.example.com"),
    ])
    def test_base_domain_strips_one_wildcard_label(self, domain, expected):
        assert base_domain(domain) == expected


# ─── make_dns_provider ────────────────────────────────────────────────────────

class TestMakeDnsProvider:
    def test_dispatches_cloudflare(self):
        with patch("frontdoor.acme.dns_challenge.CloudflareDnsProvider.__init__", return_value=None) as mock_init:
            with patch("frontdoor.config.settings") as mock_settings:
                mock_settings.DNS_PROVIDER = "cloudflare"
                mock_settings.CLOUDFLARE_API_TOKEN = "token"
                mock_settings.CLOUDFLARE_ZONE_ID = "zone123"
                provider = make_dns_provider()
        mock_init.assert_called_once_with(api_token="token", zone_id="zone123")
        assert isinstance(provider, CloudflareDnsProvider)

    def test_dispatches_route53(self):
        with patch("frontdoor.acme.dns_challenge.Route53DnsProvider.__init__", return_value=None) as mock_init:
            with patch("frontdoor.config.settings") as mock_settings:
                mock_settings.DNS_PROVIDER = "route53"
                mock_settings.AWS_ROUTE53_HOSTED_ZONE_ID = "Z123"
                mock_settings.AWS_REGION = "us-west-2"
                mock_settings.AWS_ACCESS_KEY_ID = ""
                mock_settings.AWS_SECRET_ACCESS_KEY = ""
                make_dns_provider()
        mock_init.assert_called_once_with(
            hosted_zone_id="Z123",
            region="us-west-2",
            access_key_id="",
            secret_access_key="",
        )

    def test_unknown_provider_raises(self):
        with patch("frontdoor.config.settings") as mock_settings:
            mock_settings.DNS_PROVIDER = "unknown_provider"
            with pytest.raises(ValueError, match="Unknown DNS_PROVIDER"):
                make_dns_provider()

    def test_cloudflare_importerror_hint(self):
        with patch.dict("sys.modules", {"cloudflare": None}):
            with pytest.raises(ImportError, match="dns-cloudflare"):
                CloudflareDnsProvider(api_token="tok")


# ─── CloudflareDnsProvider ────────────────────────────────────────────────────

class TestCloudflareDnsProvider:
    @pytest.fixture
    def cf_client(self):
        return MagicMock()

    @pytest.fixture
    def provider(self, cf_client):
        cf_module = MagicMock()
        cf_module.Cloudflare.return_value = cf_client
        with patch.dict("sys.modules", {"cloudflare": cf_module}):
            return CloudflareDnsProvider(api_token="tok")

    def test_zone_discovery_most_specific_first(self, provider, cf_client):
        cf_client.zones.list.side_effect = lambda name: [SimpleNamespace(id="z-apex")] if name == "example.com" else []
        assert provider.find_zone_id("*.mongo.example.com") == "z-apex"
        names = [c.kwargs["name"] for c in cf_client.zones.list.call_args_list]
        assert names == ["mongo.example.com", "example.com"]

    def test_zone_discovery_keeps_star_without_dot(self, provider, cf_client):
        cf_client.zones.list.return_value = []
        with pytest.raises(ValueError):
            provider.find_zone_id("*example.com")
        names = [c.kwargs["name"] for c in cf_client.zones.list.call_args_list]
        assert names == ["*example.com"]

    def test_zone_discovery_failure(self, provider, cf_client):
        cf_client.zones.list.return_value = []
        with pytest.raises(ValueError):
            provider.find_zone_id("nowhere.test")

    def test_create(self, provider, cf_client):
        cf_client.dns.records.list.return_value = []
        cf_client.dns.records.create.return_value = SimpleNamespace(id="rec-1")

        record = provider.create_txt_record("zone123", "_acme-challenge.example.com", "v1", 120)

        cf_client.dns.records.create.assert_called_once_with(
            zone_id="zone123", type="TXT", name="_acme-challenge.example.com", content="v1", ttl=120,
        )
        assert record == TxtRecord("rec-1", "_acme-challenge.example.com", "v1", "zone123")

    def test_create_is_idempotent(self, provider, cf_client):
        cf_client.dns.records.list.return_value = [SimpleNamespace(id="rec-1", content='"v1"')]
        record = provider.create_txt_record("zone123", "_acme-challenge.example.com", "v1", 120)
        cf_client.dns.records.create.assert_not_called()
        assert record.record_id == "rec-1"

    def test_delete(self, provider, cf_client):
        provider.delete_txt_record(TxtRecord("rec-1", "_acme-challenge.example.com", "v1", "zone123"))
        cf_client.dns.records.delete.assert_called_once_with("rec-1", zone_id="zone123")


# ─── Route53DnsProvider ───────────────────────────────────────────────────────

class TestRoute53DnsProvider:
    FQDN = "_acme-challenge.example.com."

    @pytest.fixture
    def r53(self):
        return MagicMock()

    @pytest.fixture
    def provider(self, r53):
        boto3 = MagicMock()
        boto3.client.return_value = r53
        with patch.dict("sys.modules", {"boto3": boto3}):
            return Route53DnsProvider(hosted_zone_id="Z1")

    def _existing(self, r53, values, ttl=60):
        r53.list_resource_record_sets.return_value = {
            "ResourceRecordSets": [{
                "Name": self.FQDN,
                "Type": "TXT",
                "TTL": ttl,
                "ResourceRecords": [{"Value": f'"{v}"'} for v in values],
            }] if values else []
        }

    def _change(self, r53):
        batch = r53.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
        return batch["Action"], [rr["Value"] for rr in batch["ResourceRecordSet"]["ResourceRecords"]]

    def test_zone_discovery_strips_wildcard_label(self, r53):
        boto3 = MagicMock()
        boto3.client.return_value = r53
        with patch.dict("sys.modules", {"boto3": boto3}):
            provider = Route53DnsProvider()
        r53.list_hosted_zones_by_name.side_effect = lambda DNSName, MaxItems: {
            "HostedZones": [{"Name": DNSName, "Id": "/hostedzone/ZAPEX"}] if DNSName == "example.com." else []
        }
        assert provider.find_zone_id("*.mongo.example.com") == "ZAPEX"
        names = [c.kwargs["DNSName"] for c in r53.list_hosted_zones_by_name.call_args_list]
        assert names == ["mongo.example.com.", "example.com."]

    def test_create_upserts_union(self, provider, r53):
        self._existing(r53, ["old"])
        provider.create_txt_record("Z1", "_acme-challenge.example.com", "new", 120)
        assert self._change(r53) == ("UPSERT", ['"old"', '"new"'])

    def test_create_existing_value_is_noop(self, provider, r53):
        self._existing(r53, ["v1"])
        provider.create_txt_record("Z1", "_acme-challenge.example.com", "v1", 120)
        r53.change_resource_record_sets.assert_not_called()

    def test_delete_keeps_other_values(self, provider, r53):
        self._existing(r53, ["a", "b"])
        provider.delete_txt_record(TxtRecord("a", "_acme-challenge.example.com", "a", "Z1"))
        assert self._change(r53) == ("UPSERT", ['"b"'])

    def test_delete_last_value_deletes_set(self, provider, r53):
        self._existing(r53, ["a"], ttl=300)
        provider.delete_txt_record(TxtRecord("a", "_acme-challenge.example.com", "a", "Z1"))
        assert self._change(r53) == ("DELETE", ['"a"'])
        ttl = r53.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]["ResourceRecordSet"]["TTL"]
        assert ttl == 300


# ─── DnsChallengeSolver ───────────────────────────────────────────────────────

class TestDnsChallengeSolver:
    NAME = "_acme-challenge.example.com"

    def test_create_publishes_hashed_value(self, solver, dns_provider):
        challenge = solver.create_challenge_record("example.com", "tok.thumb")
        assert challenge.dns_record_name == self.NAME
        assert challenge.dns_record_value == compute_dns_txt_value("tok.thumb")
        assert dns_provider.values_at(self.NAME) == {challenge.dns_record_value}

    def test_round_trip_leaves_no_records(self, solver, dns_provider):
        solver.create_challenge_record("example.com", "tok1.thumb")
        solver.create_challenge_record("*.example.com", "tok2.thumb")
        assert len(dns_provider.values_at(self.NAME)) == 2

        assert solver.remove_challenge_record("example.com") == 2
        assert dns_provider.records == {}

    def test_remove_only_tracked_values(self, solver, dns_provider):
        dns_provider.create_txt_record("zone-1", self.NAME, "foreign", 60)
        solver.create_challenge_record("example.com", "tok.thumb")
        solver.remove_challenge_record("example.com")
        assert dns_provider.values_at(self.NAME) == {"foreign"}

    def test_remove_untracked_clears_name(self, dns_provider, solver):
        dns_provider.create_txt_record("zone-1", self.NAME, "left-over", 60)
        assert solver.remove_challenge_record("example.com") == 1
        assert dns_provider.records == {}

    def test_remove_nothing_is_zero(self, solver):
        assert solver.remove_challenge_record("example.com") == 0

    def test_create_retries_transient_failure(self, solver, dns_provider):
        dns_provider.fail_creates = 2
        solver.create_challenge_record("example.com", "tok.thumb")
        assert dns_provider.create_calls == 3
        assert len(dns_provider.records) == 1

    def test_create_gives_up(self, solver, dns_provider):
        dns_provider.fail_creates = 5
        with pytest.raises(RecoverableInfrastructureError) as excinfo:
            solver.create_challenge_record("example.com", "tok.thumb")
        assert excinfo.value.attempts == 3
        assert dns_provider.records == {}

    def test_remove_never_raises(self, dns_provider):
        solver = DnsChallengeSolver(dns_provider, sleep=lambda _s: None)
        solver.create_challenge_record("example.com", "tok.thumb")
        with patch.object(dns_provider, "delete_txt_record", side_effect=ConnectionError("down")):
            assert solver.remove_challenge_record("example.com") == 0

    def test_remove_continues_after_failed_delete(self, solver, dns_provider, caplog):
        solver.create_challenge_record("example.com", "tok1.thumb")
        solver.create_challenge_record("*.example.com", "tok2.thumb")
        real_delete = dns_provider.delete_txt_record
        calls = []

        def flaky_delete(record):
            calls.append(record.record_id)
            if len(calls) == 1:
                raise ConnectionError("DNS API unreachable")
            real_delete(record)

        with patch.object(dns_provider, "delete_txt_record", side_effect=flaky_delete):
            assert solver.remove_challenge_record("example.com") == 1

        assert len(calls) == 2
        assert len(dns_provider.records) == 1
        assert "DNS API unreachable" in caplog.text
