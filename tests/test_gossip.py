"""Tests for the gossip relay adapter and IP geolocation."""

from datetime import datetime, timezone

import pytest
import requests

from data_sources import geo_lookup, gossip
from data_sources.gossip import GossipFetchError, fetch_observations, parse_pod, status_from_last_seen

NOW = datetime(2025, 1, 31, 12, 0, 0)
NOW_TS = NOW.replace(tzinfo=timezone.utc).timestamp()
PUBKEY = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


class FakeResponse:

    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class TestParsePod:

    def test_full_record(self):
        obs = parse_pod({
            "pubkey": PUBKEY,
            "address": "1.2.3.4:9001",
            "version": "0.7.3",
            "last_seen_timestamp": NOW_TS - 30,
            "uptime": 3600,
            "storage_committed": 1000,
            "storage_used": 250,
            "is_public": True,
            "rpc_port": 6000,
            "credits": 12,
        }, now=NOW)

        assert obs.identity_key == PUBKEY
        assert obs.ip_address == "1.2.3.4"
        assert obs.port == 9001
        assert obs.version == "0.7.3"
        assert obs.telemetry.status == "online"
        assert obs.telemetry.storage_capacity == 1000
        assert obs.telemetry.storage_used == 250
        assert obs.telemetry.credits == 12.0
        assert obs.telemetry.last_seen == datetime(2025, 1, 31, 11, 59, 30)

    def test_camel_case_and_milliseconds(self):
        obs = parse_pod({"publicKey": PUBKEY, "lastSeenTimestamp": (NOW_TS - 600) * 1000,
                         "storageCapacity": 5}, now=NOW)
        assert obs.telemetry.status == "syncing"
        assert obs.telemetry.storage_capacity == 5
        assert obs.address is None

    def test_missing_identifiers(self):
        assert parse_pod({"version": "1.0"}, now=NOW) is None

    def test_missing_last_seen_is_offline(self):
        assert parse_pod({"address": "1.2.3.4:9001"}, now=NOW).telemetry.status == "offline"

    @pytest.mark.parametrize("age,status", [(0, "online"), (299, "online"), (300, "syncing"),
                                            (3599, "syncing"), (3600, "offline")])
    def test_status_thresholds(self, age, status):
        last_seen = datetime.fromtimestamp(NOW_TS - age, tz=timezone.utc).replace(tzinfo=None)
        assert status_from_last_seen(last_seen, NOW) == status


class TestFetchObservations:

    def test_one_relay_failing(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, timeout=None):
            calls.append(url)
            if "bad" in url:
                raise requests.ConnectionError("refused")
            return FakeResponse({"jsonrpc": "2.0", "id": 1, "result": {"pods": [
                {"pubkey": PUBKEY, "address": "1.2.3.4:9001"},
                {"address": "5.6.7.8:9001"},
            ]}})

        monkeypatch.setattr(gossip.requests, "post", fake_post)
        observations = fetch_observations(["bad-relay:6000", "http://good-relay:6000/rpc"], timeout=1, now=NOW)

        assert calls == ["http://bad-relay:6000/rpc", "http://good-relay:6000/rpc"]
        assert len(observations) == 2
        assert {o.relay for o in observations} == {"http://good-relay:6000/rpc"}

    def test_rpc_error_counts_as_failure(self, monkeypatch):
        monkeypatch.setattr(gossip.requests, "post",
                            lambda url, json=None, timeout=None: FakeResponse({"error": {"code": -32601}}))
        with pytest.raises(GossipFetchError):
            fetch_observations(["relay:6000"], timeout=1, now=NOW)

    def test_all_relays_failing(self, monkeypatch):
        def fake_post(url, json=None, timeout=None):
            raise requests.Timeout("timed out")

        monkeypatch.setattr(gossip.requests, "post", fake_post)
        with pytest.raises(GossipFetchError):
            fetch_observations(["a:1", "b:1"], timeout=1, now=NOW)

    def test_no_relays_configured(self):
        with pytest.raises(GossipFetchError):
            fetch_observations([], timeout=1)

    def test_list_result_shape(self, monkeypatch):
        monkeypatch.setattr(gossip.requests, "post", lambda url, json=None, timeout=None: FakeResponse(
            {"result": [{"address": "1.1.1.1:1"}]}))
        assert len(fetch_observations(["relay:6000"], timeout=1, now=NOW)) == 1


class TestGeoLookup:

    def test_batch_lookup(self, monkeypatch):
        def fake_post(url, params=None, json=None, timeout=None):
            return FakeResponse([
                {"status": "success", "query": ip, "country": "Germany", "countryCode": "DE",
                 "city": "Berlin", "lat": 52.5, "lon": 13.4}
                if ip == "1.1.1.1" else {"status": "fail", "query": ip}
                for ip in json
            ])

        monkeypatch.setattr(geo_lookup.requests, "post", fake_post)
        locations = geo_lookup.batch_fetch_locations(["1.1.1.1", "2.2.2.2", "1.1.1.1"], url="http://geo/batch")

        assert locations == {"1.1.1.1": {"lat": 52.5, "lon": 13.4, "city": "Berlin",
                                         "country": "Germany", "country_code": "DE"}}

    def test_failure_returns_empty(self, monkeypatch):
        def fake_post(url, params=None, json=None, timeout=None):
            raise requests.ConnectionError("down")

        monkeypatch.setattr(geo_lookup.requests, "post", fake_post)
        assert geo_lookup.batch_fetch_locations(["1.1.1.1"], url="http://geo/batch") == {}
