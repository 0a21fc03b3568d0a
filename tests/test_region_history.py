"""Tests for region pre-aggregation, the region cache and credit tracking."""

import threading
from datetime import datetime

import pytest

from models.history import RegionSnapshot
from services.region_history import (
    RegionHistoryCache,
    RegionHistoryService,
    RegionPreAggregator,
    calculate_credits_earned,
)

B1 = datetime(2025, 1, 31, 12, 0)
B2 = datetime(2025, 1, 31, 12, 10)
B3 = datetime(2025, 1, 31, 12, 20)


def _point(node_key, credits=None, status="online", **fields):
    point = {"node_key": node_key, "identity_key": node_key, "status": status, **fields}
    if credits is not None:
        point["credits"] = credits
    return point


def _ctx(country="Germany", country_code="DE", city="Berlin", version="1.0.0"):
    return {"country": country, "country_code": country_code, "city": city, "version": version}


class TestRegionHistoryCache:

    def test_ttl(self, clock):
        cache = RegionHistoryCache(ttl_seconds=10, max_entries=5, clock=clock)
        key = cache.make_key("Germany", "DE", None, None)
        cache.put(key, [{"a": 1}])

        clock.advance(9)
        assert cache.get(key) == [{"a": 1}]
        clock.advance(1)
        assert cache.get(key) is None

    def test_size_bound_evicts_oldest(self, clock):
        cache = RegionHistoryCache(ttl_seconds=100, max_entries=2, clock=clock)
        keys = [cache.make_key(c, None, None, None) for c in ("A", "B", "C")]
        for key in keys:
            cache.put(key, [])
            clock.advance(1)

        assert len(cache) == 2
        assert cache.get(keys[0]) is None
        assert cache.get(keys[2]) == []

    def test_invalidate_overlapping_ranges_only(self, clock):
        cache = RegionHistoryCache(ttl_seconds=100, max_entries=10, clock=clock)
        open_ended = cache.make_key("Germany", None, B1, None)
        closed_before = cache.make_key("Germany", None, None, B2)
        containing = cache.make_key("France", None, B1, B3)
        for key in (open_ended, closed_before, containing):
            cache.put(key, [])

        assert cache.invalidate_for(B3) == 2
        assert cache.get(closed_before) == []
        assert cache.get(open_ended) is None
        assert cache.get(containing) is None

    def test_callers_cannot_mutate_cached_data(self, clock):
        cache = RegionHistoryCache(ttl_seconds=100, max_entries=10, clock=clock)
        key = cache.make_key("Germany", "DE", None, None)
        stored = [{"total_nodes": 1}]
        cache.put(key, stored)
        stored[0]["total_nodes"] = 99

        first = cache.get(key)
        first.append({"total_nodes": 2})
        first[0]["total_nodes"] = 3
        assert cache.get(key) == [{"total_nodes": 1}]

    def test_len_waits_for_lock(self, clock):
        cache = RegionHistoryCache(ttl_seconds=100, max_entries=10, clock=clock)
        cache.put(cache.make_key("Germany", None, None, None), [])
        sizes = []
        reader = threading.Thread(target=lambda: sizes.append(len(cache)))

        with cache._lock:
            reader.start()
            reader.join(0.1)
            assert reader.is_alive()
        reader.join(1)
        assert sizes == [1]

    def test_clear_and_stats(self, clock):
        cache = RegionHistoryCache(ttl_seconds=100, max_entries=10, clock=clock)
        cache.put(cache.make_key("Germany", None, None, None), [{}, {}])
        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["entries"][0]["data_points"] == 2
        cache.clear()
        assert len(cache) == 0


class TestRegionPreAggregator:

    def test_groups_by_country_and_skips_unknown(self, session_factory, session):
        points = [_point("n1", 10.0, cpu_percent=10.0), _point("n2", 20.0, status="offline"), _point("n3", 5.0)]
        contexts = {"n1": _ctx(), "n2": _ctx(city="Munich"), "n3": _ctx(country=None, country_code=None)}

        count = RegionPreAggregator(session_factory).store_region_snapshots("2025-01-31-12-00", B1, points, contexts)

        assert count == 1
        region = session.query(RegionSnapshot).one()
        assert region.country == "Germany"
        assert region.country_code == "DE"
        assert region.total_nodes == 2
        assert (region.online_nodes, region.offline_nodes) == (1, 1)
        assert region.total_credits == 30.0
        assert region.cities == 2
        assert region.avg_cpu_percent == 10.0
        assert {c["node_key"] for c in region.node_credits} == {"n1", "n2"}

    def test_upsert_on_bucket_and_country(self, session_factory, session):
        aggregator = RegionPreAggregator(session_factory)
        contexts = {"n1": _ctx()}
        aggregator.store_region_snapshots("2025-01-31-12-00", B1, [_point("n1", 10.0)], contexts)
        aggregator.store_region_snapshots("2025-01-31-12-00", B1, [_point("n1", 15.0)], contexts)

        session.expire_all()
        region = session.query(RegionSnapshot).one()
        assert region.total_credits == 15.0

    def test_write_invalidates_cache(self, session_factory, clock):
        cache = RegionHistoryCache(ttl_seconds=100, max_entries=10, clock=clock)
        service = RegionHistoryService(session_factory, cache)
        aggregator = RegionPreAggregator(session_factory, cache)
        contexts = {"n1": _ctx()}

        aggregator.store_region_snapshots("2025-01-31-12-00", B1, [_point("n1", 1.0)], contexts)
        assert len(service.get_region_history("Germany")) == 1

        aggregator.store_region_snapshots("2025-01-31-12-10", B2, [_point("n1", 2.0)], contexts)
        assert len(service.get_region_history("Germany")) == 2


class TestRegionHistoryService:

    @pytest.fixture
    def stored(self, session_factory):
        aggregator = RegionPreAggregator(session_factory)
        for key, moment in (("2025-01-31-12-00", B1), ("2025-01-31-12-10", B2), ("2025-01-31-12-20", B3)):
            aggregator.store_region_snapshots(key, moment, [_point("n1", 1.0), _point("n2", 1.0)],
                                              {"n1": _ctx(), "n2": _ctx("France", "FR", "Paris")})

    def test_country_or_code_and_range(self, stored, session_factory, clock):
        service = RegionHistoryService(session_factory, RegionHistoryCache(clock=clock))

        assert len(service.get_region_history("Germany")) == 3
        assert len(service.get_region_history("Deutschland", "DE")) == 3
        assert [d["bucket_key"] for d in service.get_region_history("France", start=B2)] == [
            "2025-01-31-12-10", "2025-01-31-12-20"]
        assert len(service.get_region_history("France", start=B1, end=B2)) == 2

    def test_serves_from_cache(self, stored, session_factory, session, clock):
        service = RegionHistoryService(session_factory, RegionHistoryCache(ttl_seconds=60, clock=clock))
        assert len(service.get_region_history("Germany")) == 3

        session.add(RegionSnapshot(bucket_key="2025-01-31-12-30", timestamp=datetime(2025, 1, 31, 12, 30),
                                   country="Germany", country_code="DE"))
        session.commit()
        assert len(service.get_region_history("Germany")) == 3

        clock.advance(60)
        assert len(service.get_region_history("Germany")) == 4


class TestCreditsEarned:

    def test_drift_proof_per_node_tracking(self):
        snapshots = [
            {"bucket_key": "b1", "node_credits": [{"node_key": "N", "credits": 100}, {"node_key": "M", "credits": 50}]},
            {"bucket_key": "b2", "node_credits": [{"node_key": "M", "credits": 60}]},
            {"bucket_key": "b3", "node_credits": [{"node_key": "N", "credits": 140}, {"node_key": "M", "credits": 70}]},
        ]
        earned = calculate_credits_earned(snapshots)

        assert earned["by_node"] == {"N": 40, "M": 20}
        assert earned["total"] == 60
        assert [s["earned"] for s in earned["series"]] == [10, 50]

    def test_reset_counts_as_zero(self):
        earned = calculate_credits_earned([
            {"node_credits": [{"node_key": "N", "credits": 100}]},
            {"node_credits": [{"node_key": "N", "credits": 20}]},
            {"node_credits": [{"node_key": "N", "credits": 30}]},
        ])
        assert earned["by_node"] == {"N": 10}

    def test_empty(self):
        assert calculate_credits_earned([]) == {"total": 0, "by_node": {}, "series": []}

    def test_through_stored_region_history(self, session_factory, clock):
        aggregator = RegionPreAggregator(session_factory)
        germany = {"N": _ctx(), "M": _ctx()}
        aggregator.store_region_snapshots("b1", B1, [_point("N", 100.0), _point("M", 10.0)], germany)
        # N is observed in France during B2
        aggregator.store_region_snapshots("b2", B2, [_point("N", 120.0), _point("M", 10.0)],
                                          {"N": _ctx("France", "FR", "Paris"), "M": _ctx()})
        aggregator.store_region_snapshots("b3", B3, [_point("N", 140.0), _point("M", 10.0)], germany)

        service = RegionHistoryService(session_factory, RegionHistoryCache(clock=clock))
        earned = service.get_credits_earned("Germany")

        assert earned["by_node"] == {"N": 40.0}
        assert earned["total"] == 40.0
