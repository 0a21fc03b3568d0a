"""Tests for the network health score."""

import pytest

from services.health_score import calculate_network_health


def _nodes(count, status="online", version="1.0.0", country="Germany", city="Berlin"):
    return [{"status": status, "version": version, "country": country, "city": city} for _ in range(count)]


class TestHealthScore:

    def test_empty_set_is_all_zero(self):
        health = calculate_network_health([])
        assert health == {"availability": 0, "version_health": 0, "distribution": 0,
                          "overall": 0, "countries": 0, "cities": 0}

    def test_weights(self):
        # 10 countries and 20 cities give full distribution
        nodes = [
            {"status": "online", "version": "1.0.0", "country": f"C{i % 10}", "city": f"city{i}"}
            for i in range(20)
        ]
        health = calculate_network_health(nodes)
        assert health["availability"] == 100
        assert health["version_health"] == 100
        assert health["distribution"] == 100
        assert health["overall"] == 100

    def test_partial_scores(self):
        nodes = _nodes(2) + _nodes(2, status="offline", version="0.9.0")
        health = calculate_network_health(nodes)
        assert health["availability"] == 50
        assert health["version_health"] == 50
        # one country (6% of 60) and one city (2% of 40)
        assert health["distribution"] == 8
        assert health["overall"] == round(50 * 0.40 + 50 * 0.35 + 8.0 * 0.25)

    def test_syncing_is_not_online(self):
        health = calculate_network_health(_nodes(1) + _nodes(1, status="syncing"))
        assert health["availability"] == 50

    def test_latest_version_uses_semantic_order(self):
        nodes = _nodes(1, version="1.10.0") + _nodes(3, version="1.9.0")
        assert calculate_network_health(nodes)["version_health"] == 25

    def test_no_known_version(self):
        assert calculate_network_health(_nodes(3, version="unknown"))["version_health"] == 0

    def test_accepts_objects(self):
        class Row:
            status = "online"
            version = "1.0"
            country = "France"
            city = "Paris"

        assert calculate_network_health([Row()])["availability"] == 100

    @pytest.mark.parametrize("online,total", [(0, 1), (1, 1), (3, 7), (50, 50)])
    def test_overall_bounds(self, online, total):
        nodes = _nodes(online) + _nodes(total - online, status="offline", country=None, city=None)
        overall = calculate_network_health(nodes)["overall"]
        assert 0 <= overall <= 100
