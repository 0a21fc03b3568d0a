"""Tests for node activity detection and reads."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from factories import KEY_A, KEY_B, observation
from models.activity import ActivityLog
from services.activity_log import get_activity_logs
from services.errors import ReconciliationError
from services.reconciliation import ReconciliationEngine, reconcile_observations

NOW = datetime(2025, 1, 31, 12, 0, 0)
LATER = NOW + timedelta(minutes=1)


def _types(session, node_key=None):
    return [e["type"] for e in reversed(get_activity_logs(session, node_key=node_key, limit=100))]


class TestActivityDetection:

    def test_new_node(self, session):
        result = reconcile_observations(session, [
            observation(KEY_A, "1.1.1.1:9001", city="Berlin", country="Germany", country_code="DE"),
        ], now=NOW)

        assert result.activity == 1
        [event] = get_activity_logs(session)
        assert event["type"] == "new_node"
        assert event["node_key"] == KEY_A
        assert event["message"] == "1.1.1.1:9001 discovered (Berlin, Germany)"
        assert event["country_code"] == "DE"
        assert event["data"] == {"status": "online"}

    def test_unchanged_node_is_quiet(self, session):
        reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001", credits=5.0)], now=NOW)
        result = reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001", credits=5.0)], now=LATER)
        assert result.activity == 0

    def test_status_transitions(self, session):
        reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001")], now=NOW)
        reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001", status="syncing")], now=LATER)

        [event] = get_activity_logs(session, activity_type="node_syncing")
        assert event["data"] == {"old_status": "online", "new_status": "syncing"}
        assert event["message"] == "1.1.1.1:9001 is now syncing"

    def test_counter_growth(self, session):
        reconcile_observations(session, [
            observation(KEY_A, "1.1.1.1:9001", credits=10.0, packets_received=100.0, packets_sent=50.0,
                        active_streams=2),
        ], now=NOW)
        result = reconcile_observations(session, [
            observation(KEY_A, "1.1.1.1:9001", credits=12.5, packets_received=130.0, packets_sent=50.0,
                        active_streams=5),
        ], now=LATER)

        assert result.activity == 3
        credits = get_activity_logs(session, activity_type="credits_earned")[0]
        assert credits["data"] == {"earned": 2.5, "total": 12.5}
        packets = get_activity_logs(session, activity_type="packets_earned")[0]
        assert packets["data"]["rx_earned"] == 30.0
        assert packets["data"]["tx_earned"] == 0
        streams = get_activity_logs(session, activity_type="streams_active")[0]
        assert streams["data"] == {"increased": 3, "total": 5}

    def test_credit_reset_is_not_earned(self, session):
        reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001", credits=10.0)], now=NOW)
        result = reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001", credits=1.0)], now=LATER)
        assert result.activity == 0

    def test_dropped_from_gossip_then_back(self, session):
        reconcile_observations(session, [
            observation(KEY_A, "1.1.1.1:9001"),
            observation(KEY_B, "2.2.2.2:9001"),
        ], now=NOW)
        reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001")], now=LATER)
        reconcile_observations(session, [
            observation(KEY_A, "1.1.1.1:9001"),
            observation(KEY_B, "2.2.2.2:9001"),
        ], now=LATER + timedelta(minutes=1))

        assert _types(session, KEY_B) == ["new_node", "node_offline", "node_online"]
        offline = get_activity_logs(session, node_key=KEY_B, activity_type="node_offline")[0]
        assert offline["data"]["reason"] == "not_seen_in_gossip"

    def test_disabled(self, session):
        result = ReconciliationEngine(session, now=NOW, log_activity=False).reconcile(
            [observation(KEY_A, "1.1.1.1:9001")])
        assert result.activity == 0
        assert session.query(ActivityLog).count() == 0

    def test_rolled_back_with_the_batch(self, session, monkeypatch):
        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(session, "commit", failing_commit)
        with pytest.raises(ReconciliationError):
            ReconciliationEngine(session, now=NOW).reconcile([observation(KEY_A, "1.1.1.1:9001")])
        monkeypatch.undo()

        assert session.query(ActivityLog).count() == 0


class TestActivityReads:

    def test_newest_first_with_filters(self, session):
        reconcile_observations(session, [observation(KEY_A, "1.1.1.1:9001", country_code="DE")], now=NOW)
        reconcile_observations(session, [
            observation(KEY_A, "1.1.1.1:9001", country_code="DE"),
            observation(KEY_B, "2.2.2.2:9001", country_code="FR"),
        ], now=LATER)

        events = get_activity_logs(session)
        assert [e["node_key"] for e in events] == [KEY_B, KEY_A]
        assert get_activity_logs(session, country_code="FR")[0]["node_key"] == KEY_B
        assert get_activity_logs(session, node_key=KEY_A)[0]["type"] == "new_node"
        assert len(get_activity_logs(session, limit=1)) == 1
        assert get_activity_logs(session, skip=1)[0]["node_key"] == KEY_A
