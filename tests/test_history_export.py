"""Tests for snapshot and node history reads."""

from datetime import datetime, timedelta

from factories import KEY_A, KEY_MIXED, node
from models.history import NetworkSnapshot
from services.history_export import (MAX_NODE_HISTORY_ROWS, get_daily_stats, get_historical_snapshots,
                                     get_node_history)
from services.snapshot_engine import SnapshotEngine
from utils.timeutil import utcnow


def _store(session, session_factory, moments, **fields):
    session.add(node(KEY_MIXED, KEY_MIXED, credits=1.0, **fields))
    session.add(node(KEY_A, KEY_A, credits=2.0))
    session.commit()
    engine = SnapshotEngine(session_factory)
    for moment in moments:
        engine.store_snapshot(now=moment)


class TestHistoricalSnapshots:

    def test_range_and_order(self, session, session_factory):
        _store(session, session_factory, [datetime(2025, 1, 31, 12, 0), datetime(2025, 1, 31, 12, 10),
                                          datetime(2025, 1, 31, 12, 20)])

        snapshots = get_historical_snapshots(session, start=datetime(2025, 1, 31, 12, 5))
        assert [s["bucket_key"] for s in snapshots] == ["2025-01-31-12-10", "2025-01-31-12-20"]
        assert "node_snapshots" not in snapshots[0]

        limited = get_historical_snapshots(session, limit=1, include_nodes=True)
        assert len(limited) == 1
        assert len(limited[0]["node_snapshots"]) == 2


class TestNodeHistory:

    def test_exact_match(self, session, session_factory):
        _store(session, session_factory, [datetime(2025, 1, 31, 12, 0), datetime(2025, 1, 31, 12, 10)])

        points = get_node_history(session, KEY_MIXED)
        assert len(points) == 2
        assert points[0]["bucket_key"] == "2025-01-31-12-00"
        assert points[0]["credits"] == 1.0

    def test_case_insensitive_fallback(self, session, session_factory):
        _store(session, session_factory, [datetime(2025, 1, 31, 12, 0)])
        points = get_node_history(session, KEY_MIXED.lower())
        assert len(points) == 1
        assert points[0]["identity_key"] == KEY_MIXED

    def test_unknown_node(self, session, session_factory):
        _store(session, session_factory, [datetime(2025, 1, 31, 12, 0)])
        assert get_node_history(session, "nobody") == []

    def test_late_joiner_beyond_row_limit(self, session):
        first = datetime(2025, 1, 1)
        count = MAX_NODE_HISTORY_ROWS + 5
        for i in range(count):
            moment = first + timedelta(minutes=10 * i)
            points = [{"node_key": KEY_A, "identity_key": KEY_A, "status": "online", "credits": float(i)}]
            if i >= count - 5:
                points.append({"node_key": KEY_MIXED, "identity_key": KEY_MIXED, "status": "online"})
            session.add(NetworkSnapshot(bucket_key=moment.strftime("%Y-%m-%d-%H-%M"), bucket_start=moment,
                                        timestamp=moment, date=moment.strftime("%Y-%m-%d"), node_snapshots=points))
        session.commit()

        late = get_node_history(session, KEY_MIXED)
        assert len(late) == 5
        assert late[-1]["timestamp"] == (first + timedelta(minutes=10 * (count - 1))).isoformat()

        always = get_node_history(session, KEY_A)
        assert len(always) == MAX_NODE_HISTORY_ROWS
        assert always[0]["credits"] == 0.0


class TestDailyStats:

    def test_groups_by_date(self, session, session_factory):
        now = utcnow()
        _store(session, session_factory, [now])
        stats = get_daily_stats(session, days=1)
        assert len(stats) == 1
        assert stats[0]["avg_total_nodes"] == 2
        assert stats[0]["last_total_credits"] == 3.0
