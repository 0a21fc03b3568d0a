import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from models.history import NetworkSnapshot
from services.db import SessionLocal
from utils.timeutil import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

MAX_NODE_HISTORY_ROWS = 1000
SNAPSHOT_PAGE_SIZE = 200


def _snapshot_query(session: Session, start: Optional[datetime] = None, end: Optional[datetime] = None):
    query = session.query(NetworkSnapshot)
    start, end = to_naive_utc(start), to_naive_utc(end)
    if start is not None:
        query = query.filter(NetworkSnapshot.timestamp >= start)
    if end is not None:
        query = query.filter(NetworkSnapshot.timestamp <= end)
    return query


def get_historical_snapshots(session: Session, start: Optional[datetime] = None, end: Optional[datetime] = None,
                             limit: int = 1000, include_nodes: bool = False) -> List[Dict[str, Any]]:
    """
    Network snapshots in a time range, oldest first.

    Args:
        session: database session
        start: inclusive lower bound on snapshot time (UTC)
        end: inclusive upper bound on snapshot time (UTC)
        limit: maximum number of snapshots
        include_nodes: also return the per-node points of each bucket

    Returns:
        list of snapshot dicts
    """
    rows = (
        _snapshot_query(session, start, end)
        .order_by(NetworkSnapshot.timestamp.asc())
        .limit(limit)
        .all()
    )
    return [row.to_dict(include_nodes=include_nodes) for row in rows]


def _extract_point(snapshot: NetworkSnapshot, identity_key: str, case_insensitive: bool) -> Optional[Dict[str, Any]]:
    wanted = identity_key.lower() if case_insensitive else identity_key
    for point in snapshot.node_snapshots or []:
        for candidate in (point.get('identity_key'), point.get('node_key')):
            if not candidate:
                continue
            if (candidate.lower() if case_insensitive else candidate) == wanted:
                return {
                    'bucket_key': snapshot.bucket_key,
                    'timestamp': snapshot.timestamp.isoformat() if snapshot.timestamp else None,
                    **point,
                }
    return None


def _collect_points(session: Session, identity_key: str, start: Optional[datetime], end: Optional[datetime],
                    case_insensitive: bool) -> Tuple[List[Dict[str, Any]], int]:
    """Scan snapshots oldest first in pages until MAX_NODE_HISTORY_ROWS matching points are found."""
    query = _snapshot_query(session, start, end).order_by(NetworkSnapshot.timestamp.asc(), NetworkSnapshot.id.asc())
    points: List[Dict[str, Any]] = []
    scanned = 0
    offset = 0
    while len(points) < MAX_NODE_HISTORY_ROWS:
        page = query.offset(offset).limit(SNAPSHOT_PAGE_SIZE).all()
        if not page:
            break
        offset += len(page)
        scanned += len(page)
        for snapshot in page:
            point = _extract_point(snapshot, identity_key, case_insensitive)
            if point:
                points.append(point)
                if len(points) >= MAX_NODE_HISTORY_ROWS:
                    break
    return points, scanned


def get_node_history(session: Session, identity_key: str, start: Optional[datetime] = None,
                     end: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Time series of one node's metric points across stored snapshots.

    Only snapshots containing the node count towards the row limit, so nodes
    that joined late still get their points. Matches the identity key exactly
    first; when nothing matches the lookup is retried case-insensitively.
    """
    points, scanned = _collect_points(session, identity_key, start, end, False)
    if not points:
        points, scanned = _collect_points(session, identity_key, start, end, True)
        if points:
            logger.info(f"Node history for {identity_key} matched case-insensitively")
    logger.info(f"Node history for {identity_key}: {len(points)} points from {scanned} snapshots")
    return points


def get_daily_stats(session: Session, days: int = 30) -> List[Dict[str, Any]]:
    """Per-day averages of node counts and health score over the last ``days`` days."""
    since = utcnow() - timedelta(days=days)
    rows = (
        session.query(NetworkSnapshot)
        .filter(NetworkSnapshot.timestamp >= since)
        .order_by(NetworkSnapshot.timestamp.asc())
        .all()
    )

    by_date: Dict[str, List[NetworkSnapshot]] = {}
    for row in rows:
        by_date.setdefault(row.date, []).append(row)

    stats = []
    for date, snapshots in by_date.items():
        count = len(snapshots)
        stats.append({
            'date': date,
            'snapshots': count,
            'avg_total_nodes': sum(s.total_nodes or 0 for s in snapshots) / count,
            'avg_online_nodes': sum(s.online_nodes or 0 for s in snapshots) / count,
            'avg_health_score': sum(s.health_score or 0 for s in snapshots) / count,
            'max_total_nodes': max(s.total_nodes or 0 for s in snapshots),
            'last_total_credits': snapshots[-1].total_credits,
        })
    return stats


def export_history_json(out_path=None, start=None, end=None, limit=1000):
    """
    Export network snapshots as JSON string or to a file.
    Args:
        out_path (str|None): Path to the output JSON file. If None, returns JSON string.
    Returns:
        str: JSON string of the snapshots.
    """
    session = SessionLocal()
    try:
        result = get_historical_snapshots(session, start, end, limit)
        js = json.dumps(result, ensure_ascii=False, indent=2)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(js)
            logger.info(f"Exported {len(result)} snapshots to {out_path}")
        return js
    except Exception as e:
        logger.error(f"Failed to export history: {e}")
        raise
    finally:
        session.close()
