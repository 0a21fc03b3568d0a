"""
Historical snapshot writer.

Stores one ``network_history`` row per fixed time bucket (10 minutes by
default). Several refresh cycles inside the same bucket refine the same row:
its aggregates are replaced by the latest values, never averaged or appended.
After each successful write the per-country pre-aggregation runs best-effort.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from models.history import NetworkSnapshot
from models.node import Node
from services.health_score import calculate_network_health
from utils.timeutil import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

STATUSES = ('online', 'offline', 'syncing')
_EPOCH = datetime(1970, 1, 1)

# Mutable per-node metrics copied into every snapshot
POINT_FIELDS = (
    'cpu_percent', 'ram_used', 'ram_total', 'packets_received', 'packets_sent', 'active_streams',
    'uptime', 'storage_used', 'storage_capacity', 'storage_committed', 'credits',
)


def bucket_start_for(moment: datetime, bucket_minutes: int = config.BUCKET_MINUTES) -> datetime:
    """Truncate a UTC time to the start of its bucket."""
    if bucket_minutes <= 0:
        raise ValueError("bucket_minutes must be positive")
    moment = to_naive_utc(moment)
    width = bucket_minutes * 60
    seconds = int((moment - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=seconds - seconds % width)


def bucket_key_for(moment: datetime, bucket_minutes: int = config.BUCKET_MINUTES) -> str:
    """Deterministic bucket identifier, e.g. ``2025-01-31-14-20``."""
    return bucket_start_for(moment, bucket_minutes).strftime('%Y-%m-%d-%H-%M')


def effective_status(node: Any) -> str:
    """
    Canonical three-state status.

    A node missing from the latest gossip cycle is offline whatever it last
    reported; otherwise its reported status is used. ``syncing`` stays a
    separate state.
    """
    if getattr(node, 'seen_in_gossip', True) is False:
        return 'offline'
    status = getattr(node, 'status', None)
    return status if status in STATUSES else 'offline'


def build_node_point(node: Node) -> Dict[str, Any]:
    point = {
        'node_key': node.node_key,
        'identity_key': node.identity_key,
        'status': effective_status(node),
    }
    for name in POINT_FIELDS:
        value = getattr(node, name, None)
        if value is not None:
            point[name] = value
    if node.ram_used is not None and node.ram_total:
        point['ram_percent'] = node.ram_used / node.ram_total * 100
    return point


def build_node_context(node: Node) -> Dict[str, Any]:
    """Static-ish data needed by region grouping and scoring, kept out of the stored points."""
    return {
        'version': node.version,
        'country': node.country,
        'country_code': node.country_code,
        'city': node.city,
    }


def average(values: Iterable[Optional[float]]) -> Optional[float]:
    """Mean of the present values; None when no value is present."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def total(values: Iterable[Optional[float]]) -> float:
    return float(sum(v for v in values if v is not None))


def version_distribution(contexts: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    distribution: Dict[str, int] = {}
    for ctx in contexts:
        version = ctx.get('version')
        if version:
            distribution[version] = distribution.get(version, 0) + 1
    return distribution


def scoring_rows(points: List[Dict[str, Any]], contexts: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{**contexts.get(p['node_key'], {}), 'status': p['status']} for p in points]


def compute_network_aggregates(points: List[Dict[str, Any]], contexts: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Network-wide aggregates for one bucket."""
    health = calculate_network_health(scoring_rows(points, contexts))
    return {
        'total_nodes': len(points),
        'online_nodes': sum(1 for p in points if p['status'] == 'online'),
        'offline_nodes': sum(1 for p in points if p['status'] == 'offline'),
        'syncing_nodes': sum(1 for p in points if p['status'] == 'syncing'),
        'avg_cpu_percent': average(p.get('cpu_percent') for p in points),
        'avg_ram_percent': average(p.get('ram_percent') for p in points),
        'avg_packets_received': average(p.get('packets_received') for p in points),
        'avg_packets_sent': average(p.get('packets_sent') for p in points),
        'avg_active_streams': average(p.get('active_streams') for p in points),
        'avg_uptime': average(p.get('uptime') for p in points),
        'avg_storage_used': average(p.get('storage_used') for p in points),
        'total_storage_capacity': total(p.get('storage_capacity') for p in points),
        'total_storage_used': total(p.get('storage_used') for p in points),
        'total_credits': total(p.get('credits') for p in points),
        'version_distribution': version_distribution(contexts.get(p['node_key'], {}) for p in points),
        'countries': health['countries'],
        'cities': health['cities'],
        'health_availability': health['availability'],
        'health_version': health['version_health'],
        'health_distribution': health['distribution'],
        'health_score': health['overall'],
    }


class SnapshotEngine:
    """Writes one idempotent network snapshot per bucket and triggers region pre-aggregation."""

    def __init__(self, session_factory: Callable[[], Session], bucket_minutes: int = config.BUCKET_MINUTES,
                 region_aggregator=None):
        self.session_factory = session_factory
        self.bucket_minutes = bucket_minutes
        self.region_aggregator = region_aggregator

    def store_snapshot(self, nodes: Optional[List[Node]] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Store the snapshot for the bucket containing ``now``.

        Args:
            nodes: registry rows to snapshot; read from the registry when omitted
            now: write time (UTC), defaults to the current time

        Returns:
            dict with bucket_key, created flag, node and region counts
        """
        now = to_naive_utc(now) or utcnow()
        bucket_start = bucket_start_for(now, self.bucket_minutes)
        bucket_key = bucket_start.strftime('%Y-%m-%d-%H-%M')

        session = self.session_factory()
        try:
            if nodes is None:
                nodes = session.query(Node).all()
            points = [build_node_point(n) for n in nodes]
            contexts = {n.node_key: build_node_context(n) for n in nodes}
            aggregates = compute_network_aggregates(points, contexts)
            created = self._upsert(session, bucket_key, bucket_start, now, aggregates, points)
        finally:
            session.close()

        action = "Stored" if created else "Updated"
        logger.info(f"{action} snapshot for {bucket_key} ({len(points)} nodes, health {aggregates['health_score']})")

        regions = 0
        if self.region_aggregator is not None:
            try:
                regions = self.region_aggregator.store_region_snapshots(bucket_key, now, points, contexts)
            except Exception as e:
                # Region history is derived data; the network snapshot above stays committed
                logger.error(f"Region pre-aggregation failed for {bucket_key}: {e}")

        return {
            'bucket_key': bucket_key,
            'created': created,
            'total_nodes': len(points),
            'regions': regions,
            'health_score': aggregates['health_score'],
        }

    def _upsert(self, session: Session, bucket_key: str, bucket_start: datetime, now: datetime,
                aggregates: Dict[str, Any], points: List[Dict[str, Any]]) -> bool:
        """Insert the bucket row or replace its aggregates. Returns True when a row was created."""
        existing = session.query(NetworkSnapshot).filter(NetworkSnapshot.bucket_key == bucket_key).first()
        if existing is not None:
            self._apply(existing, now, aggregates, points)
            session.commit()
            return False

        snapshot = NetworkSnapshot(bucket_key=bucket_key, bucket_start=bucket_start, date=bucket_start.strftime('%Y-%m-%d'))
        self._apply(snapshot, now, aggregates, points)
        session.add(snapshot)
        try:
            session.commit()
            return True
        except IntegrityError:
            # Another writer created the bucket first; fall back to replacing its aggregates
            session.rollback()
            logger.info(f"Snapshot {bucket_key} created concurrently, updating instead")
            existing = session.query(NetworkSnapshot).filter(NetworkSnapshot.bucket_key == bucket_key).one()
            self._apply(existing, now, aggregates, points)
            session.commit()
            return False

    @staticmethod
    def _apply(snapshot: NetworkSnapshot, now: datetime, aggregates: Dict[str, Any], points: List[Dict[str, Any]]):
        snapshot.timestamp = now
        for name, value in aggregates.items():
            setattr(snapshot, name, value)
        snapshot.node_snapshots = points
