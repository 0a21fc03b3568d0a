"""
Region history pre-aggregation and cached reads.

Per-country aggregates are computed once, when a network snapshot is written,
and stored in ``region_history`` (one row per bucket and country). Reads are
then a plain indexed range query instead of unwinding every node of every
snapshot, and are served through a short-TTL in-memory cache.
"""
import copy
import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from models.history import RegionSnapshot
from services.health_score import calculate_network_health
from services.snapshot_engine import average, scoring_rows, total, version_distribution
from utils.timeutil import to_naive_utc

logger = logging.getLogger(__name__)

MAX_REGION_ROWS = 1000

CacheKey = Tuple[str, str, Optional[datetime], Optional[datetime]]


class RegionHistoryCache:
    """
    Process-local TTL cache for region history queries.

    Keys are (country, country_code, start, end). Entries expire after
    ``ttl_seconds``, the oldest entries are evicted beyond ``max_entries``, and
    writes of a new bucket invalidate every entry whose range contains it.
    """

    def __init__(self, ttl_seconds: float = config.REGION_CACHE_TTL_SECONDS,
                 max_entries: int = config.REGION_CACHE_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: 'OrderedDict[CacheKey, Tuple[float, List[Dict[str, Any]]]]' = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def make_key(country: str, country_code: Optional[str], start: Optional[datetime],
                 end: Optional[datetime]) -> CacheKey:
        return (country, country_code or '', to_naive_utc(start), to_naive_utc(end))

    def get(self, key: CacheKey) -> Optional[List[Dict[str, Any]]]:
        """Cached data for ``key`` as a private copy, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, data = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return copy.deepcopy(data)

    def put(self, key: CacheKey, data: List[Dict[str, Any]]):
        with self._lock:
            self._entries[key] = (self._clock(), copy.deepcopy(data))
            self._entries.move_to_end(key)
        self.cleanup()

    def invalidate_for(self, timestamp: datetime) -> int:
        """Drop entries whose time range contains ``timestamp``."""
        timestamp = to_naive_utc(timestamp)
        with self._lock:
            stale = [
                key for key in self._entries
                if (key[2] is None or key[2] <= timestamp) and (key[3] is None or timestamp <= key[3])
            ]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug(f"Cleared {len(stale)} region cache entries for new snapshot")
        return len(stale)

    def cleanup(self) -> int:
        """Evict expired entries, then the oldest ones beyond the size bound."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]:
                del self._entries[key]
                removed += 1
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                removed += 1
        return removed

    def clear(self):
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared entire region cache ({size} entries)")

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = [
                {'key': list(map(str, key)), 'data_points': len(data), 'age_seconds': now - stored_at}
                for key, (stored_at, data) in self._entries.items()
            ]
        return {'size': len(entries), 'entries': entries}

    def __len__(self):
        with self._lock:
            return len(self._entries)


def compute_region_aggregates(points: List[Dict[str, Any]], contexts: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Aggregates for the nodes of one country."""
    health = calculate_network_health(scoring_rows(points, contexts))
    packets_received = total(p.get('packets_received') for p in points)
    packets_sent = total(p.get('packets_sent') for p in points)
    avg_uptime = average(p.get('uptime') for p in points if (p.get('uptime') or 0) > 0)
    return {
        'total_nodes': len(points),
        'online_nodes': sum(1 for p in points if p['status'] == 'online'),
        'offline_nodes': sum(1 for p in points if p['status'] == 'offline'),
        'syncing_nodes': sum(1 for p in points if p['status'] == 'syncing'),
        'avg_cpu_percent': average(p.get('cpu_percent') for p in points),
        'avg_ram_percent': average(p.get('ram_percent') for p in points),
        'total_packets_received': packets_received,
        'total_packets_sent': packets_sent,
        'total_active_streams': int(total(p.get('active_streams') for p in points)),
        'total_credits': total(p.get('credits') for p in points),
        'avg_uptime': avg_uptime,
        'avg_packet_rate': (packets_received + packets_sent) / avg_uptime if avg_uptime else None,
        'cities': health['cities'],
        'version_distribution': version_distribution(contexts.get(p['node_key'], {}) for p in points),
        'health_availability': health['availability'],
        'health_version': health['version_health'],
        'health_distribution': health['distribution'],
        'health_score': health['overall'],
        'node_credits': [
            {'node_key': p['node_key'], 'credits': p['credits']}
            for p in points if p.get('credits') is not None
        ],
    }


def group_by_country(points: List[Dict[str, Any]], contexts: Dict[str, Dict[str, Any]]):
    """Group node points by country; nodes without a known country are left out."""
    regions: Dict[str, Dict[str, Any]] = {}
    for point in points:
        ctx = contexts.get(point['node_key'], {})
        country = ctx.get('country')
        if not country or country == 'Unknown':
            continue
        region = regions.setdefault(country, {'country_code': ctx.get('country_code') or '', 'points': []})
        if not region['country_code'] and ctx.get('country_code'):
            region['country_code'] = ctx['country_code']
        region['points'].append(point)
    return regions


class RegionPreAggregator:
    """Writes one RegionSnapshot per country for a bucket, upserting on (bucket_key, country)."""

    def __init__(self, session_factory: Callable[[], Session], cache: Optional[RegionHistoryCache] = None):
        self.session_factory = session_factory
        self.cache = cache

    def store_region_snapshots(self, bucket_key: str, timestamp: datetime, points: List[Dict[str, Any]],
                               contexts: Dict[str, Dict[str, Any]]) -> int:
        regions = group_by_country(points, contexts)
        if not regions:
            logger.warning("No regions to snapshot")
            return 0

        try:
            created, updated = self._write(bucket_key, timestamp, regions, contexts)
        except IntegrityError:
            # Another writer inserted one of the rows first; the retry sees it and updates
            logger.info(f"Region snapshots for {bucket_key} created concurrently, updating instead")
            created, updated = self._write(bucket_key, timestamp, regions, contexts)

        logger.info(f"Stored {len(regions)} region snapshots for {bucket_key} ({created} new, {updated} updated)")
        if self.cache is not None:
            self.cache.invalidate_for(timestamp)
        return len(regions)

    def _write(self, bucket_key: str, timestamp: datetime, regions: Dict[str, Dict[str, Any]],
               contexts: Dict[str, Dict[str, Any]]) -> Tuple[int, int]:
        session = self.session_factory()
        created = updated = 0
        try:
            for country, region in regions.items():
                aggregates = compute_region_aggregates(region['points'], contexts)
                if self._upsert(session, bucket_key, timestamp, country, region['country_code'], aggregates):
                    created += 1
                else:
                    updated += 1
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return created, updated

    @staticmethod
    def _upsert(session: Session, bucket_key: str, timestamp: datetime, country: str, country_code: str,
                aggregates: Dict[str, Any]) -> bool:
        snapshot = (
            session.query(RegionSnapshot)
            .filter(RegionSnapshot.bucket_key == bucket_key, RegionSnapshot.country == country)
            .first()
        )
        created = snapshot is None
        if created:
            snapshot = RegionSnapshot(bucket_key=bucket_key, country=country)
            session.add(snapshot)
        snapshot.timestamp = timestamp
        snapshot.date = timestamp.strftime('%Y-%m-%d')
        snapshot.country_code = country_code
        for name, value in aggregates.items():
            setattr(snapshot, name, value)
        session.flush()
        return created


class RegionHistoryService:
    """Cached region history reads."""

    def __init__(self, session_factory: Callable[[], Session], cache: Optional[RegionHistoryCache] = None):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else RegionHistoryCache()

    def get_region_history(self, country: str, country_code: Optional[str] = None,
                           start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        key = self.cache.make_key(country, country_code, start, end)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Region cache hit for {country} ({len(cached)} points)")
            return cached

        started = time.monotonic()
        session = self.session_factory()
        try:
            rows = query_region_snapshots(session, country, country_code, key[2], key[3])
            data = [row.to_dict() for row in rows]
        finally:
            session.close()

        logger.info(f"Region history for {country}: {len(data)} snapshots in {(time.monotonic() - started) * 1000:.0f}ms")
        self.cache.put(key, data)
        return data

    def get_credits_earned(self, country: str, country_code: Optional[str] = None,
                           start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        return calculate_credits_earned(self.get_region_history(country, country_code, start, end))


def query_region_snapshots(session: Session, country: str, country_code: Optional[str] = None,
                           start: Optional[datetime] = None, end: Optional[datetime] = None,
                           limit: int = MAX_REGION_ROWS) -> List[RegionSnapshot]:
    conditions = [RegionSnapshot.country == country]
    if country_code:
        conditions.append(RegionSnapshot.country_code == country_code)
    query = session.query(RegionSnapshot).filter(or_(*conditions))
    if start is not None:
        query = query.filter(RegionSnapshot.timestamp >= start)
    if end is not None:
        query = query.filter(RegionSnapshot.timestamp <= end)
    return query.order_by(RegionSnapshot.timestamp.asc()).limit(limit).all()


def calculate_credits_earned(snapshots: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Credits earned across consecutive region snapshots, tracked per node.

    Each node's credits are compared with the last snapshot in which that
    same node appeared, so nodes joining, leaving or returning do not show up
    as regional gains or losses. A drop in a node's credits (counter reset)
    counts as zero earned.

    Returns:
        dict with total, by_node (node_key -> earned) and series
        (bucket_key, timestamp, earned) for every snapshot after the first.
    """
    last_seen: Dict[str, float] = {}
    by_node: Dict[str, float] = {}
    series = []
    for index, snapshot in enumerate(snapshots):
        earned = 0.0
        for entry in snapshot.get('node_credits') or []:
            node_key = entry.get('node_key')
            credits = entry.get('credits')
            if node_key is None or credits is None:
                continue
            previous = last_seen.get(node_key)
            if previous is not None and credits > previous:
                delta = credits - previous
                earned += delta
                by_node[node_key] = by_node.get(node_key, 0.0) + delta
            last_seen[node_key] = credits
        if index > 0:
            series.append({'bucket_key': snapshot.get('bucket_key'), 'timestamp': snapshot.get('timestamp'), 'earned': earned})
    return {'total': sum(by_node.values()), 'by_node': by_node, 'series': series}
