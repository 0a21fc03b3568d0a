"""
One refresh cycle: fetch gossip, locate, reconcile, enrich, snapshot.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import config
from models.node import Node
from models.observation import Observation
from services.onchain_enrich import Enricher, enrich_nodes
from services.reconciliation import ReconciliationEngine
from services.refresh_scheduler import RefreshScheduler
from services.region_history import RegionHistoryCache, RegionPreAggregator
from services.snapshot_engine import SnapshotEngine

logger = logging.getLogger(__name__)

LOCATION_FIELDS = ('lat', 'lon', 'city', 'country', 'country_code')


class NodeSyncService:
    """
    Runs refresh cycles against injected collaborators.

    ``fetcher`` returns the cycle's observations and may raise; ``geo_lookup``
    maps IPs to locations and ``enricher`` returns on-chain fields for an
    identity key. Both of those are optional and best-effort.
    """

    def __init__(self, fetcher: Callable[[], List[Observation]], session_factory: Callable[[], Session],
                 snapshot_engine: Optional[SnapshotEngine] = None,
                 geo_lookup: Optional[Callable[[List[str]], Dict[str, Dict]]] = None,
                 enricher: Optional[Enricher] = None,
                 enrich_max_workers: int = config.ENRICH_MAX_WORKERS):
        self.fetcher = fetcher
        self.session_factory = session_factory
        self.snapshot_engine = snapshot_engine
        self.geo_lookup = geo_lookup
        self.enricher = enricher
        self.enrich_max_workers = enrich_max_workers

    def run_cycle(self) -> Dict[str, Any]:
        started = time.monotonic()
        observations = self.fetcher()
        logger.info(f"Fetched {len(observations)} observations from gossip")

        located = self._locate(observations) if self.geo_lookup else 0

        session = self.session_factory()
        try:
            result = ReconciliationEngine(session).reconcile(observations)
        finally:
            session.close()

        enriched = 0
        if self.enricher and result.inserted_identities:
            try:
                enriched = enrich_nodes(self.session_factory, result.inserted_identities, self.enricher,
                                        self.enrich_max_workers)["successful"]
            except Exception as e:
                logger.error(f"On-chain enrichment failed for {len(result.inserted_identities)} new nodes: {e}")

        snapshot = None
        if self.snapshot_engine is not None and not result.skipped:
            try:
                snapshot = self.snapshot_engine.store_snapshot()
            except Exception as e:
                # Registry is already committed; the next cycle writes the bucket again
                logger.error(f"Snapshot write failed: {e}")

        stats = {
            'fetched': len(observations),
            'dropped': result.dropped,
            'invalid_identity': result.invalid_identity,
            'duplicates': result.duplicates,
            'inserted': result.inserted,
            'updated': result.updated,
            'deleted': result.migrated + result.conflicts_replaced + result.cleaned_up,
            'marked_not_seen': result.marked_not_seen,
            'activity': result.activity,
            'skipped': result.skipped,
            'located': located,
            'enriched': enriched,
            'snapshot': snapshot['bucket_key'] if snapshot else None,
            'duration': round(time.monotonic() - started, 3),
        }
        logger.info(f"Refresh cycle stats: {stats}")
        return stats

    def _locate(self, observations: List[Observation]) -> int:
        """Fill in location for observed hosts the registry has not located yet."""
        try:
            session = self.session_factory()
            try:
                located_ips = {
                    ip for (ip,) in session.query(Node.ip_address)
                    .filter(Node.ip_address.isnot(None), Node.lat.isnot(None), Node.lon.isnot(None))
                }
            finally:
                session.close()

            pending = [o for o in observations if o.ip_address and not o.telemetry.has_location()]
            missing = sorted({o.ip_address for o in pending} - located_ips)
            if not missing:
                return 0

            locations = self.geo_lookup(missing)
            count = 0
            for obs in pending:
                location = locations.get(obs.ip_address)
                if not location:
                    continue
                for name in LOCATION_FIELDS:
                    if location.get(name) is not None:
                        setattr(obs.telemetry, name, location[name])
                count += 1
            return count
        except Exception as e:
            logger.warning(f"Geolocation skipped this cycle: {e}")
            return 0


def build_sync_service(session_factory: Callable[[], Session], region_cache: Optional[RegionHistoryCache] = None,
                       enricher: Optional[Enricher] = None) -> NodeSyncService:
    """Wire the production collaborators from configuration."""
    from data_sources.geo_lookup import batch_fetch_locations
    from data_sources.gossip import fetch_observations

    snapshot_engine = SnapshotEngine(
        session_factory,
        bucket_minutes=config.BUCKET_MINUTES,
        region_aggregator=RegionPreAggregator(session_factory, region_cache),
    )
    return NodeSyncService(
        fetcher=fetch_observations,
        session_factory=session_factory,
        snapshot_engine=snapshot_engine,
        geo_lookup=batch_fetch_locations,
        enricher=enricher,
    )


def build_scheduler(service: NodeSyncService) -> RefreshScheduler:
    return RefreshScheduler(
        service.run_cycle,
        interval_seconds=config.REFRESH_INTERVAL_SECONDS,
        max_cycle_seconds=config.MAX_CYCLE_SECONDS,
        max_skipped_ticks=config.MAX_SKIPPED_TICKS,
        heartbeat_interval_seconds=config.HEARTBEAT_INTERVAL_SECONDS,
        stale_after_seconds=config.STALE_CYCLE_SECONDS,
    )
