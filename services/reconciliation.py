"""
Registry reconciliation.

Merges one refresh cycle's gossip observations into the ``nodes`` table.

Workflow:
1. Validate identity keys (invalid keys fall back to address-only)
2. Deduplicate the batch by IP address, then by identity key
3. Resolve each observation against the registry (IP -> identity migration,
   conflicting identities at one IP)
4. Insert or update the resolved nodes, marking them seen
5. Mark every other node as not seen in gossip (never deleted)
6. Remove address-only rows shadowed by an identity-keyed row at the same IP
7. Record node activity (new nodes, status changes, credit, packet and stream
   growth) detected against the pre-cycle registry state

All writes of a batch happen in one transaction. If storage fails nothing
from the batch is committed and ReconciliationError is raised.
"""
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from models.node import Node
from models.observation import Observation
from services.activity_log import capture_state, detect_activity, offline_event, record_activity
from services.errors import ReconciliationError
from utils.timeutil import utcnow
from utils.versions import compare_versions, is_later_version

logger = logging.getLogger(__name__)

MIN_IDENTITY_LENGTH = 32
MAX_IDENTITY_LENGTH = 44
_BASE58_RE = re.compile(r'^[1-9A-HJ-NP-Za-km-z]+$')
_IP_PREFIX_RE = re.compile(r'^\d+\.\d+\.\d+\.\d+')
_PLACEHOLDER_RE = re.compile(r'^pubkey\d+$', re.IGNORECASE)


def is_valid_identity_key(key: Optional[str]) -> bool:
    """
    Structural validation of a node public key.

    Valid keys are base58 strings of 32-44 characters. Keys containing
    whitespace, purely numeric keys, IP-shaped keys and placeholders such as
    ``pubkey10`` are rejected.
    """
    if not key or not isinstance(key, str):
        return False
    if key != key.strip() or re.search(r'\s', key):
        return False
    if not MIN_IDENTITY_LENGTH <= len(key) <= MAX_IDENTITY_LENGTH:
        return False
    if key.isdigit():
        return False
    if _IP_PREFIX_RE.match(key) or _PLACEHOLDER_RE.match(key):
        return False
    return bool(_BASE58_RE.match(key))


@dataclass
class ReconciliationResult:
    received: int = 0
    dropped: int = 0
    invalid_identity: int = 0
    duplicates: int = 0
    inserted: int = 0
    updated: int = 0
    migrated: int = 0
    conflicts_replaced: int = 0
    conflicts_kept: int = 0
    address_claimed: int = 0
    marked_not_seen: int = 0
    cleaned_up: int = 0
    activity: int = 0
    skipped: bool = False
    resolved_keys: Set[str] = field(default_factory=set)
    inserted_identities: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {
            'received': self.received,
            'dropped': self.dropped,
            'invalid_identity': self.invalid_identity,
            'duplicates': self.duplicates,
            'inserted': self.inserted,
            'updated': self.updated,
            'migrated': self.migrated,
            'conflicts_replaced': self.conflicts_replaced,
            'conflicts_kept': self.conflicts_kept,
            'address_claimed': self.address_claimed,
            'marked_not_seen': self.marked_not_seen,
            'cleaned_up': self.cleaned_up,
            'activity': self.activity,
            'resolved': len(self.resolved_keys),
            'skipped': self.skipped,
        }


def normalize_observations(observations: Sequence[Observation]) -> Tuple[List[Observation], int, int]:
    """
    Strip invalid identity keys and drop observations with no identifier at all.

    Returns:
        (usable observations, dropped count, invalid identity count)
    """
    usable = []
    dropped = 0
    invalid_identity = 0
    for obs in observations:
        if obs.identity_key is not None:
            key = obs.identity_key.strip() if isinstance(obs.identity_key, str) else None
            if key and is_valid_identity_key(key):
                if key != obs.identity_key:
                    obs = replace(obs, identity_key=key)
            else:
                invalid_identity += 1
                obs = obs.without_identity()
        if not obs.identity_key and not obs.ip_address:
            dropped += 1
            continue
        usable.append(obs)
    return usable, dropped, invalid_identity


def is_better_observation(candidate: Observation, current: Observation) -> bool:
    """
    Decide whether ``candidate`` should replace ``current`` for the same address.

    Priority: having an identity key, then the later version, then strictly
    more reported telemetry fields. Ties keep ``current``.
    """
    if candidate.identity_key and not current.identity_key:
        return True
    if current.identity_key and not candidate.identity_key:
        return False
    order = compare_versions(candidate.version, current.version)
    if order != 0:
        return order > 0
    return candidate.filled_fields() > current.filled_fields()


def deduplicate_observations(observations: Sequence[Observation]) -> Tuple[List[Observation], int]:
    """
    Keep one observation per IP address and one per identity key.

    Returns:
        (surviving observations in first-seen order, discarded count)
    """
    by_ip: Dict[str, Observation] = {}
    without_ip: List[Observation] = []
    for obs in observations:
        ip = obs.ip_address
        if not ip:
            without_ip.append(obs)
            continue
        current = by_ip.get(ip)
        if current is None or is_better_observation(obs, current):
            by_ip[ip] = obs

    by_identity: Dict[str, Observation] = {}
    address_only: List[Observation] = []
    for obs in list(by_ip.values()) + without_ip:
        if not obs.identity_key:
            address_only.append(obs)
            continue
        current = by_identity.get(obs.identity_key)
        if current is None or is_better_observation(obs, current):
            by_identity[obs.identity_key] = obs

    survivors = list(by_identity.values()) + address_only
    return survivors, len(observations) - len(survivors)


class ReconciliationEngine:
    """Applies one cycle's observations to the registry inside a single transaction."""

    def __init__(self, session: Session, now: Optional[datetime] = None,
                 log_activity: bool = config.ACTIVITY_LOG_ENABLED):
        self.session = session
        self.now = now or utcnow()
        self.log_activity = log_activity
        self._events: List[dict] = []
        self._by_key: Dict[str, Node] = {}
        self._by_ip: Dict[str, List[Node]] = defaultdict(list)

    def reconcile(self, observations: Sequence[Observation]) -> ReconciliationResult:
        result = ReconciliationResult(received=len(observations))
        self._events = []

        usable, result.dropped, result.invalid_identity = normalize_observations(observations)
        survivors, result.duplicates = deduplicate_observations(usable)
        if result.dropped or result.invalid_identity:
            logger.warning(f"Dropped {result.dropped} observations without identifier, "
                           f"stripped {result.invalid_identity} invalid identity keys")

        if not survivors:
            # An empty cycle is indistinguishable from a relay outage; keep the registry as is
            logger.warning("No usable observations in this cycle, registry left unchanged")
            result.skipped = True
            return result

        # Identity-keyed observations first so address-only ones see the final IP ownership
        survivors.sort(key=lambda o: 0 if o.identity_key else 1)
        batch_identities = {o.identity_key for o in survivors if o.identity_key}

        try:
            self._load_registry()
            for obs in survivors:
                if not self._resolve(obs, batch_identities, result):
                    continue
                node = self._upsert(obs, result)
                result.resolved_keys.add(node.node_key)
            self.session.flush()

            result.marked_not_seen = self._mark_not_seen(result.resolved_keys)
            result.cleaned_up = self._cleanup_shadowed_addresses()
            if self.log_activity:
                result.activity = record_activity(self.session, self._events, self.now)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Reconciliation failed, batch of {len(survivors)} observations rolled back: {e}")
            raise ReconciliationError(f"Registry write failed: {e}", observation_count=len(survivors)) from e

        logger.info(f"Reconciled {len(result.resolved_keys)} nodes: {result.inserted} new, {result.updated} updated, "
                    f"{result.migrated} migrated from IP, {result.conflicts_replaced} identity conflicts replaced, "
                    f"{result.marked_not_seen} marked not seen, {result.cleaned_up} cleaned up, "
                    f"{result.activity} activity events")
        return result

    def _load_registry(self):
        for node in self.session.query(Node).all():
            self._by_key[node.node_key] = node
            if node.ip_address:
                self._by_ip[node.ip_address].append(node)

    def _forget(self, node: Node):
        self._by_key.pop(node.node_key, None)
        if node.ip_address and node in self._by_ip.get(node.ip_address, []):
            self._by_ip[node.ip_address].remove(node)

    def _delete(self, node: Node):
        self._forget(node)
        self.session.delete(node)
        self.session.flush()

    def _resolve(self, obs: Observation, batch_identities: Set[str], result: ReconciliationResult) -> bool:
        """Resolve IP ownership for one observation. Returns False when it must not be applied."""
        ip = obs.ip_address
        if not ip:
            return True

        for existing in list(self._by_ip.get(ip, [])):
            if obs.identity_key:
                if existing.identity_key is None:
                    # IP-keyed row superseded by the identity that now reports this IP
                    logger.debug(f"Migrating {ip} to identity {obs.identity_key}")
                    self._delete(existing)
                    result.migrated += 1
                elif existing.identity_key != obs.identity_key and existing.identity_key not in batch_identities:
                    if is_later_version(obs.version, existing.version):
                        logger.info(f"Identity {existing.identity_key} at {ip} replaced by {obs.identity_key} "
                                    f"(version {existing.version} -> {obs.version})")
                        self._delete(existing)
                        result.conflicts_replaced += 1
                    else:
                        result.conflicts_kept += 1
                        return False
            elif existing.identity_key is not None:
                # Address already owned by an identity-keyed node
                result.address_claimed += 1
                return False
        return True

    def _upsert(self, obs: Observation, result: ReconciliationResult) -> Node:
        key = obs.node_key
        node = self._by_key.get(key)
        previous = capture_state(node)
        if node is None:
            node = Node(node_key=key, identity_key=obs.identity_key, created_at=self.now)
            self.session.add(node)
            self._by_key[key] = node
            result.inserted += 1
            if obs.identity_key:
                result.inserted_identities.append(obs.identity_key)
        else:
            result.updated += 1

        ip = obs.ip_address
        if ip and ip != node.ip_address:
            if node.ip_address and node in self._by_ip.get(node.ip_address, []):
                self._by_ip[node.ip_address].remove(node)
            self._by_ip[ip].append(node)
            node.ip_address = ip
        if obs.address:
            node.address = obs.address
            node.port = obs.port
        if obs.version:
            node.version = obs.version
        for name, value in obs.telemetry.as_update().items():
            setattr(node, name, value)

        node.seen_in_gossip = True
        node.updated_at = self.now
        if self.log_activity:
            self._events.extend(detect_activity(previous, node))
        return node

    def _mark_not_seen(self, resolved_keys: Set[str]) -> int:
        if not resolved_keys:
            return 0
        query = (
            self.session.query(Node)
            .filter(Node.seen_in_gossip.is_(True))
            .filter(~Node.node_key.in_(resolved_keys))
        )
        if self.log_activity:
            self._events.extend(offline_event(node) for node in query.all() if node.status in ('online', 'syncing'))
        return query.update({Node.seen_in_gossip: False, Node.updated_at: self.now}, synchronize_session='fetch')

    def _cleanup_shadowed_addresses(self) -> int:
        identity_ips = {
            ip for (ip,) in self.session.query(Node.ip_address)
            .filter(Node.identity_key.isnot(None), Node.ip_address.isnot(None))
        }
        if not identity_ips:
            return 0
        shadowed = (
            self.session.query(Node)
            .filter(Node.identity_key.is_(None), Node.ip_address.in_(identity_ips))
            .all()
        )
        for node in shadowed:
            self._forget(node)
            self.session.delete(node)
        if shadowed:
            logger.info(f"Removed {len(shadowed)} IP-keyed duplicates of identity-keyed nodes")
        return len(shadowed)


def reconcile_observations(session: Session, observations: Sequence[Observation],
                           now: Optional[datetime] = None) -> ReconciliationResult:
    """Convenience wrapper: reconcile one batch with a fresh engine."""
    return ReconciliationEngine(session, now=now).reconcile(observations)
