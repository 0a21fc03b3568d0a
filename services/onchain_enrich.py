"""
On-chain enrichment of registry rows.

Enrichment is optional and best-effort: an ``enricher`` callable returns
partial on-chain fields for one identity key, and only those fields are merged
into the node row. Telemetry, location and bookkeeping columns stay owned by
reconciliation.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

import config
from models.node import Node, ONCHAIN_FIELDS
from utils.timeutil import utcnow

logger = logging.getLogger(__name__)

Enricher = Callable[[str], Optional[Dict[str, Any]]]


def apply_onchain_fields(session: Session, identity_key: str, fields: Dict[str, Any]) -> bool:
    """
    Merge on-chain fields into the node with ``identity_key``.

    Keys outside the on-chain field set are ignored. When only a balance is
    supplied, ``is_registered`` is derived from it (registered when > 0).

    Returns:
        True when a node was found and updated
    """
    node = session.query(Node).filter(Node.identity_key == identity_key).first()
    if node is None:
        logger.warning(f"On-chain data for unknown node {identity_key} ignored")
        return False

    ignored = sorted(set(fields) - set(ONCHAIN_FIELDS))
    if ignored:
        logger.warning(f"Ignoring non on-chain fields for {identity_key}: {ignored}")

    updates = {name: value for name, value in fields.items() if name in ONCHAIN_FIELDS}
    if 'balance' in updates and 'is_registered' not in updates and updates['balance'] is not None:
        updates['is_registered'] = updates['balance'] > 0
    for name, value in updates.items():
        setattr(node, name, value)
    if updates:
        node.updated_at = utcnow()
    session.commit()
    return True


def _enrich_single(session_factory: Callable[[], Session], identity_key: str, enricher: Enricher) -> Dict[str, Any]:
    try:
        fields = enricher(identity_key)
    except Exception as e:
        return {"success": False, "identity_key": identity_key, "error": str(e)}
    if not fields:
        return {"success": False, "identity_key": identity_key, "error": "no on-chain data"}

    session = session_factory()
    try:
        found = apply_onchain_fields(session, identity_key, fields)
        return {"success": found, "identity_key": identity_key, "error": None if found else "node not found"}
    except Exception as e:
        session.rollback()
        return {"success": False, "identity_key": identity_key, "error": str(e)}
    finally:
        session.close()


def enrich_nodes(session_factory: Callable[[], Session], identity_keys: Iterable[str], enricher: Enricher,
                 max_workers: int = config.ENRICH_MAX_WORKERS) -> Dict[str, Any]:
    """
    Enrich a set of nodes in parallel.

    Per-key failures are logged and counted, never raised.

    Returns:
        dict with total_processed, successful, failed and errors
    """
    keys = [k for k in dict.fromkeys(identity_keys) if k]
    stats = {"total_processed": 0, "successful": 0, "failed": 0, "errors": []}
    if not keys:
        return stats

    workers = max(1, min(max_workers, len(keys)))
    logger.info(f"Enriching {len(keys)} nodes with on-chain data using {workers} threads")

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_key = {
            executor.submit(_enrich_single, session_factory, key, enricher): key
            for key in keys
        }
        for future in as_completed(future_to_key):
            result = future.result()
            stats["total_processed"] += 1
            if result["success"]:
                stats["successful"] += 1
            else:
                stats["failed"] += 1
                stats["errors"].append(f"Error {result['identity_key']}: {result.get('error', 'Unknown error')}")

    if stats["failed"]:
        logger.warning(f"On-chain enrichment: {stats['successful']} ok, {stats['failed']} failed")
    else:
        logger.info(f"On-chain enrichment completed for {stats['successful']} nodes")
    return stats
