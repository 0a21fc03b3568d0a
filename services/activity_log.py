"""
Node activity detection.

Each reconciled node is compared with its registry state from before the
cycle. New nodes, status transitions, credit gains, packet growth and
additional active streams become ``activity_log`` rows, and nodes swept as
not seen in gossip are logged as going offline.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.activity import ActivityLog
from models.node import Node
from services.db import SessionLocal
from services.snapshot_engine import effective_status

logger = logging.getLogger(__name__)

ACTIVITY_TYPES = (
    'new_node', 'node_online', 'node_offline', 'node_syncing', 'status_change',
    'credits_earned', 'packets_earned', 'streams_active',
)
DEFAULT_ACTIVITY_LIMIT = 50

# Registry values compared between cycles
TRACKED_FIELDS = ('status', 'credits', 'packets_received', 'packets_sent', 'active_streams')


def capture_state(node: Optional[Node]) -> Optional[Dict[str, Any]]:
    """Snapshot of the tracked values of a registry row, with its canonical status."""
    if node is None:
        return None
    state = {name: getattr(node, name) for name in TRACKED_FIELDS}
    state['status'] = effective_status(node)
    return state


def _label(node: Node) -> str:
    if node.address:
        return node.address
    return f"{node.node_key[:8]}..."


def _location(node: Node) -> str:
    parts = [p for p in (node.city, node.country) if p]
    return ', '.join(parts) if parts else 'Unknown'


def _event(node: Node, activity_type: str, message: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'node_key': node.node_key,
        'identity_key': node.identity_key,
        'address': node.address,
        'type': activity_type,
        'message': message,
        'country_code': node.country_code or '??',
        'location': _location(node),
        'data': data,
    }


def detect_activity(previous: Optional[Dict[str, Any]], node: Node) -> List[Dict[str, Any]]:
    """
    Events for one node after it has been updated from gossip.

    Args:
        previous: state captured with ``capture_state`` before the update,
            or None for a node that was just inserted
        node: the updated registry row

    Returns:
        list of event dicts ready to become ActivityLog rows
    """
    label = _label(node)
    status = effective_status(node)
    if previous is None:
        return [_event(node, 'new_node', f"{label} discovered ({_location(node)})", {'status': status})]

    events = []
    if previous['status'] != status:
        if status == 'online':
            activity_type, message = 'node_online', f"{label} came online ({_location(node)})"
        elif status == 'offline':
            activity_type, message = 'node_offline', f"{label} went offline"
        elif status == 'syncing':
            activity_type, message = 'node_syncing', f"{label} is now syncing"
        else:
            activity_type, message = 'status_change', f"{label} changed status to {status}"
        events.append(_event(node, activity_type, message, {'old_status': previous['status'], 'new_status': status}))

    if previous['credits'] is not None and node.credits is not None and node.credits > previous['credits']:
        earned = node.credits - previous['credits']
        events.append(_event(node, 'credits_earned', f"{label} earned {earned:.2f} credits",
                             {'earned': earned, 'total': node.credits}))

    new_rx, old_rx = node.packets_received or 0, previous['packets_received'] or 0
    new_tx, old_tx = node.packets_sent or 0, previous['packets_sent'] or 0
    if new_rx > old_rx or new_tx > old_tx:
        # Counter resets show up as negative deltas; only growth is reported
        rx_earned, tx_earned = max(new_rx - old_rx, 0), max(new_tx - old_tx, 0)
        events.append(_event(node, 'packets_earned', f"{label} processed {rx_earned + tx_earned:g} packets",
                             {'rx_earned': rx_earned, 'tx_earned': tx_earned, 'total_rx': new_rx, 'total_tx': new_tx}))

    old_streams = previous['active_streams']
    if old_streams is not None and node.active_streams is not None and node.active_streams > old_streams:
        increased = node.active_streams - old_streams
        events.append(_event(node, 'streams_active',
                             f"{label} active streams increased by {increased} (Total: {node.active_streams})",
                             {'increased': increased, 'total': node.active_streams}))
    return events


def offline_event(node: Node) -> Dict[str, Any]:
    """Event for a node that dropped out of gossip while not already offline."""
    return _event(node, 'node_offline', f"{_label(node)} went offline",
                  {'old_status': effective_status(node), 'new_status': 'offline', 'reason': 'not_seen_in_gossip'})


def record_activity(session: Session, events: List[Dict[str, Any]], timestamp=None) -> int:
    """Add events to the session; the caller owns the transaction."""
    for event in events:
        session.add(ActivityLog(timestamp=timestamp, **event) if timestamp else ActivityLog(**event))
    return len(events)


def get_activity_logs(session: Session, node_key: Optional[str] = None, country_code: Optional[str] = None,
                      activity_type: Optional[str] = None, skip: int = 0,
                      limit: int = DEFAULT_ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
    """
    Activity events, newest first.

    Args:
        session: database session
        node_key: filter by node key or identity key
        country_code: filter by ISO country code
        activity_type: filter by event type
        skip: number of events to skip
        limit: maximum number of events

    Returns:
        list of event dicts
    """
    query = session.query(ActivityLog)
    if node_key:
        query = query.filter((ActivityLog.node_key == node_key) | (ActivityLog.identity_key == node_key))
    if country_code:
        query = query.filter(ActivityLog.country_code == country_code)
    if activity_type:
        query = query.filter(ActivityLog.type == activity_type)
    rows = (
        query.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return [row.to_dict() for row in rows]


def export_activity_json(out_path=None, node_key=None, activity_type=None, limit=DEFAULT_ACTIVITY_LIMIT):
    """
    Export recent activity events as JSON string or to a file.
    Args:
        out_path (str|None): Path to the output JSON file. If None, returns JSON string.
    Returns:
        str: JSON string of the events.
    """
    session = SessionLocal()
    try:
        result = get_activity_logs(session, node_key=node_key, activity_type=activity_type, limit=limit)
        js = json.dumps(result, ensure_ascii=False, indent=2)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(js)
            logger.info(f"Exported {len(result)} activity events to {out_path}")
        return js
    except Exception as e:
        logger.error(f"Failed to export activity: {e}")
        raise
    finally:
        session.close()
