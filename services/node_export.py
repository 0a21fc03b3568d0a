import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.node import Node
from services.db import SessionLocal
from services.snapshot_engine import effective_status

logger = logging.getLogger(__name__)


def node_to_dict(node: Node) -> Dict[str, Any]:
    """Registry row as exported to readers, with the canonical status applied."""
    data = node.to_dict()
    data['reported_status'] = node.status
    data['status'] = effective_status(node)
    return data


def get_all_nodes(session: Session, seen_only: bool = False) -> List[Node]:
    """Full current registry read."""
    query = session.query(Node)
    if seen_only:
        query = query.filter(Node.seen_in_gossip.is_(True))
    return query.order_by(Node.node_key).all()


def get_node(session: Session, identity_key: str) -> Optional[Node]:
    """Look a node up by identity key (falling back to node key, then case-insensitively)."""
    node = session.query(Node).filter(Node.identity_key == identity_key).first()
    if node is None:
        node = session.query(Node).filter(Node.node_key == identity_key).first()
    if node is None:
        node = session.query(Node).filter(func.lower(Node.identity_key) == identity_key.lower()).first()
    return node


def export_nodes_json(out_path=None):
    """
    Export all nodes from the database as JSON string or to a file.
    Args:
        out_path (str|None): Path to the output JSON file. If None, returns JSON string.
    Returns:
        str: JSON string of all nodes.
    """
    session = SessionLocal()
    try:
        result = [node_to_dict(node) for node in get_all_nodes(session)]
        js = json.dumps(result, ensure_ascii=False, indent=2)
        if out_path:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(js)
            logger.info(f"Exported {len(result)} nodes to {out_path}")
        return js
    except Exception as e:
        logger.error(f"Failed to export nodes: {e}")
        raise
    finally:
        session.close()
