from sqlalchemy import Column, String, Float, Integer, BigInteger, Boolean, DateTime, Index
from models.base import Base
from utils.timeutil import utcnow

# Columns written by reconciliation from gossip observations
TELEMETRY_FIELDS = (
    'status', 'cpu_percent', 'ram_used', 'ram_total', 'packets_sent', 'packets_received',
    'active_streams', 'uptime', 'storage_capacity', 'storage_used', 'storage_committed',
    'credits', 'last_seen',
)
METADATA_FIELDS = (
    'lat', 'lon', 'city', 'country', 'country_code', 'is_public', 'rpc_port', 'peer_count',
)
# Columns owned by on-chain enrichment; reconciliation never touches them
ONCHAIN_FIELDS = (
    'balance', 'is_registered', 'manager_address', 'registry_address', 'onchain_error',
)


class Node(Base):
    """
    Storage node registry row.

    One row per network participant, keyed by ``node_key``: the identity key
    (public key) when known, otherwise the host part of the gossip address.
    Rows are updated every refresh cycle they are observed in and flagged with
    ``seen_in_gossip = False`` when a cycle completes without them.
    """
    __tablename__ = 'nodes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    node_key = Column(String(128), unique=True, nullable=False, comment="Identity key or IP address")
    identity_key = Column(String(64), unique=True, nullable=True, comment="Node public key")
    address = Column(String(255), comment="Gossip address ip:port")
    ip_address = Column(String(64), index=True)
    port = Column(Integer)

    version = Column(String(64), index=True)

    # Telemetry (refreshed every cycle)
    status = Column(String(16), index=True, comment="online, offline or syncing")
    cpu_percent = Column(Float)
    ram_used = Column(BigInteger)
    ram_total = Column(BigInteger)
    packets_sent = Column(Float)
    packets_received = Column(Float)
    active_streams = Column(Integer)
    uptime = Column(BigInteger, comment="Uptime in seconds")
    storage_capacity = Column(BigInteger)
    storage_used = Column(BigInteger)
    storage_committed = Column(BigInteger)
    credits = Column(Float)
    last_seen = Column(DateTime)

    # Location and reachability
    lat = Column(Float)
    lon = Column(Float)
    city = Column(String(128))
    country = Column(String(128), index=True)
    country_code = Column(String(8))
    is_public = Column(Boolean)
    rpc_port = Column(Integer)
    peer_count = Column(Integer)

    # On-chain data
    balance = Column(Float)
    is_registered = Column(Boolean, index=True)
    manager_address = Column(String(64))
    registry_address = Column(String(64))
    onchain_error = Column(String(255))

    seen_in_gossip = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_nodes_seen_status', 'seen_in_gossip', 'status'),
    )

    def to_dict(self):
        """Convert node row to a plain dictionary for API responses and exports."""
        return {
            'node_key': self.node_key,
            'identity_key': self.identity_key,
            'address': self.address,
            'ip_address': self.ip_address,
            'port': self.port,
            'version': self.version,
            'status': self.status,
            'cpu_percent': self.cpu_percent,
            'ram_used': self.ram_used,
            'ram_total': self.ram_total,
            'packets_sent': self.packets_sent,
            'packets_received': self.packets_received,
            'active_streams': self.active_streams,
            'uptime': self.uptime,
            'storage_capacity': self.storage_capacity,
            'storage_used': self.storage_used,
            'storage_committed': self.storage_committed,
            'credits': self.credits,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None,
            'lat': self.lat,
            'lon': self.lon,
            'city': self.city,
            'country': self.country,
            'country_code': self.country_code,
            'is_public': self.is_public,
            'rpc_port': self.rpc_port,
            'peer_count': self.peer_count,
            'balance': self.balance,
            'is_registered': self.is_registered,
            'manager_address': self.manager_address,
            'registry_address': self.registry_address,
            'seen_in_gossip': self.seen_in_gossip,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Node(node_key='{self.node_key}', address='{self.address}', status='{self.status}')>"
