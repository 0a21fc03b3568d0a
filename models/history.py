from sqlalchemy import Column, String, Float, Integer, DateTime, JSON, UniqueConstraint, Index
from models.base import Base


class NetworkSnapshot(Base):
    """
    Network-wide aggregates for one time bucket.

    Exactly one row exists per ``bucket_key``; later writes inside the same
    bucket replace the aggregates (last write wins). ``node_snapshots`` holds
    the per-node telemetry points of that bucket.
    """
    __tablename__ = 'network_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    bucket_key = Column(String(32), unique=True, nullable=False, comment="YYYY-MM-DD-HH-MM bucket identifier")
    bucket_start = Column(DateTime, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True, comment="Time of the latest write into this bucket")
    date = Column(String(10), index=True)

    total_nodes = Column(Integer, default=0)
    online_nodes = Column(Integer, default=0)
    offline_nodes = Column(Integer, default=0)
    syncing_nodes = Column(Integer, default=0)

    avg_cpu_percent = Column(Float)
    avg_ram_percent = Column(Float)
    avg_packets_received = Column(Float)
    avg_packets_sent = Column(Float)
    avg_active_streams = Column(Float)
    avg_uptime = Column(Float)
    avg_storage_used = Column(Float)
    total_storage_capacity = Column(Float)
    total_storage_used = Column(Float)
    total_credits = Column(Float)

    version_distribution = Column(JSON)
    countries = Column(Integer, default=0)
    cities = Column(Integer, default=0)

    health_availability = Column(Integer, default=0)
    health_version = Column(Integer, default=0)
    health_distribution = Column(Integer, default=0)
    health_score = Column(Integer, default=0)

    node_snapshots = Column(JSON)

    def to_dict(self, include_nodes=False):
        data = {
            'bucket_key': self.bucket_key,
            'bucket_start': self.bucket_start.isoformat() if self.bucket_start else None,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'date': self.date,
            'total_nodes': self.total_nodes,
            'online_nodes': self.online_nodes,
            'offline_nodes': self.offline_nodes,
            'syncing_nodes': self.syncing_nodes,
            'avg_cpu_percent': self.avg_cpu_percent,
            'avg_ram_percent': self.avg_ram_percent,
            'avg_packets_received': self.avg_packets_received,
            'avg_packets_sent': self.avg_packets_sent,
            'avg_active_streams': self.avg_active_streams,
            'avg_uptime': self.avg_uptime,
            'avg_storage_used': self.avg_storage_used,
            'total_storage_capacity': self.total_storage_capacity,
            'total_storage_used': self.total_storage_used,
            'total_credits': self.total_credits,
            'version_distribution': self.version_distribution or {},
            'countries': self.countries,
            'cities': self.cities,
            'health_availability': self.health_availability,
            'health_version': self.health_version,
            'health_distribution': self.health_distribution,
            'health_score': self.health_score,
        }
        if include_nodes:
            data['node_snapshots'] = self.node_snapshots or []
        return data

    def __repr__(self):
        return f"<NetworkSnapshot(bucket_key='{self.bucket_key}', total_nodes={self.total_nodes})>"


class RegionSnapshot(Base):
    """
    Pre-aggregated metrics for one country in one time bucket.

    Written at snapshot time so region history reads are a plain indexed query.
    ``node_credits`` keeps per-node credit values for drift-free credit deltas.
    """
    __tablename__ = 'region_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    bucket_key = Column(String(32), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    date = Column(String(10), index=True)

    country = Column(String(128), nullable=False)
    country_code = Column(String(8))

    total_nodes = Column(Integer, default=0)
    online_nodes = Column(Integer, default=0)
    offline_nodes = Column(Integer, default=0)
    syncing_nodes = Column(Integer, default=0)

    avg_cpu_percent = Column(Float)
    avg_ram_percent = Column(Float)
    total_packets_received = Column(Float, default=0)
    total_packets_sent = Column(Float, default=0)
    total_active_streams = Column(Integer, default=0)
    total_credits = Column(Float, default=0)
    avg_uptime = Column(Float)
    avg_packet_rate = Column(Float)

    cities = Column(Integer, default=0)
    version_distribution = Column(JSON)

    health_availability = Column(Integer, default=0)
    health_version = Column(Integer, default=0)
    health_distribution = Column(Integer, default=0)
    health_score = Column(Integer, default=0)

    node_credits = Column(JSON)

    __table_args__ = (
        UniqueConstraint('bucket_key', 'country', name='uq_region_bucket_country'),
        Index('idx_region_country_ts', 'country', 'timestamp'),
        Index('idx_region_country_code_ts', 'country_code', 'timestamp'),
    )

    def to_dict(self):
        return {
            'bucket_key': self.bucket_key,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'date': self.date,
            'country': self.country,
            'country_code': self.country_code,
            'total_nodes': self.total_nodes,
            'online_nodes': self.online_nodes,
            'offline_nodes': self.offline_nodes,
            'syncing_nodes': self.syncing_nodes,
            'avg_cpu_percent': self.avg_cpu_percent,
            'avg_ram_percent': self.avg_ram_percent,
            'total_packets_received': self.total_packets_received,
            'total_packets_sent': self.total_packets_sent,
            'total_active_streams': self.total_active_streams,
            'total_credits': self.total_credits,
            'avg_uptime': self.avg_uptime,
            'avg_packet_rate': self.avg_packet_rate,
            'cities': self.cities,
            'version_distribution': self.version_distribution or {},
            'health_availability': self.health_availability,
            'health_version': self.health_version,
            'health_distribution': self.health_distribution,
            'health_score': self.health_score,
            'node_credits': self.node_credits or [],
        }

    def __repr__(self):
        return f"<RegionSnapshot(bucket_key='{self.bucket_key}', country='{self.country}')>"
