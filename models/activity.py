from sqlalchemy import Column, String, Integer, DateTime, JSON, Index
from models.base import Base
from utils.timeutil import utcnow


class ActivityLog(Base):
    """
    One node event detected while reconciling a refresh cycle.

    Events are written in the same transaction as the registry changes that
    produced them, newest first on read.
    """
    __tablename__ = 'activity_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    node_key = Column(String(128), nullable=False)
    identity_key = Column(String(64))
    address = Column(String(255))
    type = Column(String(32), nullable=False, comment="new_node, node_online, node_offline, node_syncing, "
                                                      "status_change, credits_earned, packets_earned, streams_active")
    message = Column(String(512), nullable=False)
    country_code = Column(String(8))
    location = Column(String(255))
    data = Column(JSON)

    __table_args__ = (
        Index('idx_activity_node_ts', 'node_key', 'timestamp'),
        Index('idx_activity_country_ts', 'country_code', 'timestamp'),
        Index('idx_activity_type_ts', 'type', 'timestamp'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'node_key': self.node_key,
            'identity_key': self.identity_key,
            'address': self.address,
            'type': self.type,
            'message': self.message,
            'country_code': self.country_code,
            'location': self.location,
            'data': self.data or {},
        }

    def __repr__(self):
        return f"<ActivityLog(type='{self.type}', node_key='{self.node_key}')>"
