"""
Typed gossip observations.

An Observation is one relay's report of one node in one refresh cycle. It is
never persisted directly; reconciliation merges it into the ``nodes`` table.
"""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import Dict, Any, Optional


@dataclass
class NodeTelemetry:
    """Partial telemetry and metadata payload; ``None`` means "not reported"."""
    status: Optional[str] = None
    cpu_percent: Optional[float] = None
    ram_used: Optional[int] = None
    ram_total: Optional[int] = None
    packets_sent: Optional[float] = None
    packets_received: Optional[float] = None
    active_streams: Optional[int] = None
    uptime: Optional[int] = None
    storage_capacity: Optional[int] = None
    storage_used: Optional[int] = None
    storage_committed: Optional[int] = None
    credits: Optional[float] = None
    last_seen: Optional[datetime] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    is_public: Optional[bool] = None
    rpc_port: Optional[int] = None
    peer_count: Optional[int] = None

    def as_update(self) -> Dict[str, Any]:
        """Fields that were actually reported, ready to be set on a registry row."""
        return {f.name: getattr(self, f.name) for f in fields(self) if _is_filled(getattr(self, f.name))}

    def filled_count(self) -> int:
        return len(self.as_update())

    def has_location(self) -> bool:
        return self.lat is not None and self.lon is not None


@dataclass
class Observation:
    identity_key: Optional[str] = None
    address: Optional[str] = None
    version: Optional[str] = None
    telemetry: NodeTelemetry = field(default_factory=NodeTelemetry)
    relay: Optional[str] = None

    @property
    def ip_address(self) -> Optional[str]:
        if not self.address:
            return None
        host = self.address.rsplit(':', 1)[0] if ':' in self.address else self.address
        return host.strip() or None

    @property
    def port(self) -> Optional[int]:
        if not self.address or ':' not in self.address:
            return None
        try:
            return int(self.address.rsplit(':', 1)[1])
        except ValueError:
            return None

    @property
    def node_key(self) -> Optional[str]:
        return self.identity_key or self.ip_address

    def filled_fields(self) -> int:
        """Number of non-empty telemetry fields, used to break ties between duplicate reports."""
        return self.telemetry.filled_count()

    def without_identity(self) -> 'Observation':
        return replace(self, identity_key=None)


def _is_filled(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True
