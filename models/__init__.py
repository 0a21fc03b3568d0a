from .base import Base
from .node import Node
from .history import NetworkSnapshot, RegionSnapshot
from .activity import ActivityLog
from .observation import Observation, NodeTelemetry

__all__ = ['Base', 'Node', 'NetworkSnapshot', 'RegionSnapshot', 'ActivityLog', 'Observation', 'NodeTelemetry']
