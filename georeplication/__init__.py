"""Geographic replication & failover controller."""
from .manager import GeoReplicationManager, setup_logging

__all__ = ["GeoReplicationManager", "setup_logging"]
