"""Site health probing and replication lag measurement."""
from .lag import LagTracker
from .monitor import HealthMonitor, NetworkProber, SiteHealth, SiteProber

__all__ = ["HealthMonitor", "LagTracker", "NetworkProber", "SiteHealth", "SiteProber"]
