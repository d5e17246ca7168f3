"""Replication events and alert routing."""
from .router import (
    FAILOVER_COMPLETED,
    FAILOVER_FAILED,
    FAILOVER_REQUIRED,
    FAILOVER_ROLLED_BACK,
    REPLICATION_LAG_ALERT,
    Alert,
    AlertRouter,
    EventBus,
    ReplicationEvent,
    Severity,
)

__all__ = [
    "FAILOVER_COMPLETED",
    "FAILOVER_FAILED",
    "FAILOVER_REQUIRED",
    "FAILOVER_ROLLED_BACK",
    "REPLICATION_LAG_ALERT",
    "Alert",
    "AlertRouter",
    "EventBus",
    "ReplicationEvent",
    "Severity",
]
