"""Topology — sites, failover groups, the site registry and configuration."""

from .config import ReplicationConfig, Topology, load_topology, validate_topology
from .models import (
    FailoverAttempt,
    FailoverGroup,
    FailoverOutcome,
    FailoverState,
    HealthStatus,
    ReplicationStream,
    Site,
    SiteRole,
    SiteStatus,
    StreamKey,
    StreamKind,
    StreamStatus,
)
from .registry import SiteRegistry

__all__ = [
    "ReplicationConfig",
    "Topology",
    "load_topology",
    "validate_topology",
    "FailoverAttempt",
    "FailoverGroup",
    "FailoverOutcome",
    "FailoverState",
    "HealthStatus",
    "ReplicationStream",
    "Site",
    "SiteRole",
    "SiteStatus",
    "StreamKey",
    "StreamKind",
    "StreamStatus",
    "SiteRegistry",
]
