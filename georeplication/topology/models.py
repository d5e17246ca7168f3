"""Geo-replication data models and error taxonomy."""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SiteRole(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"
    DISASTER_RECOVERY = "disaster_recovery"


class SiteStatus(str, Enum):
    ACTIVE = "active"
    STANDBY = "standby"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    ERROR = "error"


class ConnectionStatus(str, Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class StreamKind(str, Enum):
    DATABASE = "database"
    FILE = "file"


class StreamStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    FAILED = "failed"
    STOPPED = "stopped"


class FailoverState(str, Enum):
    STABLE = "STABLE"
    EVALUATING = "EVALUATING"
    TARGET_SELECTED = "TARGET_SELECTED"
    PRE_CHECKS = "PRE_CHECKS"
    PROMOTING = "PROMOTING"
    RECONFIGURING = "RECONFIGURING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"


# States at or after which the target may already have been promoted.
POST_PROMOTION_STATES = frozenset({
    FailoverState.PROMOTING, FailoverState.RECONFIGURING, FailoverState.VERIFYING,
})


class FailoverOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------

@dataclass
class SiteCapacity:
    cpu: int = 0
    memory_gb: int = 0
    storage_gb: int = 0
    bandwidth_mbps: int = 0


@dataclass
class Site:
    id: str
    role: SiteRole
    region: str
    priority: int = 100  # lower = preferred failover target
    status: SiteStatus = SiteStatus.ACTIVE
    health_status: HealthStatus = HealthStatus.UNKNOWN
    connection_status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_health_check_at: Optional[datetime] = None
    replication_lag_ms: Optional[int] = None
    probe_latency_ms: Optional[int] = None
    zone: str = ""
    datacenter: str = ""
    location: str = ""
    db_host: str = ""
    db_port: int = 5432
    management_url: str = ""
    storage_bucket: str = ""
    capacity: SiteCapacity = field(default_factory=SiteCapacity)
    compliance_tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["role"] = self.role.value
        d["status"] = self.status.value
        d["health_status"] = self.health_status.value
        d["connection_status"] = self.connection_status.value
        d["last_health_check_at"] = (
            self.last_health_check_at.isoformat() if self.last_health_check_at else None
        )
        return d


@dataclass
class TopologyChange:
    site_id: str
    attribute: str
    old: str
    new: str
    version: int
    ts: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Streams
# ---------------------------------------------------------------------------

class StreamKey(NamedTuple):
    source_site_id: str
    target_site_id: str
    kind: StreamKind

    @property
    def display_id(self) -> str:
        suffix = "-files" if self.kind == StreamKind.FILE else ""
        return f"{self.source_site_id}-{self.target_site_id}{suffix}"


@dataclass
class ReplicationStream:
    key: StreamKey
    status: StreamStatus = StreamStatus.INITIALIZING
    lag_ms: Optional[int] = None
    bytes_transferred: int = 0
    objects_replicated: int = 0
    error_log: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    last_sync_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    channel_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.key.display_id

    @property
    def source_site_id(self) -> str:
        return self.key.source_site_id

    @property
    def target_site_id(self) -> str:
        return self.key.target_site_id

    @property
    def kind(self) -> StreamKind:
        return self.key.kind

    def log_error(self, message: str) -> None:
        self.error_log.append({"message": message, "timestamp": utcnow().isoformat()})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_site_id": self.source_site_id,
            "target_site_id": self.target_site_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "lag_ms": self.lag_ms,
            "bytes_transferred": self.bytes_transferred,
            "objects_replicated": self.objects_replicated,
            "error_count": len(self.error_log),
            "started_at": self.started_at.isoformat(),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------

@dataclass
class FailoverGroup:
    id: str
    primary_site_id: str
    ordered_candidate_site_ids: list[str]
    name: str = ""
    auto_failover: bool = False
    max_failover_duration_ms: int = 300_000

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FailoverAttempt:
    group_id: str
    trigger_reason: str
    old_primary_id: str
    candidate_site_id: Optional[str] = None
    outcome: FailoverOutcome = FailoverOutcome.IN_PROGRESS
    state: FailoverState = FailoverState.EVALUATING
    error: str = ""
    duration_ms: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    transitions: list[dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome == FailoverOutcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "group_id": self.group_id,
            "trigger_reason": self.trigger_reason,
            "old_primary_id": self.old_primary_id,
            "candidate_site_id": self.candidate_site_id,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "transitions": list(self.transitions),
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ReplicationError(Exception):
    """Base for all geo-replication errors."""


class UnknownSiteError(ReplicationError, KeyError):
    pass


class ConfigValidationError(ReplicationError):
    """Raised when settings or topology fail validation."""


class ProbeError(ReplicationError):
    """A health probe raised instead of reporting up/down. Never fatal."""

    def __init__(self, site_id: str, cause: BaseException) -> None:
        super().__init__(f"probe for {site_id} raised {type(cause).__name__}: {cause}")
        self.site_id = site_id
        self.cause = cause


class StreamEstablishError(ReplicationError):
    pass


class LagThresholdExceeded(ReplicationError):
    """Advisory: a stream's lag crossed the alert threshold."""

    def __init__(self, stream_id: str, lag_ms: int, threshold: int) -> None:
        super().__init__(f"{stream_id} lag {lag_ms}ms > {threshold}ms")
        self.stream_id = stream_id
        self.lag_ms = lag_ms
        self.threshold = threshold


class FailoverError(ReplicationError):
    pass


class PreCheckFailure(FailoverError):
    pass


class PromotionFailure(FailoverError):
    pass


class ReconfigurationFailure(FailoverError):
    pass


class VerificationFailure(FailoverError):
    pass


class ConcurrentFailoverRejected(FailoverError):
    def __init__(self, attempt: FailoverAttempt) -> None:
        super().__init__(
            f"Failover already in progress: attempt {attempt.id} ({attempt.state.value})"
        )
        self.attempt = attempt


class FailoverGroupNotFound(FailoverError, KeyError):
    pass
