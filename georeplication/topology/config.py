"""
Geo-replication controller — configuration.

Settings load from environment variables (and an optional .env) with
sensible defaults; the static topology (sites + failover groups) loads
from YAML.
"""
from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import (
    ConfigValidationError, FailoverGroup, Site, SiteCapacity, SiteRole, SiteStatus,
)

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ReplicationConfig:
    """Immutable configuration for the replication controller."""

    # Lag
    max_lag_ms: int = field(default_factory=lambda: int(os.getenv("MAX_REPLICATION_LAG_MS", "5000")))
    lag_alert_threshold_ms: int = field(
        default_factory=lambda: int(os.getenv("REPLICATION_LAG_ALERT_THRESHOLD_MS", "10000")))

    # Timing
    health_check_interval_s: float = field(
        default_factory=lambda: float(os.getenv("HEALTH_CHECK_INTERVAL_SECONDS", "30")))
    lag_check_interval_s: float = field(
        default_factory=lambda: float(os.getenv("LAG_CHECK_INTERVAL_SECONDS", "30")))
    metrics_interval_s: float = field(
        default_factory=lambda: float(os.getenv("METRICS_INTERVAL_SECONDS", "60")))
    file_sync_interval_s: float = field(
        default_factory=lambda: float(os.getenv("FILE_SYNC_INTERVAL_SECONDS", "300")))
    probe_timeout_s: float = field(default_factory=lambda: float(os.getenv("PROBE_TIMEOUT_SECONDS", "5")))
    storage_call_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("STORAGE_CALL_TIMEOUT_SECONDS", "30")))
    max_concurrent_probes: int = field(default_factory=lambda: int(os.getenv("MAX_CONCURRENT_PROBES", "8")))
    shutdown_grace_s: float = field(default_factory=lambda: float(os.getenv("SHUTDOWN_GRACE_SECONDS", "60")))

    # Failover policy
    automatic_failover: bool = field(default_factory=lambda: _env_bool("AUTOMATIC_FAILOVER"))
    failover_timeout_ms: int = field(default_factory=lambda: int(os.getenv("FAILOVER_TIMEOUT_MS", "300000")))
    consistency_check: bool = field(default_factory=lambda: _env_bool("FAILOVER_CONSISTENCY_CHECK"))
    rollback_on_failure: bool = field(default_factory=lambda: _env_bool("FAILOVER_ROLLBACK_ON_FAILURE"))
    default_failover_group: str = field(default_factory=lambda: os.getenv("DEFAULT_FAILOVER_GROUP", ""))

    # Metrics / reports
    metrics_retention_hours: int = field(default_factory=lambda: int(os.getenv("METRICS_RETENTION_HOURS", "24")))
    report_dir: str = field(default_factory=lambda: os.getenv("REPORT_DIR", "reports"))

    # Status endpoint
    status_host: str = field(default_factory=lambda: os.getenv("STATUS_HOST", "0.0.0.0"))
    status_port: int = field(default_factory=lambda: int(os.getenv("STATUS_PORT", "8087")))
    status_api_token: str = field(default_factory=lambda: os.getenv("GEOREPL_API_TOKEN", ""))

    # Site agents (storage primitive)
    agent_api_token: str = field(default_factory=lambda: os.getenv("SITE_AGENT_TOKEN", ""))

    # Mission Control + Telegram alerts
    mc_api_url: str = field(default_factory=lambda: os.getenv("MC_API_URL", ""))
    mc_api_token: str = field(default_factory=lambda: os.getenv("MC_API_TOKEN", ""))
    telegram_bot_token: str = field(default_factory=lambda: os.getenv("TELEGRAM_BOT_TOKEN", ""))
    telegram_chat_id: str = field(default_factory=lambda: os.getenv("TELEGRAM_CHAT_ID", ""))
    agent_id: str = field(default_factory=lambda: os.getenv("GEOREPL_AGENT_ID", "georepl"))

    # S3 (file replication)
    s3_region: str = field(default_factory=lambda: os.getenv("S3_REGION", "us-east-1"))
    s3_access_key: str = field(default_factory=lambda: os.getenv("S3_ACCESS_KEY", ""))
    s3_secret_key: str = field(default_factory=lambda: os.getenv("S3_SECRET_KEY", ""))
    s3_endpoint_url: str = field(default_factory=lambda: os.getenv("S3_ENDPOINT_URL", ""))

    # Logging
    log_dir: str = field(default_factory=lambda: os.getenv("LOG_DIR", "logs"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_retention_days: int = field(default_factory=lambda: int(os.getenv("LOG_RETENTION_DAYS", "7")))

    def __post_init__(self) -> None:
        validate_settings(self)

    @classmethod
    def from_yaml(cls, path: str) -> ReplicationConfig:
        """Environment defaults overlaid with the ``settings:`` section of *path*."""
        with open(path, "r") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        settings = raw.get("settings", {}) or {}
        known = {fld.name for fld in dataclasses.fields(cls)}
        unknown = set(settings) - known
        if unknown:
            raise ConfigValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return cls(**settings)


def validate_settings(cfg: ReplicationConfig) -> None:
    positive = (
        "max_lag_ms", "lag_alert_threshold_ms", "health_check_interval_s", "lag_check_interval_s",
        "metrics_interval_s", "file_sync_interval_s", "probe_timeout_s", "storage_call_timeout_s",
        "max_concurrent_probes", "failover_timeout_ms", "metrics_retention_hours",
    )
    for name in positive:
        if getattr(cfg, name) <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {getattr(cfg, name)}")
    if cfg.shutdown_grace_s < 0:
        raise ConfigValidationError("shutdown_grace_s must not be negative")
    if not 0 < cfg.status_port < 65536:
        raise ConfigValidationError(f"status_port out of range: {cfg.status_port}")


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------

@dataclass
class Topology:
    sites: list[Site]
    failover_groups: list[FailoverGroup]


def _site_from_dict(raw: dict[str, Any]) -> Site:
    try:
        capacity = SiteCapacity(**(raw.get("capacity") or {}))
        return Site(
            id=raw["id"],
            role=SiteRole(raw["role"]),
            region=raw["region"],
            priority=int(raw.get("priority", 100)),
            status=SiteStatus(raw.get("status", "active")),
            zone=raw.get("zone", ""),
            datacenter=raw.get("datacenter", ""),
            location=raw.get("location", ""),
            db_host=raw.get("db_host", ""),
            db_port=int(raw.get("db_port", 5432)),
            management_url=raw.get("management_url", ""),
            storage_bucket=raw.get("storage_bucket", ""),
            capacity=capacity,
            compliance_tags=list(raw.get("compliance_tags", [])),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid site entry {raw!r}: {e}") from e


def _group_from_dict(raw: dict[str, Any], cfg: ReplicationConfig) -> FailoverGroup:
    try:
        return FailoverGroup(
            id=raw["id"],
            name=raw.get("name", raw["id"]),
            primary_site_id=raw["primary_site_id"],
            ordered_candidate_site_ids=list(raw["ordered_candidate_site_ids"]),
            auto_failover=bool(raw.get("auto_failover", cfg.automatic_failover)),
            max_failover_duration_ms=int(raw.get("max_failover_duration_ms", cfg.failover_timeout_ms)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid failover group entry {raw!r}: {e}") from e


def load_topology(path: str, cfg: ReplicationConfig) -> Topology:
    with open(path, "r") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    topology = Topology(
        sites=[_site_from_dict(s) for s in raw.get("sites", [])],
        failover_groups=[_group_from_dict(g, cfg) for g in raw.get("failover_groups", [])],
    )
    validate_topology(topology)
    return topology


def validate_topology(topology: Topology) -> None:
    ids = [s.id for s in topology.sites]
    if len(ids) != len(set(ids)):
        raise ConfigValidationError("Duplicate site ids in topology")
    primaries = [s.id for s in topology.sites if s.role == SiteRole.PRIMARY]
    if len(primaries) != 1:
        raise ConfigValidationError(f"Topology needs exactly one primary, found {len(primaries)}")
    known = set(ids)
    for group in topology.failover_groups:
        refs = [group.primary_site_id, *group.ordered_candidate_site_ids]
        missing = [r for r in refs if r not in known]
        if missing:
            raise ConfigValidationError(f"Failover group {group.id} references unknown sites: {missing}")
