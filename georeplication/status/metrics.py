"""Metrics and reporting — status snapshot, periodic stream samples, JSON reports."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
import tempfile
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from ..failover.orchestrator import FailoverOrchestrator
from ..sync.streams import ReplicationStreamManager
from ..topology.config import ReplicationConfig
from ..topology.models import HealthStatus, StreamKind, StreamStatus, TopologyChange, utcnow
from ..topology.registry import SiteRegistry

logger = logging.getLogger("georepl.metrics")

REPORT_SAMPLES = 100
_SECRET_FIELDS = frozenset({
    "status_api_token", "agent_api_token", "mc_api_token", "telegram_bot_token",
    "s3_access_key", "s3_secret_key",
})


class MetricsReporter:
    def __init__(
        self,
        registry: SiteRegistry,
        streams: ReplicationStreamManager,
        orchestrator: FailoverOrchestrator,
        config: ReplicationConfig,
    ) -> None:
        self._registry = registry
        self._streams = streams
        self._orchestrator = orchestrator
        self._config = config
        self._changes: deque[TopologyChange] = deque(maxlen=50)
        self._samples: list[dict[str, Any]] = []
        registry.add_listener(self.on_topology_change)

    def on_topology_change(self, change: TopologyChange) -> None:
        self._changes.append(change)

    @property
    def samples(self) -> list[dict[str, Any]]:
        return list(self._samples)

    def snapshot(self) -> dict[str, Any]:
        """Current replication status. Reads only."""
        sites = self._registry.all()
        streams = self._streams.streams()
        lags = [
            s.lag_ms for s in streams
            if s.status == StreamStatus.ACTIVE and s.kind == StreamKind.DATABASE and s.lag_ms is not None
        ]
        last = self._orchestrator.last_attempt
        return {
            "timestamp": utcnow().isoformat(),
            "primary_site": self._registry.primary_id(),
            "topology_version": self._registry.version,
            "failover_state": self._orchestrator.state.value,
            "failover_in_progress": self._orchestrator.in_progress,
            "sites": [s.to_dict() for s in sites],
            "streams": [s.to_dict() for s in streams],
            "failover_groups": [g.to_dict() for g in self._orchestrator.groups()],
            "last_failover": last.to_dict() if last else None,
            "recent_topology_changes": [
                {
                    "site_id": c.site_id,
                    "attribute": c.attribute,
                    "old": c.old,
                    "new": c.new,
                    "version": c.version,
                    "ts": c.ts.isoformat(),
                }
                for c in self._changes
            ],
            "summary": {
                "total_sites": len(sites),
                "healthy_sites": sum(s.health_status == HealthStatus.HEALTHY for s in sites),
                "active_streams": sum(s.status == StreamStatus.ACTIVE for s in streams),
                "average_lag_ms": round(sum(lags) / len(lags)) if lags else 0,
            },
        }

    def collect(self, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Sample every stream once and prune samples past the retention window."""
        now = now or utcnow()
        batch = [
            {
                "timestamp": now.isoformat(),
                "stream_id": s.id,
                "status": s.status.value,
                "lag_ms": s.lag_ms,
                "bytes_transferred": s.bytes_transferred,
                "objects_replicated": s.objects_replicated,
                "error_count": len(s.error_log),
                "uptime_s": int((now - s.started_at).total_seconds()),
            }
            for s in self._streams.streams()
        ]
        self._samples.extend(batch)

        cutoff = now - timedelta(hours=self._config.metrics_retention_hours)
        before = len(self._samples)
        self._samples = [m for m in self._samples if datetime.fromisoformat(m["timestamp"]) >= cutoff]
        if before != len(self._samples):
            logger.debug("Pruned %d metric samples older than %s", before - len(self._samples), cutoff)
        return batch

    def configuration(self) -> dict[str, Any]:
        return {
            k: v for k, v in dataclasses.asdict(self._config).items() if k not in _SECRET_FIELDS
        }

    async def generate_report(self, report_dir: Optional[str] = None) -> Path:
        """Write a JSON report and return its path."""
        directory = Path(report_dir or self._config.report_dir)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path = directory / f"replication_report_{stamp}.json"
        report = {
            "generated_at": utcnow().isoformat(),
            "status": self.snapshot(),
            "configuration": self.configuration(),
            "metrics": self._samples[-REPORT_SAMPLES:],
        }
        body = json.dumps(report, default=str, indent=2).encode()
        await asyncio.to_thread(_atomic_write, path, body)
        logger.info("Replication report written to %s", path)
        return path


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        fd = -1
        os.replace(tmp, path)
    except BaseException:
        if fd >= 0:
            try:
                os.close(fd)
            except OSError:
                pass
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
