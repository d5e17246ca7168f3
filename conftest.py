"""
Shared pytest fixtures for the geo-replication tests.
In-memory storage, file-transfer and probe fakes — no real sites needed.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from georeplication.alerts.router import EventBus
from georeplication.failover.orchestrator import FailoverOrchestrator
from georeplication.healthcheck.monitor import HealthMonitor
from georeplication.sync.collaborators import ChangedObject
from georeplication.sync.streams import ReplicationStreamManager
from georeplication.topology.config import ReplicationConfig
from georeplication.topology.models import (
    ConnectionStatus, FailoverGroup, HealthStatus, Site, SiteRole,
)
from georeplication.topology.registry import SiteRegistry


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeStorage:
    """Storage replication primitive backed by dicts."""

    def __init__(self) -> None:
        self.channels: dict[str, tuple[str, str]] = {}
        self.calls: list[tuple] = []
        self.dropped: list[str] = []
        self.promoted: list[str] = []
        self.lag: dict[str, int] = {}
        self.lag_errors: dict[str, Exception] = {}
        self.fail_targets: set[str] = set()
        self.promote_error: Optional[Exception] = None
        self.promote_gate: Optional[asyncio.Event] = None
        self.consistent = True
        self.create_delay = 0.0

    async def create_replication_channel(self, source_site_id: str, target_site_id: str) -> str:
        self.calls.append(("create", source_site_id, target_site_id))
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if target_site_id in self.fail_targets:
            raise RuntimeError(f"cannot reach {target_site_id}")
        channel_id = f"{source_site_id}->{target_site_id}"
        self.channels[channel_id] = (source_site_id, target_site_id)
        return channel_id

    async def drop_replication_channel(self, channel_id: str) -> None:
        self.calls.append(("drop", channel_id))
        self.dropped.append(channel_id)
        self.channels.pop(channel_id, None)

    async def measure_lag(self, channel_id: str) -> int:
        if channel_id in self.lag_errors:
            raise self.lag_errors[channel_id]
        return self.lag.get(channel_id, 100)

    async def promote(self, site_id: str) -> None:
        self.calls.append(("promote", site_id))
        if self.promote_gate is not None:
            await self.promote_gate.wait()
        if self.promote_error is not None:
            raise self.promote_error
        self.promoted.append(site_id)

    async def verify_consistency(self, site_id: str) -> bool:
        self.calls.append(("verify_consistency", site_id))
        return self.consistent


class FakeFileTransfer:
    def __init__(self) -> None:
        self.changes: list[ChangedObject] = []
        self.results: dict[str, object] = {}  # key -> bool or Exception
        self.since_seen: list = []
        self.copied: list[str] = []

    async def list_changes(self, source_site_id, target_site_id, since):
        self.since_seen.append(since)
        return list(self.changes)

    async def copy_and_verify(self, obj: ChangedObject) -> bool:
        result = self.results.get(obj.key, True)
        if isinstance(result, Exception):
            raise result
        if result:
            self.copied.append(obj.key)
        return bool(result)


class FakeProber:
    """Every site is up unless listed in ``down``, ``errors`` or ``hang``."""

    def __init__(self) -> None:
        self.down: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.hang: set[str] = set()

    async def check_data_plane(self, site: Site) -> bool:
        if site.id in self.errors:
            raise self.errors[site.id]
        if site.id in self.hang:
            await asyncio.sleep(3600)
        return site.id not in self.down

    async def check_control_plane(self, site: Site) -> bool:
        return site.id not in self.down


def make_sites() -> list[Site]:
    return [
        Site(id="P", role=SiteRole.PRIMARY, region="us-east-1", priority=1),
        Site(id="R1", role=SiteRole.REPLICA, region="us-central-1", priority=2),
        Site(id="R2", role=SiteRole.REPLICA, region="eu-west-1", priority=3),
        Site(id="DR", role=SiteRole.DISASTER_RECOVERY, region="ap-northeast-1", priority=4),
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path) -> ReplicationConfig:
    return ReplicationConfig(
        max_lag_ms=5000,
        lag_alert_threshold_ms=10000,
        health_check_interval_s=3600,
        lag_check_interval_s=3600,
        metrics_interval_s=3600,
        file_sync_interval_s=3600,
        probe_timeout_s=0.2,
        storage_call_timeout_s=0.5,
        max_concurrent_probes=4,
        shutdown_grace_s=0.5,
        automatic_failover=True,
        failover_timeout_ms=5000,
        consistency_check=False,
        rollback_on_failure=True,
        default_failover_group="",
        report_dir=str(tmp_path / "reports"),
        status_api_token="test-token",
        mc_api_url="",
        telegram_bot_token="",
        telegram_chat_id="",
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
def registry() -> SiteRegistry:
    reg = SiteRegistry(make_sites())
    for site in reg.all():
        reg.set_health(site.id, HealthStatus.HEALTHY, ConnectionStatus.CONNECTED)
    return reg


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def files() -> FakeFileTransfer:
    return FakeFileTransfer()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest_asyncio.fixture
async def streams(storage, files, config):
    mgr = ReplicationStreamManager(storage, files, config)
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def health(registry, prober, config) -> HealthMonitor:
    return HealthMonitor(registry, prober, config)


@pytest.fixture
def group() -> FailoverGroup:
    return FailoverGroup(
        id="G",
        name="Test group",
        primary_site_id="P",
        ordered_candidate_site_ids=["R1", "R2", "DR"],
        auto_failover=True,
        max_failover_duration_ms=5000,
    )


@pytest_asyncio.fixture
async def orchestrator(registry, streams, health, storage, events, config, group):
    orch = FailoverOrchestrator(registry, streams, health, storage, events, config, [group])
    yield orch
    await orch.abort()
