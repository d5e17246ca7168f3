"""
Geo-replication manager — composes the registry, streams, health, lag,
failover and metrics components and runs their periodic loops.

Usage:
    GEOREPL_TOPOLOGY=/etc/georepl/topology.yaml python -m georeplication
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Callable, Iterable
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from .alerts.router import AlertRouter, EventBus
from .failover.orchestrator import FailoverOrchestrator
from .healthcheck.lag import LagTracker
from .healthcheck.monitor import HealthMonitor, NetworkProber, SiteProber
from .status.metrics import MetricsReporter
from .status.server import start_status_server
from .sync.collaborators import FileTransferPrimitive, SiteAgentClient, StorageReplicationPrimitive
from .sync.s3_client import S3FileTransfer
from .sync.streams import ReplicationStreamManager
from .topology.config import ReplicationConfig, Topology, load_topology
from .topology.models import FailoverAttempt, FailoverGroup, ReplicationStream, StreamStatus
from .topology.registry import SiteRegistry

logger = logging.getLogger("georepl.manager")


class GeoReplicationManager:
    def __init__(
        self,
        config: ReplicationConfig,
        registry: SiteRegistry,
        groups: Iterable[FailoverGroup],
        storage: StorageReplicationPrimitive,
        file_transfer: FileTransferPrimitive,
        prober: SiteProber,
        events: Optional[EventBus] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.events = events or EventBus()
        self.streams = ReplicationStreamManager(storage, file_transfer, config)
        self.health = HealthMonitor(registry, prober, config)
        self.lag = LagTracker(registry, self.streams, storage, self.events, config)
        self.orchestrator = FailoverOrchestrator(
            registry, self.streams, self.health, storage, self.events, config, groups,
        )
        self.metrics = MetricsReporter(registry, self.streams, self.orchestrator, config)
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_topology(cls, config: ReplicationConfig, topology: Topology) -> GeoReplicationManager:
        """Production wiring: site-agent storage, S3 file transfer, network probes, alert routing."""
        registry = SiteRegistry(topology.sites)
        events = EventBus()
        events.subscribe(AlertRouter(config))
        return cls(
            config,
            registry,
            topology.failover_groups,
            storage=SiteAgentClient(registry, config.agent_api_token, config.storage_call_timeout_s),
            file_transfer=S3FileTransfer(registry, config),
            prober=NetworkProber(config.agent_api_token),
            events=events,
        )

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        """Initial health sweep, stream wiring, then the periodic loops."""
        primary_id = self.registry.primary_id()
        if primary_id is None:
            raise RuntimeError("Topology has no primary site")
        logger.info("Starting geo-replication manager (primary=%s, %d sites)", primary_id, len(self.registry))

        await self.health.check_all()
        targets = [s.id for s in self.registry.all() if s.id != primary_id]
        streams = await self.streams.wire_initial(primary_id, targets)
        active = sum(s.status == StreamStatus.ACTIVE for s in streams)
        logger.info("Initial replication wiring: %d/%d streams active", active, len(streams))

        self._tasks = [
            self._spawn("health", self.config.health_check_interval_s, self._health_tick),
            self._spawn("lag", self.config.lag_check_interval_s, self._lag_tick),
            self._spawn("metrics", self.config.metrics_interval_s, self._metrics_tick),
        ]

    def _spawn(self, name: str, interval: float, tick: Callable[[], Awaitable[Any]]) -> asyncio.Task[None]:
        return asyncio.create_task(self._periodic(name, interval, tick), name=f"georepl-{name}")

    async def _periodic(self, name: str, interval: float, tick: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in %s loop", name)

    async def _health_tick(self) -> None:
        await self.health.check_all()
        await self.orchestrator.evaluate()

    async def _lag_tick(self) -> None:
        await self.lag.measure_all()

    async def _metrics_tick(self) -> None:
        self.metrics.collect()

    # -- produced interface ---------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        return self.metrics.snapshot()

    async def trigger_failover(self, group_id: str, reason: str = "manual") -> FailoverAttempt:
        return await self.orchestrator.trigger_failover(group_id, reason)

    async def reinstate_site(self, site_id: str) -> list[ReplicationStream]:
        return await self.orchestrator.reinstate_site(site_id)

    async def shutdown(self) -> None:
        """Stop loops, let an in-flight failover finish (or abort it), stop workers, final report."""
        logger.info("Shutting down geo-replication manager")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if not await self.orchestrator.wait_idle(self.config.shutdown_grace_s):
            logger.warning("Failover still running after %.0fs grace period — aborting",
                           self.config.shutdown_grace_s)
            await self.orchestrator.abort()

        await self.streams.shutdown()
        try:
            await self.metrics.generate_report()
        except OSError:
            logger.exception("Failed to write final replication report")
        logger.info("Geo-replication manager stopped")


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: ReplicationConfig) -> logging.Logger:
    """Configure rotating file + console logging for every ``georepl.*`` logger."""
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("georepl")
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    # One file per day, keep N days
    fh = TimedRotatingFileHandler(
        log_dir / "georeplication.log",
        when="midnight",
        backupCount=cfg.log_retention_days,
        utc=True,
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)

    root.addHandler(fh)
    root.addHandler(ch)
    return root


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

async def run() -> None:
    topology_path = os.environ.get("GEOREPL_TOPOLOGY", "topology.yaml")
    cfg = ReplicationConfig.from_yaml(topology_path)
    setup_logging(cfg)
    topology = load_topology(topology_path, cfg)

    manager = GeoReplicationManager.from_topology(cfg, topology)
    await manager.start()
    runner = await start_status_server(cfg, manager)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down…", sig)
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    await stop_event.wait()
    await runner.cleanup()
    await manager.shutdown()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
