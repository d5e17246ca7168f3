"""Site health monitor — concurrent data-plane + control-plane probes per site."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import aiohttp

from ..topology.config import ReplicationConfig
from ..topology.models import ConnectionStatus, HealthStatus, ProbeError, Site, utcnow
from ..topology.registry import SiteRegistry

logger = logging.getLogger("georepl.health")


class SiteProber(Protocol):
    async def check_data_plane(self, site: Site) -> bool: ...

    async def check_control_plane(self, site: Site) -> bool: ...


# ---------------------------------------------------------------------------
# Network probes
# ---------------------------------------------------------------------------

class NetworkProber:
    """Data plane: TCP connect to the site's database listener.
    Control plane: ``GET {management_url}/health`` returns 2xx.

    Connection-level failures report ``False``; anything else propagates
    and is recorded as a probe error by the monitor.
    """

    def __init__(self, api_token: str = "") -> None:
        self._token = api_token

    async def check_data_plane(self, site: Site) -> bool:
        if not site.db_host:
            return False
        try:
            _, writer = await asyncio.open_connection(site.db_host, site.db_port)
        except OSError as e:
            logger.debug("Data plane unreachable for %s: %s", site.id, e)
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def check_control_plane(self, site: Site) -> bool:
        if not site.management_url:
            return False
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        url = f"{site.management_url.rstrip('/')}/health"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, headers=headers) as resp:
                    return 200 <= resp.status < 300
        except aiohttp.ClientError as e:
            logger.debug("Control plane unreachable for %s: %s", site.id, e)
            return False


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

@dataclass
class SiteHealth:
    site_id: str
    status: HealthStatus
    data_plane: Optional[bool] = None
    control_plane: Optional[bool] = None
    latency_ms: Optional[int] = None
    error: Optional[str] = None


class HealthMonitor:
    """Fan-out/fan-in health sweep over every registered site."""

    def __init__(self, registry: SiteRegistry, prober: SiteProber, config: ReplicationConfig) -> None:
        self._registry = registry
        self._prober = prober
        self._config = config
        self._semaphore = asyncio.Semaphore(config.max_concurrent_probes)

    async def check_all(self) -> list[SiteHealth]:
        """Probe every site concurrently. One failing site never affects another."""
        site_ids = [s.id for s in self._registry.all()]
        results = await asyncio.gather(*(self._bounded_check(sid) for sid in site_ids), return_exceptions=True)

        report: list[SiteHealth] = []
        for site_id, result in zip(site_ids, results):
            if isinstance(result, BaseException):
                # check_site handles probe errors itself; this is a bug or cancellation
                logger.error("Health check crashed for %s: %r", site_id, result)
                self._registry.set_health(site_id, HealthStatus.ERROR, ConnectionStatus.ERROR)
                report.append(SiteHealth(site_id, HealthStatus.ERROR, error=repr(result)))
            else:
                report.append(result)

        healthy = sum(r.status == HealthStatus.HEALTHY for r in report)
        logger.info("Health sweep: %d/%d sites healthy", healthy, len(report))
        return report

    async def _bounded_check(self, site_id: str) -> SiteHealth:
        async with self._semaphore:
            return await self.check_site(site_id)

    async def check_site(self, site_id: str) -> SiteHealth:
        site = self._registry.get(site_id)
        t0 = time.monotonic()
        data_ok, control_ok = await asyncio.gather(
            self._probe(self._prober.check_data_plane, site, "data plane"),
            self._probe(self._prober.check_control_plane, site, "control plane"),
            return_exceptions=True,
        )
        latency_ms = int((time.monotonic() - t0) * 1000)
        checked_at = utcnow()

        for outcome in (data_ok, control_ok):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                err = ProbeError(site_id, outcome)
                logger.error("Health check error for %s: %s", site_id, err)
                self._registry.set_health(site_id, HealthStatus.ERROR, ConnectionStatus.ERROR,
                                          latency_ms, checked_at)
                return SiteHealth(site_id, HealthStatus.ERROR, latency_ms=latency_ms, error=str(err))

        if data_ok and control_ok:
            status, conn = HealthStatus.HEALTHY, ConnectionStatus.CONNECTED
        else:
            status, conn = HealthStatus.UNHEALTHY, ConnectionStatus.DISCONNECTED
            logger.warning("Site health check failed: %s (data=%s control=%s)", site_id, data_ok, control_ok)

        self._registry.set_health(site_id, status, conn, latency_ms, checked_at)
        return SiteHealth(site_id, status, bool(data_ok), bool(control_ok), latency_ms)

    async def _probe(self, fn: Callable[[Site], Awaitable[bool]], site: Site, plane: str) -> bool:
        try:
            return bool(await asyncio.wait_for(fn(site), timeout=self._config.probe_timeout_s))
        except asyncio.TimeoutError:
            logger.warning("%s probe timed out for %s after %.1fs", plane, site.id, self._config.probe_timeout_s)
            return False
