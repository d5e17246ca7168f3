"""Replication lag tracker."""
from __future__ import annotations

import asyncio
import logging

from ..alerts.router import REPLICATION_LAG_ALERT, EventBus
from ..sync.collaborators import StorageReplicationPrimitive
from ..sync.streams import ReplicationStreamManager
from ..topology.config import ReplicationConfig
from ..topology.models import LagThresholdExceeded, ReplicationStream, StreamKind, StreamStatus
from ..topology.registry import SiteRegistry

logger = logging.getLogger("georepl.lag")


class LagTracker:
    """Measures lag on every active database stream.

    Threshold breaches are advisory: they raise an event and are returned
    to the caller, they never start a failover.
    """

    def __init__(
        self,
        registry: SiteRegistry,
        streams: ReplicationStreamManager,
        storage: StorageReplicationPrimitive,
        events: EventBus,
        config: ReplicationConfig,
    ) -> None:
        self._registry = registry
        self._streams = streams
        self._storage = storage
        self._events = events
        self._config = config

    async def measure_all(self) -> list[LagThresholdExceeded]:
        active = [s for s in self._streams.active_streams(StreamKind.DATABASE) if s.channel_id]
        if not active:
            return []
        results = await asyncio.gather(*(self._measure(s) for s in active), return_exceptions=True)

        breaches: list[LagThresholdExceeded] = []
        for stream, result in zip(active, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, asyncio.TimeoutError):
                msg = f"lag measurement timed out after {self._config.storage_call_timeout_s}s"
            elif isinstance(result, Exception):
                msg = f"lag measurement failed: {result}"
            else:
                breach = await self._record(stream, int(result))
                if breach is not None:
                    breaches.append(breach)
                continue
            logger.error("%s: %s", stream.id, msg)
            self._streams.record_error(stream.key, msg)
        return breaches

    async def _measure(self, stream: ReplicationStream) -> int:
        return await asyncio.wait_for(
            self._storage.measure_lag(stream.channel_id),
            timeout=self._config.storage_call_timeout_s,
        )

    async def _record(self, stream: ReplicationStream, lag_ms: int) -> LagThresholdExceeded | None:
        # The stream may have been stopped by a rebuild while we were measuring.
        if stream.status != StreamStatus.ACTIVE or stream.source_site_id != self._registry.primary_id():
            logger.debug("Discarding lag for stale stream %s", stream.id)
            return None
        self._streams.record_lag(stream.key, lag_ms)
        self._registry.set_replication_lag(stream.target_site_id, lag_ms)

        threshold = self._config.lag_alert_threshold_ms
        if lag_ms <= threshold:
            return None
        breach = LagThresholdExceeded(stream.id, lag_ms, threshold)
        logger.warning("High replication lag: %s", breach)
        await self._events.emit(REPLICATION_LAG_ALERT, {
            "stream_id": stream.id,
            "lag_ms": lag_ms,
            "threshold": threshold,
        })
        return breach
