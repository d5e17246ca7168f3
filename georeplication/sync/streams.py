"""Replication stream manager — establish, stop and rebuild primary→replica streams."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Optional, Union

from ..topology.config import ReplicationConfig
from ..topology.models import (
    ReplicationStream, StreamEstablishError, StreamKey, StreamKind, StreamStatus, utcnow,
)
from .collaborators import FileTransferPrimitive, StorageReplicationPrimitive

logger = logging.getLogger("georepl.streams")

StreamRef = Union[StreamKey, str]


class ReplicationStreamManager:
    """Owns the stream table.

    One record per (source, target, kind). A record that is replaced by a
    fresh establish moves to history; stopped records are never deleted.
    """

    def __init__(
        self,
        storage: StorageReplicationPrimitive,
        file_transfer: FileTransferPrimitive,
        config: ReplicationConfig,
    ) -> None:
        self._storage = storage
        self._files = file_transfer
        self._config = config
        self._streams: dict[StreamKey, ReplicationStream] = {}
        self._history: list[ReplicationStream] = []
        self._pending: dict[StreamKey, asyncio.Task[ReplicationStream]] = {}
        self._workers: dict[StreamKey, asyncio.Task[None]] = {}

    # -- queries --------------------------------------------------------------

    def get(self, ref: StreamRef) -> ReplicationStream:
        if isinstance(ref, StreamKey):
            return self._streams[ref]
        for stream in self._streams.values():
            if stream.id == ref:
                return stream
        raise KeyError(ref)

    def streams(self) -> list[ReplicationStream]:
        return list(self._streams.values())

    def active_streams(self, kind: Optional[StreamKind] = None) -> list[ReplicationStream]:
        return [
            s for s in self._streams.values()
            if s.status == StreamStatus.ACTIVE and (kind is None or s.kind == kind)
        ]

    def history(self) -> list[ReplicationStream]:
        return list(self._history)

    def has_worker(self, ref: StreamRef) -> bool:
        task = self._workers.get(self.get(ref).key)
        return task is not None and not task.done()

    # -- establish ------------------------------------------------------------

    async def establish(self, source_site_id: str, target_site_id: str, kind: StreamKind) -> ReplicationStream:
        """Idempotent: an active stream with the same key is returned as-is."""
        key = StreamKey(source_site_id, target_site_id, StreamKind(kind))
        existing = self._streams.get(key)
        if existing is not None and existing.status == StreamStatus.ACTIVE:
            return existing
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        if existing is not None:
            self._history.append(existing)
        stream = ReplicationStream(key=key)
        self._streams[key] = stream

        task = asyncio.create_task(self._establish(stream), name=f"establish-{stream.id}")
        self._pending[key] = task
        return await asyncio.shield(task)

    async def _establish(self, stream: ReplicationStream) -> ReplicationStream:
        logger.info("Setting up %s replication: %s -> %s",
                    stream.kind.value, stream.source_site_id, stream.target_site_id)
        try:
            await self._provision(stream)
        except StreamEstablishError as exc:
            stream.status = StreamStatus.FAILED
            stream.log_error(str(exc))
            logger.error("Failed to set up replication %s: %s", stream.id, exc)
        else:
            stream.status = StreamStatus.ACTIVE
            logger.info("Replication established: %s", stream.id)
        finally:
            self._pending.pop(stream.key, None)
        return stream

    async def _provision(self, stream: ReplicationStream) -> None:
        if stream.kind == StreamKind.FILE:
            self._start_file_worker(stream)
            return
        try:
            stream.channel_id = await asyncio.wait_for(
                self._storage.create_replication_channel(stream.source_site_id, stream.target_site_id),
                timeout=self._config.storage_call_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise StreamEstablishError(
                f"create_replication_channel timed out after {self._config.storage_call_timeout_s}s"
            ) from exc
        except Exception as exc:
            raise StreamEstablishError(str(exc) or type(exc).__name__) from exc
        stream.last_sync_at = utcnow()

    async def wire_initial(self, primary_id: str, target_ids: Iterable[str]) -> list[ReplicationStream]:
        """Startup wiring: database + file streams from the primary to every target."""
        return await self._establish_all(primary_id, target_ids)

    async def _establish_all(self, primary_id: str, target_ids: Iterable[str]) -> list[ReplicationStream]:
        pairs = [
            (primary_id, target, kind)
            for target in target_ids if target != primary_id
            for kind in (StreamKind.DATABASE, StreamKind.FILE)
        ]
        return list(await asyncio.gather(*(self.establish(*p) for p in pairs)))

    # -- stop / rebuild -------------------------------------------------------

    async def stop(self, ref: StreamRef) -> None:
        """Mark stopped, cancel its sync worker, drop the storage channel. Keeps the record.

        A stream still being set up is allowed to finish first, so the
        channel and worker it creates are torn down with it.
        """
        stream = self.get(ref)
        pending = self._pending.get(stream.key)
        if pending is not None:
            await asyncio.shield(pending)
        if stream.status == StreamStatus.STOPPED:
            return
        logger.info("Stopping replication stream: %s", stream.id)
        stream.status = StreamStatus.STOPPED
        stream.stopped_at = utcnow()

        worker = self._workers.pop(stream.key, None)
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        if stream.channel_id:
            try:
                await asyncio.wait_for(
                    self._storage.drop_replication_channel(stream.channel_id),
                    timeout=self._config.storage_call_timeout_s,
                )
            except Exception as exc:
                logger.warning("Could not drop channel %s for %s: %s", stream.channel_id, stream.id, exc)
                stream.log_error(f"drop channel failed: {exc}")

    async def rebuild_from(self, new_primary_id: str, target_ids: Iterable[str]) -> list[ReplicationStream]:
        """Stop every stream not sourced from *new_primary_id*, then establish fresh ones.

        All stops finish before the first establish starts, so no target is
        ever fed by two sources at once.
        """
        stale = [
            s for s in self._streams.values()
            if s.status != StreamStatus.STOPPED
            and (s.source_site_id != new_primary_id or s.target_site_id == new_primary_id)
        ]
        logger.info("Rebuilding replication from %s: stopping %d stale streams", new_primary_id, len(stale))
        for stream in stale:
            await self.stop(stream.key)
        streams = await self._establish_all(new_primary_id, target_ids)
        logger.info("Replication reconfigured with new primary: %s (%d/%d streams active)",
                    new_primary_id, sum(s.status == StreamStatus.ACTIVE for s in streams), len(streams))
        return streams

    # -- lag / errors ---------------------------------------------------------

    def record_lag(self, ref: StreamRef, lag_ms: int) -> None:
        stream = self.get(ref)
        stream.lag_ms = lag_ms
        stream.last_sync_at = utcnow()

    def record_error(self, ref: StreamRef, message: str) -> None:
        self.get(ref).log_error(message)

    # -- file sync ------------------------------------------------------------

    def _start_file_worker(self, stream: ReplicationStream) -> None:
        old = self._workers.pop(stream.key, None)
        if old is not None:
            old.cancel()
        self._workers[stream.key] = asyncio.create_task(
            self._file_sync_loop(stream), name=f"file-sync-{stream.id}",
        )

    async def _file_sync_loop(self, stream: ReplicationStream) -> None:
        while True:
            await asyncio.sleep(self._config.file_sync_interval_s)
            try:
                await self.sync_once(stream)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("File sync error for %s: %s", stream.id, exc)
                stream.log_error(str(exc) or type(exc).__name__)

    async def sync_once(self, stream: ReplicationStream) -> int:
        """One copy-and-verify pass. Returns the number of objects replicated.

        ``last_sync_at`` only advances when every changed object verified,
        so failed objects are picked up again next tick.
        """
        tick_started = utcnow()
        timeout = self._config.storage_call_timeout_s
        changes = await asyncio.wait_for(
            self._files.list_changes(stream.source_site_id, stream.target_site_id, stream.last_sync_at),
            timeout=timeout,
        )
        copied = failed = 0
        for obj in changes:
            try:
                ok = await asyncio.wait_for(self._files.copy_and_verify(obj), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                ok = False
                stream.log_error(f"copy failed for {obj.key}: {exc}")
            else:
                if not ok:
                    stream.log_error(f"checksum mismatch for {obj.key}")
            if ok:
                copied += 1
                stream.bytes_transferred += obj.size_bytes
                stream.objects_replicated += 1
            else:
                failed += 1

        if failed == 0:
            stream.last_sync_at = tick_started
        logger.info("File sync %s: %d copied, %d failed", stream.id, copied, failed)
        return copied

    async def shutdown(self) -> None:
        """Cancel every file sync worker."""
        workers = list(self._workers.values())
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Stopped %d file sync workers", len(workers))
