"""Failover orchestrator.

Flow: evaluate → select target → pre-checks → promote → reconfigure
streams → verify → notify, with optional rollback when anything after
promotion fails.

At most one attempt runs at a time. The attempt executes in its own task
so cancelling whoever triggered it (the health loop, an HTTP request)
never interrupts a half-done promotion.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Iterable
from typing import Optional

from ..alerts.router import (
    FAILOVER_COMPLETED, FAILOVER_FAILED, FAILOVER_REQUIRED, FAILOVER_ROLLED_BACK, EventBus,
)
from ..healthcheck.monitor import HealthMonitor
from ..sync.collaborators import StorageReplicationPrimitive
from ..sync.streams import ReplicationStreamManager
from ..topology.config import ReplicationConfig
from ..topology.models import (
    POST_PROMOTION_STATES, ConcurrentFailoverRejected, FailoverAttempt, FailoverError,
    FailoverGroup, FailoverGroupNotFound, FailoverOutcome, FailoverState, HealthStatus,
    PreCheckFailure, PromotionFailure, ReconfigurationFailure, ReplicationStream, SiteRole,
    SiteStatus, StreamKind, StreamStatus, VerificationFailure, utcnow,
)
from ..topology.registry import SiteRegistry

logger = logging.getLogger("georepl.failover")

_DOWN = (HealthStatus.UNHEALTHY, HealthStatus.ERROR)


class FailoverOrchestrator:
    def __init__(
        self,
        registry: SiteRegistry,
        streams: ReplicationStreamManager,
        health: HealthMonitor,
        storage: StorageReplicationPrimitive,
        events: EventBus,
        config: ReplicationConfig,
        groups: Iterable[FailoverGroup] = (),
    ) -> None:
        self._registry = registry
        self._streams = streams
        self._health = health
        self._storage = storage
        self._events = events
        self._config = config
        self._groups: dict[str, FailoverGroup] = {
            g.id: dataclasses.replace(g, ordered_candidate_site_ids=list(g.ordered_candidate_site_ids))
            for g in groups
        }
        self._state = FailoverState.STABLE
        self._current: Optional[FailoverAttempt] = None
        self._task: Optional[asyncio.Task[FailoverAttempt]] = None
        self._attempts: list[FailoverAttempt] = []
        self._aborting = False

    # -- queries --------------------------------------------------------------

    @property
    def state(self) -> FailoverState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current_attempt(self) -> Optional[FailoverAttempt]:
        return self._current if self.in_progress else None

    @property
    def last_attempt(self) -> Optional[FailoverAttempt]:
        return self._attempts[-1] if self._attempts else None

    def attempts(self) -> list[FailoverAttempt]:
        return list(self._attempts)

    def groups(self) -> list[FailoverGroup]:
        return [dataclasses.replace(g) for g in self._groups.values()]

    def group(self, group_id: str) -> FailoverGroup:
        try:
            return self._groups[group_id]
        except KeyError:
            raise FailoverGroupNotFound(group_id) from None

    def default_group(self) -> Optional[FailoverGroup]:
        name = self._config.default_failover_group
        if name and name in self._groups:
            return self._groups[name]
        return next(iter(self._groups.values()), None)

    def select_target(self, group: FailoverGroup) -> Optional[str]:
        """First candidate, in configured order, that is healthy and active."""
        primary_id = self._registry.primary_id()
        for site_id in group.ordered_candidate_site_ids:
            if site_id == primary_id or site_id not in self._registry:
                continue
            site = self._registry.get(site_id)
            if site.health_status == HealthStatus.HEALTHY and site.status == SiteStatus.ACTIVE:
                return site_id
        return None

    # -- entry points ---------------------------------------------------------

    async def evaluate(self) -> Optional[FailoverAttempt]:
        """Called after every health sweep. Returns the attempt it started, if any."""
        if self.in_progress:
            return None
        primary = self._registry.primary()
        if primary is None or primary.health_status not in _DOWN:
            return None
        group = self.default_group()
        if group is None:
            logger.warning("Primary %s is %s but no failover group is configured",
                           primary.id, primary.health_status.value)
            return None

        self._state = FailoverState.EVALUATING
        reason = f"primary site {primary.id} is {primary.health_status.value}"
        logger.warning("Evaluating failover for group %s: %s", group.id, reason)
        target = self.select_target(group)

        if target is None or not group.auto_failover:
            self._state = FailoverState.STABLE
            if target is None:
                logger.error("No healthy failover target in group %s", group.id)
            else:
                logger.warning("Automatic failover disabled for %s; recommending %s", group.id, target)
            await self._events.emit(FAILOVER_REQUIRED, {
                "reason": reason,
                "primary_site": primary.id,
                "recommended_target": target,
                "failover_group": group.id,
            })
            return None

        attempt, _ = self._begin(group.id, reason)
        return attempt

    async def trigger_failover(self, group_id: str, reason: str = "manual") -> FailoverAttempt:
        """Run a failover for *group_id* and wait for it to finish.

        Raises ``FailoverGroupNotFound`` or ``ConcurrentFailoverRejected``;
        every other failure is reported on the returned attempt.
        """
        _, task = self._begin(group_id, reason)
        return await asyncio.shield(task)

    def _begin(self, group_id: str, reason: str) -> tuple[FailoverAttempt, asyncio.Task[FailoverAttempt]]:
        # No await between the check and create_task: this is the in-progress lock.
        group = self.group(group_id)
        if self.in_progress:
            raise ConcurrentFailoverRejected(self._current)
        attempt = FailoverAttempt(
            group_id=group.id,
            trigger_reason=reason,
            old_primary_id=self._registry.primary_id() or group.primary_site_id,
        )
        self._current = attempt
        self._attempts.append(attempt)
        self._state = FailoverState.EVALUATING
        logger.warning("Failover %s started for group %s: %s", attempt.id, group.id, reason)
        self._task = asyncio.create_task(self._run(attempt, group), name=f"failover-{attempt.id}")
        return attempt, self._task

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for the in-flight attempt. True once nothing is running."""
        task = self._task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    async def abort(self) -> None:
        """Cancel the in-flight attempt; it is recorded as failed at stage ``shutdown``."""
        task = self._task
        if task is None or task.done():
            return
        self._aborting = True
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._aborting = False

    async def reinstate_site(self, site_id: str) -> list[ReplicationStream]:
        """Return a recovered standby site to service and replicate into it."""
        if site_id == self._registry.primary_id():
            raise ValueError(f"{site_id} is the primary")
        if self.in_progress:
            raise ConcurrentFailoverRejected(self._current)
        result = await self._health.check_site(site_id)
        if result.status != HealthStatus.HEALTHY:
            raise FailoverError(f"Cannot reinstate {site_id}: site is {result.status.value}")

        # A failover may have started while the site was being probed.
        if self.in_progress:
            raise ConcurrentFailoverRejected(self._current)
        primary_id = self._registry.primary_id()
        if site_id == primary_id:
            raise ValueError(f"{site_id} is the primary")

        self._registry.set_status(site_id, SiteStatus.ACTIVE)
        streams = list(await asyncio.gather(
            *(self._streams.establish(primary_id, site_id, kind) for kind in StreamKind)
        ))

        if self._registry.primary_id() != primary_id:
            # Primary moved mid-setup; the failover's rebuild owns this target now.
            for stream in streams:
                await self._streams.stop(stream.key)
            raise ConcurrentFailoverRejected(self._current or self.last_attempt)
        logger.info("Reinstated %s as %s replica of %s",
                    site_id, self._registry.get(site_id).role.value, primary_id)
        return streams

    # -- attempt --------------------------------------------------------------

    async def _run(self, attempt: FailoverAttempt, group: FailoverGroup) -> FailoverAttempt:
        t0 = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - t0) * 1000)

        try:
            target = self.select_target(group)
            if target is None:
                await self._events.emit(FAILOVER_REQUIRED, {
                    "reason": attempt.trigger_reason,
                    "primary_site": attempt.old_primary_id,
                    "recommended_target": None,
                    "failover_group": group.id,
                })
                attempt.duration_ms = elapsed_ms()
                await self._fail(attempt, FailoverError(f"no healthy failover target in group {group.id}"))
                return attempt

            attempt.candidate_site_id = target
            self._transition(attempt, FailoverState.TARGET_SELECTED)
            try:
                await asyncio.wait_for(
                    self._execute(attempt, target),
                    timeout=group.max_failover_duration_ms / 1000,
                )
            except asyncio.TimeoutError:
                attempt.duration_ms = elapsed_ms()
                await self._fail(attempt, FailoverError(
                    f"failover exceeded {group.max_failover_duration_ms}ms during {attempt.state.value}"
                ))
            except FailoverError as exc:
                attempt.duration_ms = elapsed_ms()
                await self._fail(attempt, exc)
            except Exception as exc:
                logger.exception("Unexpected error during failover %s", attempt.id)
                attempt.duration_ms = elapsed_ms()
                await self._fail(attempt, exc)
            else:
                attempt.duration_ms = elapsed_ms()
                await self._complete(attempt)
            return attempt
        except asyncio.CancelledError:
            stage = attempt.state
            attempt.outcome = FailoverOutcome.FAILED
            attempt.error = f"shutdown: aborted during {stage.value}"
            self._transition(attempt, FailoverState.FAILED)
            logger.critical("Failover %s aborted by shutdown during %s; topology may need manual repair",
                            attempt.id, stage.value)
            if not self._aborting:
                raise
            # abort() owns this cancellation; waiting callers get the failed attempt
            return attempt
        finally:
            attempt.duration_ms = elapsed_ms()
            attempt.finished_at = utcnow()
            self._state = FailoverState.STABLE

    async def _execute(self, attempt: FailoverAttempt, target: str) -> None:
        self._transition(attempt, FailoverState.PRE_CHECKS)
        await self._pre_checks(target)

        self._transition(attempt, FailoverState.PROMOTING)
        await self._promote(target)

        self._transition(attempt, FailoverState.RECONFIGURING)
        await self._reconfigure(target, attempt.old_primary_id)

        self._transition(attempt, FailoverState.VERIFYING)
        await self._verify(target)

    async def _pre_checks(self, target: str) -> None:
        site = self._registry.get(target)
        if site.health_status != HealthStatus.HEALTHY or site.status != SiteStatus.ACTIVE:
            raise PreCheckFailure(f"target {target} is {site.health_status.value}/{site.status.value}")

        limit = 2 * self._config.max_lag_ms
        if site.replication_lag_ms is not None and site.replication_lag_ms > limit:
            raise PreCheckFailure(f"target {target} lag {site.replication_lag_ms}ms > {limit}ms")

        if self._config.consistency_check:
            try:
                consistent = await asyncio.wait_for(
                    self._storage.verify_consistency(target),
                    timeout=self._config.storage_call_timeout_s,
                )
            except asyncio.TimeoutError as exc:
                raise PreCheckFailure(f"consistency check on {target} timed out") from exc
            except Exception as exc:
                raise PreCheckFailure(f"consistency check on {target} failed: {exc}") from exc
            if not consistent:
                raise PreCheckFailure(f"target {target} failed the consistency check")

    async def _promote(self, target: str) -> None:
        logger.info("Promoting %s to primary", target)
        try:
            await asyncio.wait_for(self._storage.promote(target), timeout=self._config.storage_call_timeout_s)
        except asyncio.TimeoutError as exc:
            raise PromotionFailure(f"promote({target}) timed out") from exc
        except Exception as exc:
            raise PromotionFailure(f"promote({target}) failed: {exc}") from exc
        self._registry.set_role(target, SiteRole.PRIMARY)
        self._registry.set_status(target, SiteStatus.ACTIVE)

    async def _reconfigure(self, new_primary_id: str, old_primary_id: str) -> None:
        remaining = [s.id for s in self._registry.all() if s.id not in (new_primary_id, old_primary_id)]
        streams = await self._streams.rebuild_from(new_primary_id, remaining)
        database = [s for s in streams if s.kind == StreamKind.DATABASE]
        if database and not any(s.status == StreamStatus.ACTIVE for s in database):
            raise ReconfigurationFailure(
                f"no database stream from {new_primary_id} could be established ({len(database)} tried)"
            )

    async def _verify(self, new_primary_id: str) -> None:
        result = await self._health.check_site(new_primary_id)
        if result.status != HealthStatus.HEALTHY:
            raise VerificationFailure(f"new primary {new_primary_id} is {result.status.value}")

    async def _complete(self, attempt: FailoverAttempt) -> None:
        old, new = attempt.old_primary_id, attempt.candidate_site_id
        # set_role already demoted the old primary; park it until it is reinstated
        self._registry.set_status(old, SiteStatus.STANDBY)
        for group in self._groups.values():
            if group.primary_site_id == old:
                group.primary_site_id = new

        attempt.outcome = FailoverOutcome.SUCCEEDED
        self._transition(attempt, FailoverState.COMPLETED)
        logger.info("Failover completed: %s → %s in %dms", old, new, attempt.duration_ms)
        await self._events.emit(FAILOVER_COMPLETED, {
            "failover_group": attempt.group_id,
            "old_primary": old,
            "new_primary": new,
            "reason": attempt.trigger_reason,
            "duration_ms": attempt.duration_ms,
        })

    async def _fail(self, attempt: FailoverAttempt, exc: BaseException) -> None:
        stage = attempt.state
        rollback = stage in POST_PROMOTION_STATES and self._config.rollback_on_failure
        attempt.outcome = FailoverOutcome.FAILED
        attempt.error = str(exc) or type(exc).__name__
        self._transition(attempt, FailoverState.FAILED)
        logger.error("Failover %s failed at %s: %s", attempt.id, stage.value, attempt.error)
        await self._events.emit(FAILOVER_FAILED, {
            "failover_group": attempt.group_id,
            "reason": attempt.trigger_reason,
            "error": attempt.error,
            "stage": stage.value,
            "duration_ms": attempt.duration_ms,
            "rollback": rollback,
        })
        if rollback:
            await self._rollback(attempt)

    async def _rollback(self, attempt: FailoverAttempt) -> None:
        old = attempt.old_primary_id
        self._transition(attempt, FailoverState.ROLLING_BACK)
        try:
            self._registry.set_role(old, SiteRole.PRIMARY)
            self._registry.set_status(old, SiteStatus.ACTIVE)
            targets = [s.id for s in self._registry.all() if s.id != old]
            await self._streams.rebuild_from(old, targets)
        except Exception:
            logger.critical("Rollback of failover %s failed; manual intervention required",
                            attempt.id, exc_info=True)
            self._transition(attempt, FailoverState.FAILED)
            return

        attempt.outcome = FailoverOutcome.ROLLED_BACK
        self._transition(attempt, FailoverState.ROLLED_BACK)
        logger.warning("Failover %s rolled back: %s restored as primary", attempt.id, old)
        await self._events.emit(FAILOVER_ROLLED_BACK, {
            "failover_group": attempt.group_id,
            "old_primary": old,
            "failed_target": attempt.candidate_site_id,
            "reason": attempt.trigger_reason,
            "error": attempt.error,
        })

    def _transition(self, attempt: FailoverAttempt, state: FailoverState) -> None:
        prev = attempt.state
        attempt.state = state
        attempt.transitions.append({"from": prev.value, "to": state.value, "ts": utcnow().isoformat()})
        self._state = state
        logger.info("Failover %s [%s]: %s → %s", attempt.id[:8], attempt.group_id, prev.value, state.value)
