"""Site registry — the single owner of site role, status and health."""
from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Optional

from .models import (
    ConnectionStatus, HealthStatus, Site, SiteRole, SiteStatus, TopologyChange,
    UnknownSiteError, utcnow,
)

logger = logging.getLogger("georepl.registry")

TopologyListener = Callable[[TopologyChange], None]


def _copy(site: Site) -> Site:
    return dataclasses.replace(
        site,
        capacity=dataclasses.replace(site.capacity),
        compliance_tags=list(site.compliance_tags),
    )


class SiteRegistry:
    """Holds every known site keyed by id.

    All mutation goes through the methods below, each of which completes
    without awaiting, so on a single event loop they are atomic with
    respect to one another. Reads hand out copies.
    """

    def __init__(self, sites: Iterable[Site] = ()) -> None:
        self._sites: dict[str, Site] = {}
        self._listeners: list[TopologyListener] = []
        self._version = 0
        for site in sites:
            self.register(site)

    # --- reads ---

    @property
    def version(self) -> int:
        return self._version

    def get(self, site_id: str) -> Site:
        return _copy(self._get(site_id))

    def all(self) -> list[Site]:
        return [_copy(s) for s in self._sites.values()]

    def primary(self) -> Optional[Site]:
        for site in self._sites.values():
            if site.role == SiteRole.PRIMARY:
                return _copy(site)
        return None

    def primary_id(self) -> Optional[str]:
        site = self.primary()
        return site.id if site else None

    def __contains__(self, site_id: object) -> bool:
        return site_id in self._sites

    def __len__(self) -> int:
        return len(self._sites)

    # --- writes ---

    def register(self, site: Site) -> None:
        if site.id in self._sites:
            raise ValueError(f"Site already registered: {site.id}")
        if site.role == SiteRole.PRIMARY and self.primary() is not None:
            raise ValueError(
                f"Cannot register {site.id} as primary: {self.primary_id()} is already primary"
            )
        self._sites[site.id] = _copy(site)
        logger.info("Registered site %s (%s, %s)", site.id, site.role.value, site.region)

    def set_role(self, site_id: str, role: SiteRole) -> None:
        """Change a site's role. Promoting to primary demotes the old primary."""
        site = self._get(site_id)
        if site.role == role:
            return
        if role == SiteRole.PRIMARY:
            for other in self._sites.values():
                if other.role == SiteRole.PRIMARY and other.id != site_id:
                    self._change(other, "role", SiteRole.REPLICA)
        self._change(site, "role", role)

    def set_status(self, site_id: str, status: SiteStatus) -> None:
        site = self._get(site_id)
        if site.status != status:
            self._change(site, "status", status)

    def set_health(
        self,
        site_id: str,
        health: HealthStatus,
        connection_status: ConnectionStatus,
        latency_ms: Optional[int] = None,
        checked_at: Optional[datetime] = None,
    ) -> None:
        site = self._get(site_id)
        if site.health_status != health:
            logger.info("Site %s health %s → %s", site_id, site.health_status.value, health.value)
        site.health_status = health
        site.connection_status = connection_status
        site.last_health_check_at = checked_at or utcnow()
        if latency_ms is not None:
            site.probe_latency_ms = latency_ms

    def set_replication_lag(self, site_id: str, lag_ms: Optional[int]) -> None:
        self._get(site_id).replication_lag_ms = lag_ms

    # --- notifications ---

    def add_listener(self, listener: TopologyListener) -> None:
        self._listeners.append(listener)

    # --- internals ---

    def _get(self, site_id: str) -> Site:
        try:
            return self._sites[site_id]
        except KeyError:
            raise UnknownSiteError(site_id) from None

    def _change(self, site: Site, attr: str, value: SiteRole | SiteStatus) -> None:
        old = getattr(site, attr)
        setattr(site, attr, value)
        self._version += 1
        change = TopologyChange(site.id, attr, old.value, value.value, self._version)
        logger.info("Topology v%d: %s %s %s → %s", change.version, site.id, attr, change.old, change.new)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Topology listener failed for %s", site.id)
