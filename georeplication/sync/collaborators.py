"""Collaborator contracts for the replicated store and bulk file transfer.

The controller never talks to a database or object store directly; it
drives these two primitives. ``SiteAgentClient`` is the shipped storage
adapter: every site runs a management agent that owns the store's native
replication objects (logical slots, publications, subscriptions).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import aiohttp

from ..topology.models import Site
from ..topology.registry import SiteRegistry

logger = logging.getLogger("georepl.collaborators")


@dataclass
class ChangedObject:
    key: str
    size_bytes: int
    checksum: str
    source_site_id: str
    target_site_id: str


class StorageReplicationPrimitive(Protocol):
    async def create_replication_channel(self, source_site_id: str, target_site_id: str) -> str: ...

    async def drop_replication_channel(self, channel_id: str) -> None: ...

    async def measure_lag(self, channel_id: str) -> int: ...

    async def promote(self, site_id: str) -> None: ...

    async def verify_consistency(self, site_id: str) -> bool: ...


class FileTransferPrimitive(Protocol):
    async def list_changes(
        self, source_site_id: str, target_site_id: str, since: Optional[datetime],
    ) -> list[ChangedObject]: ...

    async def copy_and_verify(self, obj: ChangedObject) -> bool: ...


# ---------------------------------------------------------------------------
# Site agent adapter
# ---------------------------------------------------------------------------

def channel_names(source_site_id: str, target_site_id: str) -> dict[str, str]:
    """Native object names for the channel replicating into *target_site_id*."""
    suffix = target_site_id.replace("-", "_")
    return {
        "slot_name": f"replication_slot_{suffix}",
        "publication": f"publication_{suffix}",
        "subscription": f"subscription_{suffix}",
    }


def make_channel_id(source_site_id: str, target_site_id: str) -> str:
    return f"{source_site_id}->{target_site_id}"


def parse_channel_id(channel_id: str) -> tuple[str, str]:
    source, sep, target = channel_id.partition("->")
    if not sep or not source or not target:
        raise ValueError(f"Malformed channel id: {channel_id!r}")
    return source, target


class SiteAgentClient:
    """Storage primitive backed by each site's management agent HTTP API."""

    def __init__(self, registry: SiteRegistry, api_token: str = "", timeout_s: float = 30.0) -> None:
        self._registry = registry
        self._token = api_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _url(self, site: Site, path: str) -> str:
        if not site.management_url:
            raise ValueError(f"Site {site.id} has no management_url")
        return f"{site.management_url.rstrip('/')}{path}"

    async def _request(self, method: str, site: Site, path: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.request(method, self._url(site, path), json=payload, headers=self._headers()) as resp:
                resp.raise_for_status()
                if resp.content_type == "application/json":
                    return await resp.json()
                return {}

    # -- StorageReplicationPrimitive -------------------------------------------

    async def create_replication_channel(self, source_site_id: str, target_site_id: str) -> str:
        source = self._registry.get(source_site_id)
        target = self._registry.get(target_site_id)
        names = channel_names(source_site_id, target_site_id)

        logger.info("Creating slot %s + publication %s on %s",
                    names["slot_name"], names["publication"], source.id)
        await self._request("POST", source, "/replication/publications", {
            "slot_name": names["slot_name"],
            "publication": names["publication"],
            "plugin": "pgoutput",
        })

        logger.info("Creating subscription %s on %s", names["subscription"], target.id)
        await self._request("POST", target, "/replication/subscriptions", {
            "subscription": names["subscription"],
            "publication": names["publication"],
            "slot_name": names["slot_name"],
            "source": {"host": source.db_host, "port": source.db_port, "sslmode": "require"},
        })
        return make_channel_id(source_site_id, target_site_id)

    async def drop_replication_channel(self, channel_id: str) -> None:
        source_id, target_id = parse_channel_id(channel_id)
        names = channel_names(source_id, target_id)
        await self._request("DELETE", self._registry.get(target_id),
                            f"/replication/subscriptions/{names['subscription']}")
        await self._request("DELETE", self._registry.get(source_id),
                            f"/replication/publications/{names['publication']}")

    async def measure_lag(self, channel_id: str) -> int:
        source_id, target_id = parse_channel_id(channel_id)
        names = channel_names(source_id, target_id)
        body = await self._request("GET", self._registry.get(source_id),
                                   f"/replication/slots/{names['slot_name']}/lag")
        return int(body["lag_ms"])

    async def promote(self, site_id: str) -> None:
        await self._request("POST", self._registry.get(site_id), "/promote")

    async def verify_consistency(self, site_id: str) -> bool:
        body = await self._request("GET", self._registry.get(site_id), "/consistency")
        return bool(body.get("consistent", False))
