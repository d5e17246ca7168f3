"""HTTP status + operator trigger endpoint (aiohttp)."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from ..topology.config import ReplicationConfig
from ..topology.models import (
    ConcurrentFailoverRejected, FailoverError, FailoverGroupNotFound, UnknownSiteError,
)

if TYPE_CHECKING:
    from ..manager import GeoReplicationManager

logger = logging.getLogger("georepl.server")


def _check_auth(request: web.Request, config: ReplicationConfig) -> bool:
    # No token configured means the mutating endpoints are disabled.
    if not config.status_api_token:
        return False
    auth = request.headers.get("Authorization", "")
    return auth == f"Bearer {config.status_api_token}"


async def handle_status(request: web.Request) -> web.Response:
    manager: GeoReplicationManager = request.app["manager"]
    return web.json_response(manager.get_status())


async def handle_health(request: web.Request) -> web.Response:
    manager: GeoReplicationManager = request.app["manager"]
    status = manager.get_status()
    return web.json_response({
        "status": "ok",
        "primary_site": status["primary_site"],
        "failover_state": status["failover_state"],
        "failover_in_progress": status["failover_in_progress"],
    })


async def handle_failover(request: web.Request) -> web.Response:
    config: ReplicationConfig = request.app["config"]
    if not _check_auth(request, config):
        return web.json_response({"error": "unauthorized"}, status=401)
    manager: GeoReplicationManager = request.app["manager"]
    group_id = request.match_info["group_id"]

    reason = "manual"
    if request.can_read_body:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "invalid JSON body"}, status=400)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            return web.json_response({"error": "JSON body must be an object"}, status=400)
        reason = str(body.get("reason") or reason)

    logger.warning("Operator failover requested for %s: %s", group_id, reason)
    try:
        attempt = await manager.trigger_failover(group_id, reason)
    except FailoverGroupNotFound:
        return web.json_response({"error": f"unknown failover group: {group_id}"}, status=404)
    except ConcurrentFailoverRejected as exc:
        return web.json_response({"error": str(exc), "attempt": exc.attempt.to_dict()}, status=409)
    return web.json_response(attempt.to_dict())


async def handle_reinstate(request: web.Request) -> web.Response:
    config: ReplicationConfig = request.app["config"]
    if not _check_auth(request, config):
        return web.json_response({"error": "unauthorized"}, status=401)
    manager: GeoReplicationManager = request.app["manager"]
    site_id = request.match_info["site_id"]
    try:
        streams = await manager.reinstate_site(site_id)
    except UnknownSiteError:
        return web.json_response({"error": f"unknown site: {site_id}"}, status=404)
    except ConcurrentFailoverRejected as exc:
        return web.json_response({"error": str(exc)}, status=409)
    except (FailoverError, ValueError) as exc:
        return web.json_response({"error": str(exc)}, status=422)
    return web.json_response({"site_id": site_id, "streams": [s.to_dict() for s in streams]})


def create_app(config: ReplicationConfig, manager: GeoReplicationManager) -> web.Application:
    app = web.Application()
    app["config"] = config
    app["manager"] = manager
    app.router.add_get("/status", handle_status)
    app.router.add_get("/health", handle_health)
    app.router.add_post("/failover/{group_id}", handle_failover)
    app.router.add_post("/sites/{site_id}/reinstate", handle_reinstate)
    return app


async def start_status_server(config: ReplicationConfig, manager: GeoReplicationManager) -> web.AppRunner:
    if not config.status_api_token:
        logger.warning("GEOREPL_API_TOKEN not set — operator endpoints will reject every request")
    runner = web.AppRunner(create_app(config, manager))
    await runner.setup()
    site = web.TCPSite(runner, config.status_host, config.status_port)
    await site.start()
    logger.info("Status endpoint listening on %s:%d", config.status_host, config.status_port)
    return runner
