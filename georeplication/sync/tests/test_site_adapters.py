"""Tests for the shipped storage (site agent) and file (S3) adapters."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from georeplication.sync.collaborators import (
    ChangedObject, SiteAgentClient, channel_names, parse_channel_id,
)
from georeplication.sync.s3_client import S3FileTransfer
from georeplication.topology.models import Site, SiteRole
from georeplication.topology.registry import SiteRegistry


# --- site agent ---

@pytest_asyncio.fixture
async def agent():
    """One fake management agent serving every site; requests are recorded."""
    seen: list[dict[str, Any]] = []
    state = {"promote_status": 200}

    async def handler(request: web.Request) -> web.Response:
        text = await request.text()
        body = json.loads(text) if text else None
        seen.append({
            "method": request.method,
            "path": request.path,
            "body": body,
            "auth": request.headers.get("Authorization"),
        })
        if request.path.endswith("/lag"):
            return web.json_response({"lag_ms": 42})
        if request.path == "/consistency":
            return web.json_response({"consistent": True})
        if request.path == "/promote":
            return web.json_response({"ok": True}, status=state["promote_status"])
        return web.json_response({"ok": True})

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    yield server, seen, state
    await server.close()


def _agent_registry(base_url: str) -> SiteRegistry:
    return SiteRegistry([
        Site("primary-nyc", SiteRole.PRIMARY, "us-east-1",
             db_host="db.nyc.internal", db_port=5432, management_url=base_url),
        Site("replica-london", SiteRole.REPLICA, "eu-west-2", management_url=base_url + "/"),
    ])


def test_channel_names_and_ids():
    assert channel_names("primary-nyc", "replica-london") == {
        "slot_name": "replication_slot_replica_london",
        "publication": "publication_replica_london",
        "subscription": "subscription_replica_london",
    }
    assert parse_channel_id("a->b") == ("a", "b")
    with pytest.raises(ValueError):
        parse_channel_id("a-b")


@pytest.mark.asyncio
async def test_create_channel_publishes_then_subscribes(agent):
    server, seen, _ = agent
    client = SiteAgentClient(_agent_registry(str(server.make_url("")).rstrip("/")), "agent-token")

    channel_id = await client.create_replication_channel("primary-nyc", "replica-london")

    assert channel_id == "primary-nyc->replica-london"
    assert [(r["method"], r["path"]) for r in seen] == [
        ("POST", "/replication/publications"),
        ("POST", "/replication/subscriptions"),
    ]
    assert seen[0]["body"]["slot_name"] == "replication_slot_replica_london"
    assert seen[1]["body"]["source"] == {"host": "db.nyc.internal", "port": 5432, "sslmode": "require"}
    assert all(r["auth"] == "Bearer agent-token" for r in seen)


@pytest.mark.asyncio
async def test_drop_lag_promote_consistency(agent):
    server, seen, _ = agent
    client = SiteAgentClient(_agent_registry(str(server.make_url("")).rstrip("/")))

    await client.drop_replication_channel("primary-nyc->replica-london")
    assert await client.measure_lag("primary-nyc->replica-london") == 42
    await client.promote("replica-london")
    assert await client.verify_consistency("replica-london") is True

    assert [(r["method"], r["path"]) for r in seen] == [
        ("DELETE", "/replication/subscriptions/subscription_replica_london"),
        ("DELETE", "/replication/publications/publication_replica_london"),
        ("GET", "/replication/slots/replication_slot_replica_london/lag"),
        ("POST", "/promote"),
        ("GET", "/consistency"),
    ]
    assert seen[0]["auth"] is None


@pytest.mark.asyncio
async def test_agent_error_status_raises(agent):
    server, _, state = agent
    state["promote_status"] = 500
    client = SiteAgentClient(_agent_registry(str(server.make_url("")).rstrip("/")))
    with pytest.raises(aiohttp.ClientResponseError):
        await client.promote("replica-london")


@pytest.mark.asyncio
async def test_site_without_management_url_is_rejected():
    registry = SiteRegistry([Site("p", SiteRole.PRIMARY, "r")])
    with pytest.raises(ValueError):
        await SiteAgentClient(registry).promote("p")


# --- S3 ---

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _entry(etag: str, size: int, modified: datetime, **metadata: str) -> dict[str, Any]:
    return {"etag": etag, "size": size, "modified": modified, "metadata": dict(metadata)}


class FakeS3:
    """Just enough of an aioboto3 S3 client: paginated listing, copy, head.

    Copies keep a single-part ETag and get a new one for part-uploaded
    sources, the way S3 does.
    """

    def __init__(self, buckets: dict[str, dict[str, dict[str, Any]]]) -> None:
        self.buckets = buckets
        self.copies: list[tuple[str, str, str]] = []
        self.heads: list[tuple[str, str]] = []
        self.corrupt = False

    async def __aenter__(self) -> FakeS3:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    def get_paginator(self, name: str) -> FakeS3:
        assert name == "list_objects_v2"
        return self

    async def paginate(self, Bucket: str):
        contents = [
            {"Key": k, "ETag": f'"{e["etag"]}"', "Size": e["size"], "LastModified": e["modified"]}
            for k, e in self.buckets[Bucket].items()
        ]
        # two pages to exercise pagination
        yield {"Contents": contents[:1]}
        yield {"Contents": contents[1:]}

    async def copy_object(self, Bucket: str, Key: str, CopySource: dict[str, str],
                          Metadata: dict[str, str], MetadataDirective: str, ContentType: str) -> None:
        assert MetadataDirective == "REPLACE"
        self.copies.append((CopySource["Bucket"], Bucket, Key))
        source = self.buckets[CopySource["Bucket"]][Key]
        etag = source["etag"]
        if "-" in etag:
            etag = f"copy-of-{etag.split('-')[0]}"
        size = source["size"]
        if self.corrupt:
            etag, size = "garbled", size - 1
        self.buckets[Bucket][Key] = _entry(etag, size, source["modified"], **Metadata)

    async def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self.heads.append((Bucket, Key))
        entry = self.buckets[Bucket][Key]
        return {
            "ETag": f'"{entry["etag"]}"',
            "ContentLength": entry["size"],
            "ContentType": "application/octet-stream",
            "Metadata": dict(entry["metadata"]),
        }


@pytest.fixture
def s3(config):
    registry = SiteRegistry([
        Site("P", SiteRole.PRIMARY, "us-east-1", storage_bucket="p-bucket"),
        Site("R1", SiteRole.REPLICA, "eu-west-2", storage_bucket="r1-bucket"),
        Site("X", SiteRole.REPLICA, "ap-south-1"),
    ])
    fake = FakeS3({
        "p-bucket": {
            "same.bin": _entry("e1", 10, T0),
            "new.bin": _entry("e2", 20, T0 + timedelta(hours=2), owner="ops"),
            "stale.bin": _entry("e3", 30, T0),
        },
        "r1-bucket": {
            "same.bin": _entry("e1", 10, T0),
            "stale.bin": _entry("old", 30, T0),
        },
    })
    transfer = S3FileTransfer(registry, config)
    transfer._session = MagicMock()
    transfer._session.client.return_value = fake
    return transfer, fake


@pytest.mark.asyncio
async def test_list_changes_compares_etags(s3):
    transfer, fake = s3
    changes = await transfer.list_changes("P", "R1", None)
    assert sorted(c.key for c in changes) == ["new.bin", "stale.bin"]
    new = next(c for c in changes if c.key == "new.bin")
    assert (new.size_bytes, new.checksum, new.target_site_id) == (20, "e2", "R1")
    assert fake.heads == []


@pytest.mark.asyncio
async def test_list_changes_since_skips_older_present_objects(s3):
    transfer, _ = s3
    changes = await transfer.list_changes("P", "R1", T0 + timedelta(hours=1))
    assert [c.key for c in changes] == ["new.bin"]


@pytest.mark.asyncio
async def test_copy_and_verify(s3):
    transfer, fake = s3
    obj = ChangedObject("new.bin", 20, "e2", "P", "R1")
    assert await transfer.copy_and_verify(obj) is True
    assert fake.copies == [("p-bucket", "r1-bucket", "new.bin")]
    assert fake.buckets["r1-bucket"]["new.bin"]["metadata"] == {"owner": "ops", "georepl-source-etag": "e2"}

    fake.corrupt = True
    assert await transfer.copy_and_verify(obj) is False


@pytest.mark.asyncio
async def test_part_uploaded_object_is_copied_once(s3):
    transfer, fake = s3
    fake.buckets["p-bucket"]["big.bin"] = _entry("9f2c-3", 3000, T0 + timedelta(hours=2))

    [obj] = [c for c in await transfer.list_changes("P", "R1", None) if c.key == "big.bin"]
    assert await transfer.copy_and_verify(obj) is True
    assert fake.buckets["r1-bucket"]["big.bin"]["etag"] != "9f2c-3"

    again = await transfer.list_changes("P", "R1", None)
    assert "big.bin" not in {c.key for c in again}


@pytest.mark.asyncio
async def test_part_uploaded_copy_with_wrong_size_fails(s3):
    transfer, fake = s3
    fake.buckets["p-bucket"]["big.bin"] = _entry("9f2c-3", 3000, T0)
    fake.corrupt = True

    obj = ChangedObject("big.bin", 3000, "9f2c-3", "P", "R1")
    assert await transfer.copy_and_verify(obj) is False
    assert "big.bin" in {c.key for c in await transfer.list_changes("P", "R1", None)}


@pytest.mark.asyncio
async def test_site_without_bucket_is_rejected(s3):
    transfer, _ = s3
    with pytest.raises(ValueError):
        await transfer.list_changes("P", "X", None)
