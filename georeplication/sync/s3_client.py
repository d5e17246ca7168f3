"""Async S3 file-transfer primitive for file-kind replication streams."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import aioboto3

from ..topology.config import ReplicationConfig
from ..topology.registry import SiteRegistry
from .collaborators import ChangedObject

logger = logging.getLogger("georepl.s3")

# Stamped on every copy; S3 lowercases user metadata keys.
SOURCE_ETAG_KEY = "georepl-source-etag"


def _is_multipart(etag: str) -> bool:
    # Multipart uploads get "<md5-of-part-md5s>-<parts>"; a copy never keeps it.
    return "-" in etag


class S3FileTransfer:
    """Copies objects between per-site buckets (AWS S3 or any S3-compatible store).

    An object is in sync when the target holds the same ETag. Objects
    uploaded in parts get a fresh ETag when copied, so for those the copy
    is matched by size plus the source ETag recorded in the target's
    metadata at copy time.
    """

    def __init__(self, registry: SiteRegistry, config: ReplicationConfig) -> None:
        self._registry = registry
        self._session = aioboto3.Session(
            aws_access_key_id=config.s3_access_key or None,
            aws_secret_access_key=config.s3_secret_key or None,
            region_name=config.s3_region,
        )
        self._extra: dict[str, str] = {}
        if config.s3_endpoint_url:
            self._extra["endpoint_url"] = config.s3_endpoint_url

    def _bucket(self, site_id: str) -> str:
        bucket = self._registry.get(site_id).storage_bucket
        if not bucket:
            raise ValueError(f"Site {site_id} has no storage_bucket")
        return bucket

    async def _list_objects(self, s3: Any, bucket: str) -> dict[str, dict[str, Any]]:
        results: dict[str, dict[str, Any]] = {}
        paginator = s3.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=bucket):
            for obj in page.get("Contents", []):
                results[obj["Key"]] = {
                    "etag": obj["ETag"].strip('"'),
                    "size": obj["Size"],
                    "last_modified": obj["LastModified"],
                }
        return results

    @staticmethod
    def _copy_matches(head: dict[str, Any], source_etag: str, source_size: int) -> bool:
        if head["ETag"].strip('"') == source_etag:
            return True
        if not _is_multipart(source_etag):
            return False
        return (
            head.get("ContentLength") == source_size
            and head.get("Metadata", {}).get(SOURCE_ETAG_KEY) == source_etag
        )

    async def _in_sync(self, s3: Any, bucket: str, key: str, source: dict[str, Any], target: dict[str, Any]) -> bool:
        if target["etag"] == source["etag"]:
            return True
        if not _is_multipart(source["etag"]) or target["size"] != source["size"]:
            return False
        head = await s3.head_object(Bucket=bucket, Key=key)
        return self._copy_matches(head, source["etag"], source["size"])

    # -- FileTransferPrimitive --------------------------------------------------

    async def list_changes(
        self, source_site_id: str, target_site_id: str, since: Optional[datetime],
    ) -> list[ChangedObject]:
        """Objects on the source that are new or different on the target."""
        source_bucket = self._bucket(source_site_id)
        target_bucket = self._bucket(target_site_id)
        changes: list[ChangedObject] = []
        async with self._session.client("s3", **self._extra) as s3:
            source_objs = await self._list_objects(s3, source_bucket)
            target_objs = await self._list_objects(s3, target_bucket)

            for key, meta in source_objs.items():
                existing = target_objs.get(key)
                if existing is not None:
                    if since is not None and meta["last_modified"] <= since:
                        continue
                    if await self._in_sync(s3, target_bucket, key, meta, existing):
                        continue
                changes.append(ChangedObject(
                    key=key, size_bytes=meta["size"], checksum=meta["etag"],
                    source_site_id=source_site_id, target_site_id=target_site_id,
                ))
        logger.debug("%s → %s: %d changed objects", source_site_id, target_site_id, len(changes))
        return changes

    async def copy_and_verify(self, obj: ChangedObject) -> bool:
        """Server-side copy stamped with the source ETag, then check the target."""
        source_bucket = self._bucket(obj.source_site_id)
        target_bucket = self._bucket(obj.target_site_id)
        async with self._session.client("s3", **self._extra) as s3:
            source_head = await s3.head_object(Bucket=source_bucket, Key=obj.key)
            await s3.copy_object(
                Bucket=target_bucket,
                Key=obj.key,
                CopySource={"Bucket": source_bucket, "Key": obj.key},
                Metadata={**source_head.get("Metadata", {}), SOURCE_ETAG_KEY: obj.checksum},
                MetadataDirective="REPLACE",
                ContentType=source_head.get("ContentType", "binary/octet-stream"),
            )
            head = await s3.head_object(Bucket=target_bucket, Key=obj.key)
        if not self._copy_matches(head, obj.checksum, obj.size_bytes):
            logger.warning("Checksum mismatch for %s on %s: %s (%s bytes) != %s (%d bytes)",
                           obj.key, obj.target_site_id, head["ETag"].strip('"'),
                           head.get("ContentLength"), obj.checksum, obj.size_bytes)
            return False
        return True
