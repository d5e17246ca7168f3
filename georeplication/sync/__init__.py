"""Replication streams — database channels and periodic file synchronisation."""

from .collaborators import (
    ChangedObject,
    FileTransferPrimitive,
    SiteAgentClient,
    StorageReplicationPrimitive,
)
from .s3_client import S3FileTransfer
from .streams import ReplicationStreamManager

__all__ = [
    "ChangedObject",
    "FileTransferPrimitive",
    "SiteAgentClient",
    "StorageReplicationPrimitive",
    "S3FileTransfer",
    "ReplicationStreamManager",
]
